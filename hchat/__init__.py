"""
hchat: a token-gated front door for a shared pubsub channel.

Clients earn the right to publish or subscribe in two steps:
- initiate: the gateway returns a policy token sealed with its own signature;
- redeem: after the token's delay, and with a proof of work over the token,
  the client presents it back and the gateway publishes / grants read access.

The gateway keeps no per-client state between the two steps; the seal
(deterministic RSA-SHA256 over the token text) is the only integrity check.

Configure SYSTEM_PUBLIC_KEY / SYSTEM_PRIVATE_KEY and the PUBSUB_* keys before
starting the server (see generate_keys.py).
"""
__all__ = [
    "config",
    "crypto",
    "errors",
    "framing",
    "handlers",
    "messages",
    "node",
    "protocol",
    "run_node",
    "substrate",
    "tokens",
]
