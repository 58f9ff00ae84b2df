"""
errors.py — everything the gateway can reject a request for.

Protocol code raises these; only the request boundary (handlers.py) turns
them into responses. Each class carries a stable `reason` code for logs and
clients, and the status the boundary answers with.
"""


class HchatError(Exception):
    """Base class for all hchat errors."""


class ConfigError(HchatError):
    """Missing or unusable process configuration. Fatal at startup."""


class ProtocolError(HchatError):
    """A request was rejected. Failures are local to that one request."""

    reason = "protocol_error"
    status = 400
    message = "Request rejected"

    def __init__(self, message: str = None) -> None:
        super().__init__(message or self.message)


class InvalidRequestShape(ProtocolError):
    reason = "invalid_request"
    message = "Invalid request"


class InvalidChannel(ProtocolError):
    reason = "invalid_channel"
    message = "Invalid channel"


class TooManyChannels(InvalidChannel):
    reason = "too_many_channels"
    message = "Too many channels"


class InvalidMessageSize(ProtocolError):
    reason = "invalid_message_size"
    message = "Invalid message size"


class TokenSealMismatch(ProtocolError):
    reason = "token_seal_mismatch"
    message = "Invalid token signature"


class MalformedToken(ProtocolError):
    reason = "malformed_token"
    message = "Invalid token"


class TokenTooSoon(ProtocolError):
    reason = "token_too_soon"
    message = "Too soon to redeem token"


class TokenExpired(ProtocolError):
    reason = "token_expired"
    message = "Invalid timestamp for token"


class MessageSizeMismatch(ProtocolError):
    reason = "message_size_mismatch"
    message = "Message size does not match token"


class InvalidMessageSignature(ProtocolError):
    reason = "invalid_message_signature"
    message = "Invalid message signature"


class ChannelScopeMismatch(ProtocolError):
    reason = "channel_scope_mismatch"
    message = "Channels do not match subscribe token"


class InvalidProofOfWork(ProtocolError):
    reason = "invalid_proof_of_work"
    message = "Invalid challenge response"


class TokenAlreadyRedeemed(ProtocolError):
    reason = "token_already_redeemed"
    message = "Token already redeemed"


class SubstrateError(ProtocolError):
    """The distribution or access-control service failed or timed out."""

    reason = "substrate_error"
    status = 502
    message = "Upstream pubsub service failed"
