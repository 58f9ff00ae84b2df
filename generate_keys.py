import sys
from pathlib import Path

from hchat import crypto

# Quick one-off keygen for the gateway identity or a sender.
# - RSA-2048 (the minimum the gateway accepts); pass a size to go bigger.
# - Prints env lines for the gateway; with --out also writes the private key
#   body to a file usable as `hchat --key-file`.

# 1) Generate the key pair.
key_size = int(sys.argv[1]) if len(sys.argv) > 1 and sys.argv[1].isdigit() else crypto.MIN_KEY_SIZE
privkey, pubkey = crypto.generate_keypair(key_size)
priv_b64 = crypto.export_private_key_b64(privkey)

# 2) Optionally save the private key body (unencrypted; fine for local testing).
if "--out" in sys.argv:
    out = Path(sys.argv[sys.argv.index("--out") + 1]).expanduser()
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(priv_b64)
    out.chmod(0o600)
    print(f"# private key written to {out}", file=sys.stderr)

# 3) Print in env form so it can be pasted into the gateway's environment.
print(f"SYSTEM_PUBLIC_KEY={crypto.export_public_key_b64(pubkey)}")
print(f"SYSTEM_PRIVATE_KEY={priv_b64}")
