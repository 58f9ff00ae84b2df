"""
crypto.py — RSA-SHA256 helpers for the gateway and its clients.

Why this exists:
- Keep all RSA bits in one place so the rest of the code can call
  `sign/verify` without worrying about padding or key envelopes.
- Keys travel as base64 DER bodies (no PEM armour) so they drop cleanly into
  JSON; we wrap them back into PEM only at use time.

Notes:
- PKCS#1 v1.5 + SHA-256 for signatures. Unlike PSS this is deterministic:
  the same key and payload always give the same signature, which is what lets
  the server recompute a token seal instead of storing it.
- Signatures are standard Base64 (with '=' padding) for interop with browser
  and Node clients.
"""

import base64
import binascii
import textwrap
from typing import Tuple

from cryptography.exceptions import InvalidKey, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

MIN_KEY_SIZE = 2048

# -----------------------------
# Base64 helpers
# -----------------------------

def b64_encode(data: bytes) -> str:
    """Standard Base64 with padding, as ASCII text."""
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str) -> bytes:
    """Strict Base64 decode; raises binascii.Error on junk input."""
    return base64.b64decode(data.encode("ascii"), validate=True)


# -------------
# RSA key utils
# -------------

def wrap_pem(body_b64: str, label: str) -> bytes:
    """Put a bare base64 key body back inside its PEM armour (64-char lines)."""
    body = "\n".join(textwrap.wrap("".join(body_b64.split()), 64))
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n".encode("ascii")


def enforce_rsa(key):
    """Only RSA keys, and nothing weaker than MIN_KEY_SIZE bits."""
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        if key.key_size < MIN_KEY_SIZE:
            raise InvalidKey(f"Key must be at least RSA-{MIN_KEY_SIZE} bits.")
    else:
        raise InvalidKey("Key must be RSA public/private key.")


def generate_keypair(key_size: int = MIN_KEY_SIZE) -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    """Generate a fresh RSA keypair (public exponent 65537)."""
    priv = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return priv, priv.public_key()


def export_public_key_b64(pub: rsa.RSAPublicKey) -> str:
    """SubjectPublicKeyInfo DER, base64 encoded (the PEM body without armour)."""
    der = pub.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64_encode(der)


def export_private_key_b64(priv: rsa.RSAPrivateKey) -> str:
    """
    Unencrypted PKCS#8 DER, base64 encoded.
    This is the raw key; keep it out of logs and version control.
    """
    der = priv.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64_encode(der)


def load_public_key_b64(data: str) -> rsa.RSAPublicKey:
    """Inverse of export_public_key_b64()."""
    key = serialization.load_pem_public_key(wrap_pem(data, "PUBLIC KEY"))
    enforce_rsa(key)
    return key


def load_private_key_b64(data: str) -> rsa.RSAPrivateKey:
    """Inverse of export_private_key_b64()."""
    key = serialization.load_pem_private_key(wrap_pem(data, "PRIVATE KEY"), password=None)
    enforce_rsa(key)
    return key


def keys_match(priv: rsa.RSAPrivateKey, public_key_b64: str) -> bool:
    """True if the base64 public key is the public half of `priv`."""
    return export_public_key_b64(priv.public_key()) == public_key_b64


# -------------------------
# Signing & Verification API
# -------------------------

def sign(priv: rsa.RSAPrivateKey, data: bytes) -> str:
    """Sign raw bytes with RSA-SHA256 (PKCS#1 v1.5). Returns Base64 signature."""
    enforce_rsa(priv)
    sig = priv.sign(data, padding.PKCS1v15(), hashes.SHA256())
    return b64_encode(sig)


def verify(public_key_b64: str, data: bytes, sig_b64: str) -> bool:
    """
    Verify a Base64 signature produced by `sign()` against a base64 public key.

    The key and signature usually come straight from a client, so every
    failure mode (unparsable key, non-RSA key, bad base64, wrong signature)
    collapses to False.
    """
    try:
        pub = load_public_key_b64(public_key_b64)
        sig = b64_decode(sig_b64)
    except (ValueError, TypeError, InvalidKey, UnsupportedAlgorithm, binascii.Error, UnicodeError):
        return False
    try:
        pub.verify(sig, data, padding.PKCS1v15(), hashes.SHA256())
        return True
    except Exception:
        # We don't leak verify errors to callers; they just see False.
        return False
