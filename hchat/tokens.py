"""
tokens.py — policy tokens, their wire encoding, and the server seal.

A token is compact JSON with a fixed key order. The JSON text *is* the token:
the client holds it opaque and sends it back verbatim, and the seal is the
server's signature over its exact UTF-8 bytes. There is no canonicalisation
step, so any re-encoding that changes a single byte breaks the seal.

Decoding here is structural only (right keys, right primitive types). Whether
a token is still fresh, or matches the request it arrives with, is decided in
protocol.py.
"""

import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

from . import crypto
from .errors import MalformedToken

PUBLISH_TOKEN_FIELDS = (
    "timestamp",
    "difficulty",
    "delay",
    "senderPublicKey",
    "channel",
    "messageSize",
    "messageSignature",
)
SUBSCRIBE_TOKEN_FIELDS = ("timestamp", "difficulty", "delay", "channels")


@dataclass(frozen=True)
class PublishToken:
    timestamp: int
    difficulty: int
    delay: int
    sender_public_key: str
    channel: str
    message_size: int
    message_signature: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "difficulty": self.difficulty,
            "delay": self.delay,
            "senderPublicKey": self.sender_public_key,
            "channel": self.channel,
            "messageSize": self.message_size,
            "messageSignature": self.message_signature,
        }


@dataclass(frozen=True)
class SubscribeToken:
    timestamp: int
    difficulty: int
    delay: int
    channels: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "difficulty": self.difficulty,
            "delay": self.delay,
            "channels": list(self.channels),
        }


PolicyToken = Union[PublishToken, SubscribeToken]


@dataclass(frozen=True)
class TokenEnvelope:
    """What initiate-* hands back: the token text and its seal."""
    token: str
    token_signature: str


def encode_token(token: PolicyToken) -> str:
    """Compact JSON in fixed field order; identical input gives identical text."""
    return json.dumps(token.to_dict(), separators=(",", ":"), ensure_ascii=False)


# -----------------------
# Shape predicates
# -----------------------

def _is_uint(value: Any) -> bool:
    # bool is an int subclass; a token with "delay": true is malformed.
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _has_exact_keys(obj: Any, fields: Tuple[str, ...]) -> bool:
    return isinstance(obj, dict) and set(obj.keys()) == set(fields)


def _has_policy_fields(obj: Dict[str, Any]) -> bool:
    return _is_uint(obj["timestamp"]) and _is_uint(obj["difficulty"]) and _is_uint(obj["delay"])


def is_publish_token_object(obj: Any) -> bool:
    """True only for a dict with exactly the publish token keys and types."""
    if not _has_exact_keys(obj, PUBLISH_TOKEN_FIELDS):
        return False
    return (
        _has_policy_fields(obj)
        and isinstance(obj["senderPublicKey"], str)
        and isinstance(obj["channel"], str)
        and _is_uint(obj["messageSize"])
        and isinstance(obj["messageSignature"], str)
    )


def is_subscribe_token_object(obj: Any) -> bool:
    """True only for a dict with exactly the subscribe token keys and types."""
    if not _has_exact_keys(obj, SUBSCRIBE_TOKEN_FIELDS):
        return False
    channels = obj["channels"]
    return (
        _has_policy_fields(obj)
        and isinstance(channels, list)
        and all(isinstance(c, str) for c in channels)
    )


# -----------------------
# Decoding
# -----------------------

def _load(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MalformedToken("Invalid token") from exc


def decode_publish_token(text: str) -> PublishToken:
    obj = _load(text)
    if not is_publish_token_object(obj):
        raise MalformedToken("Invalid publish token")
    return PublishToken(
        timestamp=obj["timestamp"],
        difficulty=obj["difficulty"],
        delay=obj["delay"],
        sender_public_key=obj["senderPublicKey"],
        channel=obj["channel"],
        message_size=obj["messageSize"],
        message_signature=obj["messageSignature"],
    )


def decode_subscribe_token(text: str) -> SubscribeToken:
    obj = _load(text)
    if not is_subscribe_token_object(obj):
        raise MalformedToken("Invalid subscribe token")
    return SubscribeToken(
        timestamp=obj["timestamp"],
        difficulty=obj["difficulty"],
        delay=obj["delay"],
        channels=tuple(obj["channels"]),
    )


# -----------------------
# Seal
# -----------------------

def seal_with(server_private_key, encoded: str) -> str:
    """Server signature over the token's exact bytes."""
    return crypto.sign(server_private_key, encoded.encode("utf-8"))


def is_seal_valid(server_private_key, encoded: str, signature: str) -> bool:
    """Recompute the seal and compare; nothing about issued tokens is stored."""
    expected = seal_with(server_private_key, encoded)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
