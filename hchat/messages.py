import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from . import crypto

"""
messages.py — request/response shapes and the message we hand to pubsub.

What this module does:
- Names the `type` tags of every request and response on the wire.
- Checks incoming request bodies against their exact shape (the boundary
  rejects anything else with a generic "Invalid request").
- Builds the system attestation and the PubsubMessage for a publish.
- Lets receivers check a PubsubMessage end to end.

Why two signatures on a message?
- messageSignature: the sender's own signature over messageJson, so anyone
  can check who wrote it.
- systemSignature: the gateway's signature over {channel, sender, timestamp,
  messageSignature}, so receivers know it went through the gate (and on which
  channel and when).
"""


def now_ms() -> int:
    """Current time in milliseconds (token and message timestamps)."""
    return int(time.time() * 1000)


# -----------------------
# Public message type tags
# -----------------------
INITIATE_PUBLISH_REQUEST = "initiatePublishRequest"
INITIATE_PUBLISH_RESPONSE = "initiatePublishResponse"
PUBLISH_REQUEST = "publishRequest"
PUBLISH_RESPONSE = "publishResponse"
INITIATE_SUBSCRIBE_REQUEST = "initiateSubscribeRequest"
INITIATE_SUBSCRIBE_RESPONSE = "initiateSubscribeResponse"
SUBSCRIBE_REQUEST = "subscribeRequest"
SUBSCRIBE_RESPONSE = "subscribeResponse"
MESSAGE = "message"

# Required fields (beyond `type`) and their primitive kinds.
REQUEST_SHAPES = {
    INITIATE_PUBLISH_REQUEST: {
        "senderPublicKey": str,
        "channel": str,
        "messageSize": int,
        "messageSignature": str,
    },
    PUBLISH_REQUEST: {
        "publishToken": str,
        "tokenSignature": str,
        "messageJson": str,
        "challengeResponse": str,
    },
    INITIATE_SUBSCRIBE_REQUEST: {
        "channels": list,
    },
    SUBSCRIBE_REQUEST: {
        "subscribeToken": str,
        "tokenSignature": str,
        "challengeResponse": str,
        "channels": list,
    },
}


def is_request(body: Any, request_type: str) -> bool:
    """
    True if `body` is exactly a `request_type` request.

    Every listed field must be present with the right kind, lists must hold
    only strings, and no unknown keys are allowed.
    """
    shape = REQUEST_SHAPES[request_type]
    if not isinstance(body, dict) or body.get("type") != request_type:
        return False
    if set(body.keys()) != set(shape) | {"type"}:
        return False
    for name, kind in shape.items():
        value = body[name]
        if kind is int and isinstance(value, bool):
            return False
        if not isinstance(value, kind):
            return False
        if kind is str and not _is_text(value):
            return False
        if kind is list and not all(isinstance(v, str) and _is_text(v) for v in value):
            return False
    return True


def _is_text(value: str) -> bool:
    # JSON can smuggle in lone surrogates, which have no UTF-8 form to sign or hash.
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def js_length(text: str) -> int:
    """
    String length as JavaScript counts it (UTF-16 code units).

    Browser clients declare messageSize with `messageJson.length`, so this is
    the length the gateway compares against. Same as len() for BMP text.
    """
    return len(text.encode("utf-16-le")) // 2


# -----------------------
# Published messages
# -----------------------

def attestation_payload(channel: str, sender_public_key: str, timestamp: int, message_signature: str) -> str:
    """Compact JSON the gateway signs for each message (fixed key order)."""
    return json.dumps(
        {
            "channel": channel,
            "senderPublicKey": sender_public_key,
            "timestamp": timestamp,
            "messageSignature": message_signature,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )


@dataclass(frozen=True)
class PubsubMessage:
    """What the distribution substrate receives for one accepted publish."""
    sender_public_key: str
    timestamp: int
    message_json: str
    message_signature: str
    system_signature_payload: str
    system_signature: str
    system_public_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": MESSAGE,
            "senderPublicKey": self.sender_public_key,
            "timestamp": self.timestamp,
            "messageJson": self.message_json,
            "messageSignature": self.message_signature,
            "systemSignaturePayload": self.system_signature_payload,
            "systemSignature": self.system_signature,
            "systemPublicKey": self.system_public_key,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "PubsubMessage":
        """Raises KeyError / ValueError if `obj` is not a message."""
        if obj.get("type") != MESSAGE:
            raise ValueError("not a pubsub message")
        return cls(
            sender_public_key=obj["senderPublicKey"],
            timestamp=obj["timestamp"],
            message_json=obj["messageJson"],
            message_signature=obj["messageSignature"],
            system_signature_payload=obj["systemSignaturePayload"],
            system_signature=obj["systemSignature"],
            system_public_key=obj["systemPublicKey"],
        )


def build_pubsub_message(
    system_privkey,
    system_public_key: str,
    channel: str,
    sender_public_key: str,
    message_json: str,
    message_signature: str,
    timestamp: int,
) -> PubsubMessage:
    """Attest to an already-validated message and wrap it for delivery."""
    payload = attestation_payload(channel, sender_public_key, timestamp, message_signature)
    return PubsubMessage(
        sender_public_key=sender_public_key,
        timestamp=timestamp,
        message_json=message_json,
        message_signature=message_signature,
        system_signature_payload=payload,
        system_signature=crypto.sign(system_privkey, payload.encode("utf-8")),
        system_public_key=system_public_key,
    )


def verify_pubsub_message(message: PubsubMessage, channel: str, system_public_key: Optional[str] = None) -> bool:
    """
    Receiver-side check of a delivered message.

    Pass `system_public_key` to pin the gateway identity; otherwise the key
    carried in the message is trusted.
    """
    if system_public_key is not None and message.system_public_key != system_public_key:
        return False
    if not crypto.verify(
        message.system_public_key,
        message.system_signature_payload.encode("utf-8"),
        message.system_signature,
    ):
        return False
    expected = attestation_payload(
        channel, message.sender_public_key, message.timestamp, message.message_signature
    )
    if message.system_signature_payload != expected:
        return False
    return crypto.verify(
        message.sender_public_key,
        message.message_json.encode("utf-8"),
        message.message_signature,
    )


def dedupe_messages(messages: Iterable[PubsubMessage]) -> List[PubsubMessage]:
    """Drop repeats (same systemSignature) and sort by timestamp."""
    seen = set()
    out = []
    for msg in messages:
        if msg.system_signature in seen:
            continue
        seen.add(msg.system_signature)
        out.append(msg)
    return sorted(out, key=lambda m: m.timestamp)
