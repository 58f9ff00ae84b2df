"""
substrate.py — the services the gateway leans on, plus in-process versions.

The gateway itself never delivers messages or hands out read access on its
own; it asks a distribution service (`PubsubSubstrate`) and an access manager
(`AccessManager`). Anything with those two coroutine methods will do. The
Local* classes are small in-process stand-ins used by the bundled server and
the tests.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
from collections import defaultdict, deque
from hashlib import sha256
from typing import Deque, Dict, List, Protocol, Sequence, Tuple

from .messages import PubsubMessage, now_ms

logger = logging.getLogger(__name__)


class PubsubSubstrate(Protocol):
    async def publish(self, channel: str, message: PubsubMessage) -> None:
        """Accept the message for delivery or raise."""


class AccessManager(Protocol):
    async def grant_read_token(self, channels: Sequence[str], ttl_minutes: int) -> str:
        """Return a credential granting read on exactly `channels` for the TTL."""


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8")


class LocalAccessManager:
    """HMAC-signed, channel-scoped read grants."""

    def __init__(self, *, secret_key: str, clock=now_ms) -> None:
        self._secret = secret_key.encode("utf-8")
        self._clock = clock

    async def grant_read_token(self, channels: Sequence[str], ttl_minutes: int) -> str:
        issued_at = self._clock()
        payload = {
            "channels": {channel: {"read": True} for channel in channels},
            "issued_at": issued_at,
            "expires_at": issued_at + ttl_minutes * 60_000,
        }
        payload_raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        sig = hmac.new(self._secret, payload_raw, sha256).digest()
        logger.debug("Granted read on %d channel(s) for %d min", len(channels), ttl_minutes)
        return f"{_b64(payload_raw)}.{_b64(sig)}"

    def validate(self, token: str, channel: str) -> bool:
        """True if `token` is ours, unexpired, and grants read on `channel`."""
        try:
            payload_b64, sig_b64 = token.split(".", 1)
            payload_raw = base64.urlsafe_b64decode(payload_b64.encode("utf-8"))
            sig = base64.urlsafe_b64decode(sig_b64.encode("utf-8"))
        except (ValueError, binascii.Error):
            return False

        expected_sig = hmac.new(self._secret, payload_raw, sha256).digest()
        if not hmac.compare_digest(sig, expected_sig):
            return False

        try:
            payload = json.loads(payload_raw.decode("utf-8"))
        except ValueError:
            return False

        if int(payload.get("expires_at", 0)) <= self._clock():
            return False
        grant = payload.get("channels", {}).get(channel, {})
        return grant.get("read") is True


class LocalPubsub:
    """
    In-process distribution substrate keeping a short history per channel.

    Reads need a credential from the paired access manager, same as a real
    service with access control switched on.
    """

    def __init__(self, access: LocalAccessManager, *, history: int = 100) -> None:
        self._access = access
        self._channels: Dict[str, Deque[PubsubMessage]] = defaultdict(lambda: deque(maxlen=history))

    async def publish(self, channel: str, message: PubsubMessage) -> None:
        self._channels[channel].append(message)
        logger.info("Delivered message to %s (%d held)", channel, len(self._channels[channel]))

    def read(self, channel: str, token: str) -> List[PubsubMessage]:
        if not self._access.validate(token, channel):
            raise PermissionError(f"token does not grant read on {channel}")
        return list(self._channels.get(channel, ()))


class ReplayGuard:
    """
    Remembers redemptions for `ttl_ms` so each one is honoured at most once.

    Optional: the protocol works without it, at the cost of allowing a
    captured redemption to be replayed until its token expires.
    """

    def __init__(self, *, ttl_ms: int, clock=now_ms) -> None:
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._seen: Dict[str, int] = {}

    @staticmethod
    def key_for(*parts: str) -> str:
        h = sha256()
        for part in parts:
            data = part.encode("utf-8")
            h.update(len(data).to_bytes(4, "big"))
            h.update(data)
        return h.hexdigest()

    def seen(self, key: str) -> bool:
        now = self._clock()
        self._gc(now)
        return key in self._seen

    def remember(self, key: str) -> None:
        self._seen[key] = self._clock() + self.ttl_ms

    def forget(self, key: str) -> None:
        """Release a claim whose redemption never went through."""
        self._seen.pop(key, None)

    def _gc(self, now: int) -> None:
        expired = [k for k, v in self._seen.items() if v <= now]
        for k in expired:
            self._seen.pop(k, None)

    def __len__(self) -> int:
        return len(self._seen)


def local_substrates(secret_key: str, clock=now_ms) -> Tuple[LocalPubsub, LocalAccessManager]:
    """Paired in-process pubsub + access manager."""
    access = LocalAccessManager(secret_key=secret_key, clock=clock)
    return LocalPubsub(access), access


__all__ = [
    "PubsubSubstrate",
    "AccessManager",
    "LocalAccessManager",
    "LocalPubsub",
    "ReplayGuard",
    "local_substrates",
]
