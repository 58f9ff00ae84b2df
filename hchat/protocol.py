"""
protocol.py — the two token-gated handshakes.

Each action is a pair of calls:

    initiate-publish  -> sealed PublishToken      publish   -> message delivered
    initiate-subscribe -> sealed SubscribeToken   subscribe -> scoped read grant

Between the two calls the server remembers nothing. Everything it needs to
judge a redemption is inside the token, and the seal (the server's own
deterministic signature over the token text) proves the token is one it
issued, unmodified. A redemption is honoured only after the seal, the shape,
the timing window, the request/token binding and the proof of work all pass;
the external service is touched last, so a rejection has no side effects.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from . import crypto, pow
from .config import PolicyConfig, ServerConfig
from .errors import (
    ChannelScopeMismatch,
    InvalidChannel,
    InvalidMessageSignature,
    InvalidMessageSize,
    InvalidProofOfWork,
    MessageSizeMismatch,
    SubstrateError,
    TokenAlreadyRedeemed,
    TokenExpired,
    TokenSealMismatch,
    TokenTooSoon,
    TooManyChannels,
)
from .messages import PubsubMessage, build_pubsub_message, js_length, now_ms
from .substrate import AccessManager, PubsubSubstrate, ReplayGuard
from .tokens import (
    PublishToken,
    SubscribeToken,
    TokenEnvelope,
    decode_publish_token,
    decode_subscribe_token,
    encode_token,
    is_seal_valid,
    seal_with,
)

logger = logging.getLogger(__name__)

CHANNEL_RE = re.compile(r"^[a-zA-Z0-9_\-:.]+$")
MIN_MESSAGE_SIZE = 1
MAX_MESSAGE_SIZE = 20_000
MAX_CHANNELS = 10
MAX_TOKEN_AGE_MS = 60 * 1000
READ_GRANT_TTL_MINUTES = 60

Clock = Callable[[], int]
T = TypeVar("T")


@dataclass(frozen=True)
class SubscribeGrant:
    """What a client needs to attach to the distribution service."""
    subscribe_key: str
    token: str


def assert_valid_channel(channel: str) -> None:
    # letters, digits, underscore, dash, colon, dot
    if not CHANNEL_RE.fullmatch(channel):
        raise InvalidChannel()


def assert_valid_message_size(size: int) -> None:
    if size < MIN_MESSAGE_SIZE or size > MAX_MESSAGE_SIZE:
        raise InvalidMessageSize()


def assert_timing(issued_at: int, delay: int, now: int) -> None:
    """Delay must have elapsed, and the token must not be older than a minute."""
    elapsed = abs(now - issued_at)
    if elapsed < delay:
        raise TokenTooSoon()
    if elapsed > MAX_TOKEN_AGE_MS:
        raise TokenExpired()


class _TokenGate:
    """Seal/timing/PoW checks shared by both handshakes."""

    kind = "token"

    def __init__(
        self,
        config: ServerConfig,
        policy: PolicyConfig,
        *,
        clock: Clock = now_ms,
        replay_guard: Optional[ReplayGuard] = None,
    ) -> None:
        self.config = config
        self.policy = policy
        self.clock = clock
        self.replay_guard = replay_guard

    def _issue(self, token) -> TokenEnvelope:
        encoded = encode_token(token)
        return TokenEnvelope(token=encoded, token_signature=seal_with(self.config.system_private_key, encoded))

    def _check_seal(self, token: str, token_signature: str) -> None:
        if not is_seal_valid(self.config.system_private_key, token, token_signature):
            raise TokenSealMismatch()

    @staticmethod
    def _check_pow(token: str, challenge_response: str, difficulty: int) -> None:
        if not pow.check(token, challenge_response, difficulty):
            raise InvalidProofOfWork()

    def _claim(self, *parts: str) -> Optional[str]:
        """At-most-once redemption, only when a replay guard is plugged in."""
        if self.replay_guard is None:
            return None
        key = ReplayGuard.key_for(*parts)
        if self.replay_guard.seen(key):
            raise TokenAlreadyRedeemed()
        self.replay_guard.remember(key)
        return key

    async def _call_substrate(self, what: str, call: Awaitable[T], claim: Optional[str] = None) -> T:
        """Run `call` under the substrate timeout; a failed call gives its claim back."""
        try:
            return await self._await_substrate(what, call)
        except SubstrateError:
            if claim is not None:
                self.replay_guard.forget(claim)
            raise

    async def _await_substrate(self, what: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.config.substrate_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("%s timed out after %.1fs", what, self.config.substrate_timeout)
            raise SubstrateError(f"{what} timed out") from exc
        except SubstrateError:
            raise
        except Exception as exc:
            logger.warning("%s failed: %s", what, exc)
            raise SubstrateError(f"{what} failed") from exc


class PublishProtocol(_TokenGate):
    """initiate-publish / publish."""

    kind = "publish"

    def __init__(
        self,
        config: ServerConfig,
        pubsub: PubsubSubstrate,
        *,
        clock: Clock = now_ms,
        replay_guard: Optional[ReplayGuard] = None,
    ) -> None:
        super().__init__(config, config.publish_policy, clock=clock, replay_guard=replay_guard)
        self.pubsub = pubsub

    async def initiate_publish(
        self,
        sender_public_key: str,
        channel: str,
        message_size: int,
        message_signature: str,
    ) -> TokenEnvelope:
        """
        Issue a sealed PublishToken.

        The message signature is taken as-is here and only checked at
        redemption; a token bound to a bogus signature simply never redeems.
        """
        assert_valid_channel(channel)
        assert_valid_message_size(message_size)
        token = PublishToken(
            timestamp=self.clock(),
            difficulty=self.policy.difficulty,
            delay=self.policy.delay,
            sender_public_key=sender_public_key,
            channel=channel,
            message_size=message_size,
            message_signature=message_signature,
        )
        logger.debug("Issuing publish token for %s (%d bytes)", channel, message_size)
        return self._issue(token)

    async def publish(
        self,
        token: str,
        token_signature: str,
        message_json: str,
        challenge_response: str,
    ) -> PubsubMessage:
        """Redeem a publish token; returns the message handed to pubsub."""
        self._check_seal(token, token_signature)
        decoded = decode_publish_token(token)
        assert_timing(decoded.timestamp, decoded.delay, self.clock())
        if js_length(message_json) != decoded.message_size:
            raise MessageSizeMismatch()
        if not crypto.verify(decoded.sender_public_key, message_json.encode("utf-8"), decoded.message_signature):
            raise InvalidMessageSignature()
        self._check_pow(token, challenge_response, decoded.difficulty)
        claim = self._claim(self.kind, token, token_signature, message_json, challenge_response)

        message = build_pubsub_message(
            self.config.system_private_key,
            self.config.system_public_key,
            channel=decoded.channel,
            sender_public_key=decoded.sender_public_key,
            message_json=message_json,
            message_signature=decoded.message_signature,
            timestamp=self.clock(),
        )
        await self._call_substrate("pubsub publish", self.pubsub.publish(decoded.channel, message), claim)
        logger.info("Published message on %s", decoded.channel)
        return message


class SubscribeProtocol(_TokenGate):
    """initiate-subscribe / subscribe."""

    kind = "subscribe"

    def __init__(
        self,
        config: ServerConfig,
        access: AccessManager,
        *,
        clock: Clock = now_ms,
        replay_guard: Optional[ReplayGuard] = None,
    ) -> None:
        super().__init__(config, config.subscribe_policy, clock=clock, replay_guard=replay_guard)
        self.access = access

    async def initiate_subscribe(self, channels: Sequence[str]) -> TokenEnvelope:
        if len(channels) > MAX_CHANNELS:
            raise TooManyChannels()
        for channel in channels:
            assert_valid_channel(channel)
        token = SubscribeToken(
            timestamp=self.clock(),
            difficulty=self.policy.difficulty,
            delay=self.policy.delay,
            channels=tuple(channels),
        )
        logger.debug("Issuing subscribe token for %d channel(s)", len(channels))
        return self._issue(token)

    async def subscribe(
        self,
        token: str,
        token_signature: str,
        challenge_response: str,
        channels: Sequence[str],
    ) -> SubscribeGrant:
        """Redeem a subscribe token for a read grant on exactly its channels."""
        self._check_seal(token, token_signature)
        decoded = decode_subscribe_token(token)
        assert_timing(decoded.timestamp, decoded.delay, self.clock())
        # Same channels, same order: the grant can never be wider than the token.
        if tuple(channels) != decoded.channels:
            raise ChannelScopeMismatch()
        self._check_pow(token, challenge_response, decoded.difficulty)
        claim = self._claim(self.kind, token, token_signature, challenge_response)

        read_token = await self._call_substrate(
            "read grant",
            self.access.grant_read_token(list(decoded.channels), READ_GRANT_TTL_MINUTES),
            claim,
        )
        logger.info("Granted read on %d channel(s)", len(decoded.channels))
        return SubscribeGrant(subscribe_key=self.config.pubsub_subscribe_key, token=read_token)
