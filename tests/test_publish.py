"""
Tests for the initiate-publish / publish handshake
"""

import asyncio
import json

import pytest

from conftest import FailingPubsub, RecordingPubsub, SlowService, failing_response, solve_for
from hchat import crypto, pow
from hchat.errors import (
    InvalidChannel,
    InvalidMessageSignature,
    InvalidMessageSize,
    InvalidProofOfWork,
    MalformedToken,
    MessageSizeMismatch,
    SubstrateError,
    TokenAlreadyRedeemed,
    TokenExpired,
    TokenSealMismatch,
    TokenTooSoon,
)
from hchat.messages import verify_pubsub_message
from hchat.protocol import PublishProtocol
from hchat.substrate import ReplayGuard


def initiate(publisher, sender_keys, message="hello", channel="room1", size=None):
    priv, pub_b64 = sender_keys
    sig = crypto.sign(priv, message.encode("utf-8"))
    size = len(message) if size is None else size
    return asyncio.run(publisher.initiate_publish(pub_b64, channel, size, sig))


def redeem(publisher, envelope, message="hello", response=None):
    if response is None:
        response = solve_for(envelope.token)
    return asyncio.run(publisher.publish(envelope.token, envelope.token_signature, message, response))


def test_end_to_end_publish(make_config, clock, sender_keys):
    config = make_config(difficulty=13, delay=500)
    pubsub = RecordingPubsub()
    publisher = PublishProtocol(config, pubsub, clock=clock)

    envelope = initiate(publisher, sender_keys, "hello", "room1", 5)
    clock.advance(500)
    response = pow.solve(envelope.token, 13)
    message = redeem(publisher, envelope, "hello", response)

    assert len(pubsub.published) == 1
    channel, delivered = pubsub.published[0]
    assert channel == "room1"
    assert delivered is message
    assert delivered.message_json == "hello"
    assert delivered.sender_public_key == sender_keys[1]
    assert delivered.system_public_key == config.system_public_key
    assert verify_pubsub_message(delivered, "room1", config.system_public_key)


def test_token_carries_policy_and_request(publisher, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    obj = json.loads(envelope.token)
    assert obj["timestamp"] == clock.now
    assert obj["difficulty"] == 8
    assert obj["delay"] == 500
    assert obj["channel"] == "room1"
    assert obj["messageSize"] == 5
    assert obj["senderPublicKey"] == sender_keys[1]


def test_too_soon(publisher, pubsub, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    clock.advance(499)
    with pytest.raises(TokenTooSoon):
        redeem(publisher, envelope)
    clock.advance(1)
    redeem(publisher, envelope)
    assert len(pubsub.published) == 1


def test_expired_even_with_valid_pow(publisher, pubsub, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    response = solve_for(envelope.token)
    clock.advance(60_001)
    with pytest.raises(TokenExpired):
        redeem(publisher, envelope, response=response)
    assert pubsub.published == []


def test_last_valid_millisecond(publisher, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    clock.advance(60_000)
    redeem(publisher, envelope)


def test_clock_skew_counts_as_elapsed(publisher, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    clock.advance(-600)
    redeem(publisher, envelope)


@pytest.mark.parametrize("field, value", [
    ("timestamp", 0),
    ("difficulty", 0),
    ("delay", 0),
    ("senderPublicKey", "other"),
    ("channel", "room2"),
    ("messageSize", 6),
    ("messageSignature", "AAAA"),
])
def test_modified_token_fails_seal(field, value, publisher, pubsub, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    obj = json.loads(envelope.token)
    obj[field] = value
    forged = json.dumps(obj, separators=(",", ":"))
    clock.advance(500)
    with pytest.raises(TokenSealMismatch):
        asyncio.run(publisher.publish(forged, envelope.token_signature, "hello", solve_for(forged)))
    assert pubsub.published == []


def test_forged_seal_rejected(publisher, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    forged_sig = crypto.sign(sender_keys[0], envelope.token.encode("utf-8"))
    with pytest.raises(TokenSealMismatch):
        asyncio.run(publisher.publish(envelope.token, forged_sig, "hello", solve_for(envelope.token)))


def test_sealed_subscribe_token_is_not_a_publish_token(publisher, subscriber, clock):
    envelope = asyncio.run(subscriber.initiate_subscribe(["room1"]))
    clock.advance(500)
    with pytest.raises(MalformedToken):
        redeem(publisher, envelope)


def test_message_size_mismatch(publisher, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    with pytest.raises(MessageSizeMismatch):
        redeem(publisher, envelope, message="hello!")


def test_message_substitution_same_size(publisher, pubsub, sender_keys, clock):
    envelope = initiate(publisher, sender_keys, "hello")
    clock.advance(500)
    with pytest.raises(InvalidMessageSignature):
        redeem(publisher, envelope, message="world")
    assert pubsub.published == []


def test_signature_from_other_identity(publisher, sender_keys, system_keys, clock):
    # Signed with one key, declared under another.
    sig = crypto.sign(system_keys[0], b"hello")
    envelope = asyncio.run(publisher.initiate_publish(sender_keys[1], "room1", 5, sig))
    clock.advance(500)
    with pytest.raises(InvalidMessageSignature):
        redeem(publisher, envelope)


def test_bad_proof_of_work(publisher, pubsub, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    with pytest.raises(InvalidProofOfWork):
        redeem(publisher, envelope, response=failing_response(envelope.token, 8))
    assert pubsub.published == []


@pytest.mark.parametrize("channel", ["", "room 1", "a/b", "room\n", "ché", "#x"])
def test_initiate_rejects_bad_channel(channel, publisher, sender_keys):
    with pytest.raises(InvalidChannel):
        initiate(publisher, sender_keys, channel=channel)


def test_initiate_accepts_channel_punctuation(publisher, sender_keys):
    initiate(publisher, sender_keys, channel="Team_1-a:b.c")


@pytest.mark.parametrize("size", [0, -1, 20_001])
def test_initiate_rejects_bad_size(size, publisher, sender_keys):
    with pytest.raises(InvalidMessageSize):
        initiate(publisher, sender_keys, size=size)


def test_initiate_size_bounds_inclusive(publisher, sender_keys):
    initiate(publisher, sender_keys, size=1)
    initiate(publisher, sender_keys, size=20_000)


def test_initiate_does_not_check_message_signature(publisher, sender_keys):
    # Deferred to redemption on purpose.
    envelope = asyncio.run(publisher.initiate_publish(sender_keys[1], "room1", 5, "bogus"))
    assert json.loads(envelope.token)["messageSignature"] == "bogus"


def test_long_message_size_in_utf16_units(publisher, pubsub, sender_keys, clock):
    message = '"grinning 😀"'
    envelope = initiate(publisher, sender_keys, message, size=len(message) + 1)
    clock.advance(500)
    redeem(publisher, envelope, message=message)
    assert len(pubsub.published) == 1


def test_pubsub_failure_is_substrate_error(config, sender_keys, clock):
    publisher = PublishProtocol(config, FailingPubsub(), clock=clock)
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    with pytest.raises(SubstrateError):
        redeem(publisher, envelope)


def test_pubsub_timeout_is_substrate_error(make_config, sender_keys, clock):
    publisher = PublishProtocol(make_config(timeout=0.05), SlowService(), clock=clock)
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    with pytest.raises(SubstrateError):
        redeem(publisher, envelope)


def test_replay_allowed_without_guard(publisher, pubsub, sender_keys, clock):
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    response = solve_for(envelope.token)
    redeem(publisher, envelope, response=response)
    redeem(publisher, envelope, response=response)
    assert len(pubsub.published) == 2


def test_replay_guard_blocks_second_redemption(config, pubsub, sender_keys, clock):
    guard = ReplayGuard(ttl_ms=60_000, clock=clock)
    publisher = PublishProtocol(config, pubsub, clock=clock, replay_guard=guard)
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    response = solve_for(envelope.token)
    redeem(publisher, envelope, response=response)
    with pytest.raises(TokenAlreadyRedeemed):
        redeem(publisher, envelope, response=response)
    assert len(pubsub.published) == 1


def test_replay_guard_ignores_rejected_attempts(config, pubsub, sender_keys, clock):
    guard = ReplayGuard(ttl_ms=60_000, clock=clock)
    publisher = PublishProtocol(config, pubsub, clock=clock, replay_guard=guard)
    envelope = initiate(publisher, sender_keys)
    clock.advance(100)
    with pytest.raises(TokenTooSoon):
        redeem(publisher, envelope)
    assert len(guard) == 0


class FlakyPubsub(RecordingPubsub):
    """Fails the first delivery, accepts the rest."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    async def publish(self, channel, message):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("pubsub is down")
        await super().publish(channel, message)


def test_substrate_failure_does_not_burn_redemption(config, sender_keys, clock):
    guard = ReplayGuard(ttl_ms=60_000, clock=clock)
    pubsub = FlakyPubsub()
    publisher = PublishProtocol(config, pubsub, clock=clock, replay_guard=guard)
    envelope = initiate(publisher, sender_keys)
    clock.advance(500)
    response = solve_for(envelope.token)
    with pytest.raises(SubstrateError):
        redeem(publisher, envelope, response=response)
    assert len(guard) == 0

    redeem(publisher, envelope, response=response)
    assert len(pubsub.published) == 1
    with pytest.raises(TokenAlreadyRedeemed):
        redeem(publisher, envelope, response=response)
