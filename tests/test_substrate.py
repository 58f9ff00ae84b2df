"""
Tests for the in-process pubsub, access manager and replay guard
"""

import asyncio

import pytest

from conftest import FakeClock
from hchat.messages import PubsubMessage
from hchat.substrate import LocalAccessManager, ReplayGuard, local_substrates


def grant(access, channels, ttl=60):
    return asyncio.run(access.grant_read_token(channels, ttl))


def test_grant_scoped_to_channels(access):
    token = grant(access, ["a", "b"])
    assert access.validate(token, "a")
    assert not access.validate(token, "c")


def test_grant_from_other_secret_rejected(access, clock):
    other = LocalAccessManager(secret_key="not-ours", clock=clock)
    assert not access.validate(grant(other, ["a"]), "a")


@pytest.mark.parametrize("token", ["", "abc", "a.b", "!!!.???"])
def test_garbage_grant_rejected(token, access):
    assert not access.validate(token, "a")


def test_local_pubsub_read_needs_grant():
    clock = FakeClock()
    pubsub, access = local_substrates("s3cret", clock=clock)
    msg = PubsubMessage("pk", 1, "hello", "sig", "{}", "ssig", "spk")
    asyncio.run(pubsub.publish("a", msg))

    assert pubsub.read("a", grant(access, ["a"])) == [msg]
    with pytest.raises(PermissionError):
        pubsub.read("a", grant(access, ["b"]))


def test_local_pubsub_history_is_bounded():
    pubsub, access = local_substrates("s3cret")
    pubsub = type(pubsub)(access, history=2)
    for i in range(3):
        asyncio.run(pubsub.publish("a", PubsubMessage("pk", i, str(i), "sig", "{}", f"s{i}", "spk")))
    assert [m.timestamp for m in pubsub.read("a", grant(access, ["a"]))] == [1, 2]


def test_replay_guard_expires_entries():
    clock = FakeClock()
    guard = ReplayGuard(ttl_ms=1000, clock=clock)
    key = ReplayGuard.key_for("publish", "token", "sig")
    assert not guard.seen(key)
    guard.remember(key)
    assert guard.seen(key)
    clock.advance(1000)
    assert not guard.seen(key)
    assert len(guard) == 0


def test_replay_key_separates_parts():
    assert ReplayGuard.key_for("ab", "c") != ReplayGuard.key_for("a", "bc")


def test_replay_guard_forget_releases_key():
    guard = ReplayGuard(ttl_ms=1000, clock=FakeClock())
    key = ReplayGuard.key_for("subscribe", "token")
    guard.remember(key)
    guard.forget(key)
    guard.forget(key)
    assert not guard.seen(key)
