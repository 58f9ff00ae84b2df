"""
hchat test fixtures
"""

import asyncio
import json
from typing import List, Tuple

import pytest

from hchat import crypto, pow
from hchat.config import PolicyConfig, ServerConfig
from hchat.messages import PubsubMessage
from hchat.protocol import PublishProtocol, SubscribeProtocol
from hchat.substrate import LocalAccessManager

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingPubsub:
    """Distribution substrate that just remembers what it was given."""

    def __init__(self) -> None:
        self.published: List[Tuple[str, PubsubMessage]] = []

    async def publish(self, channel: str, message: PubsubMessage) -> None:
        self.published.append((channel, message))


class FailingPubsub:
    async def publish(self, channel, message):
        raise RuntimeError("pubsub is down")


class SlowService:
    """Never answers within any sane timeout."""

    async def publish(self, channel, message):
        await asyncio.sleep(10)

    async def grant_read_token(self, channels, ttl_minutes):
        await asyncio.sleep(10)


@pytest.fixture(scope="session")
def system_keys():
    priv, pub = crypto.generate_keypair()
    return priv, crypto.export_public_key_b64(pub)


@pytest.fixture(scope="session")
def sender_keys():
    priv, pub = crypto.generate_keypair()
    return priv, crypto.export_public_key_b64(pub)


@pytest.fixture
def make_config(system_keys):
    def _make(difficulty: int = 8, delay: int = 500, timeout: float = 1.0) -> ServerConfig:
        priv, pub_b64 = system_keys
        return ServerConfig(
            system_public_key=pub_b64,
            system_private_key=priv,
            pubsub_subscribe_key="sub-test",
            pubsub_publish_key="pub-test",
            pubsub_secret_key="secret-test",
            publish_policy=PolicyConfig(difficulty=difficulty, delay=delay),
            subscribe_policy=PolicyConfig(difficulty=difficulty, delay=delay),
            substrate_timeout=timeout,
        )
    return _make


@pytest.fixture
def config(make_config) -> ServerConfig:
    return make_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pubsub() -> RecordingPubsub:
    return RecordingPubsub()


@pytest.fixture
def access(clock) -> LocalAccessManager:
    return LocalAccessManager(secret_key="secret-test", clock=clock)


@pytest.fixture
def publisher(config, pubsub, clock) -> PublishProtocol:
    return PublishProtocol(config, pubsub, clock=clock)


@pytest.fixture
def subscriber(config, access, clock) -> SubscribeProtocol:
    return SubscribeProtocol(config, access, clock=clock)


def solve_for(token: str) -> str:
    """Solve a token at the difficulty written inside it."""
    return pow.solve(token, json.loads(token)["difficulty"])


def failing_response(token: str, difficulty: int) -> str:
    """A response that does NOT solve the puzzle."""
    i = 0
    while pow.check(token, f"x{i}", difficulty):
        i += 1
    return f"x{i}"
