"""
hchat gateway configuration.

Everything is read once at startup. A missing or broken value is a
ConfigError there, never a surprise at request time.
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidKey, UnsupportedAlgorithm

from . import crypto
from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_DIFFICULTY = 13
DEFAULT_DELAY_MS = 500
DEFAULT_SUBSTRATE_TIMEOUT = 10.0
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9100


@dataclass(frozen=True)
class PolicyConfig:
    """Cost of one action: PoW difficulty (bits) and minimum delay (ms)."""
    difficulty: int = DEFAULT_DIFFICULTY
    delay: int = DEFAULT_DELAY_MS

    def __post_init__(self) -> None:
        if self.difficulty < 0 or self.difficulty > 160:
            raise ConfigError(f"difficulty must be within 0..160, got {self.difficulty}")
        if self.delay < 0:
            raise ConfigError(f"delay must be non-negative, got {self.delay}")


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class ServerConfig:
    """
    Complete gateway configuration.

    The system keypair signs token seals and message attestations. The
    pubsub keys belong to the distribution service; the secret key is what
    the access manager signs read grants with.
    """
    system_public_key: str
    system_private_key: Any
    pubsub_subscribe_key: str
    pubsub_publish_key: str
    pubsub_secret_key: str
    publish_policy: PolicyConfig = field(default_factory=PolicyConfig)
    subscribe_policy: PolicyConfig = field(default_factory=PolicyConfig)
    substrate_timeout: float = DEFAULT_SUBSTRATE_TIMEOUT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """
        Load from environment variables.

        Required: SYSTEM_PUBLIC_KEY, SYSTEM_PRIVATE_KEY, PUBSUB_SUBSCRIBE_KEY,
        PUBSUB_PUBLISH_KEY, PUBSUB_SECRET_KEY. Optional: HCHAT_{PUBLISH,SUBSCRIBE}_
        {DIFFICULTY,DELAY}, HCHAT_SUBSTRATE_TIMEOUT, HCHAT_HOST, HCHAT_PORT,
        HCHAT_LOG_LEVEL.
        """
        env = os.environ if environ is None else environ

        public_key = _required(env, "SYSTEM_PUBLIC_KEY")
        try:
            private_key = crypto.load_private_key_b64(_required(env, "SYSTEM_PRIVATE_KEY"))
        except (ValueError, TypeError, InvalidKey, UnsupportedAlgorithm) as exc:
            raise ConfigError(f"SYSTEM_PRIVATE_KEY is not a usable RSA key: {exc}") from exc
        if not crypto.keys_match(private_key, "".join(public_key.split())):
            raise ConfigError("SYSTEM_PUBLIC_KEY does not match SYSTEM_PRIVATE_KEY")

        config = cls(
            system_public_key="".join(public_key.split()),
            system_private_key=private_key,
            pubsub_subscribe_key=_required(env, "PUBSUB_SUBSCRIBE_KEY"),
            pubsub_publish_key=_required(env, "PUBSUB_PUBLISH_KEY"),
            pubsub_secret_key=_required(env, "PUBSUB_SECRET_KEY"),
            publish_policy=PolicyConfig(
                difficulty=_int(env, "HCHAT_PUBLISH_DIFFICULTY", DEFAULT_DIFFICULTY),
                delay=_int(env, "HCHAT_PUBLISH_DELAY", DEFAULT_DELAY_MS),
            ),
            subscribe_policy=PolicyConfig(
                difficulty=_int(env, "HCHAT_SUBSCRIBE_DIFFICULTY", DEFAULT_DIFFICULTY),
                delay=_int(env, "HCHAT_SUBSCRIBE_DELAY", DEFAULT_DELAY_MS),
            ),
            substrate_timeout=_float(env, "HCHAT_SUBSTRATE_TIMEOUT", DEFAULT_SUBSTRATE_TIMEOUT),
            host=env.get("HCHAT_HOST", DEFAULT_HOST),
            port=_int(env, "HCHAT_PORT", DEFAULT_PORT),
            log=LogConfig(level=env.get("HCHAT_LOG_LEVEL", "INFO").upper()),
        )
        logger.info(
            "Loaded config: publish policy %s, subscribe policy %s",
            config.publish_policy, config.subscribe_policy,
        )
        return config


def _required(env: Mapping[str, str], name: str) -> str:
    value = env.get(name)
    if not value:
        raise ConfigError(f"Missing {name}")
    return value


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive")
    return value
