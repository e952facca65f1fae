# Fleetwatch/src/config.py
# @ai-rules:
# 1. [Constraint]: Only this module reads os.environ. Everything else receives a Settings instance.
# 2. [Gotcha]: Secrets are excluded from repr -- never log Settings fields individually either.
# 3. [Pattern]: DEVICE_API_KEYS entries are "IDENTITY:key". Malformed entries are skipped with a warning.
"""Environment-driven configuration for Fleetwatch."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEV_TOKEN_SECRET = "fleetwatch-development-only-token-secret"


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(env: Mapping[str, str], name: str) -> tuple[str, ...]:
    raw = env.get(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_device_keys(entries: tuple[str, ...]) -> dict[str, str]:
    """Map device-scoped API key -> identity key."""
    keys: dict[str, str] = {}
    for entry in entries:
        identity, sep, key = entry.partition(":")
        if not sep or not identity or not key:
            logger.warning("Skipping malformed DEVICE_API_KEYS entry (expected IDENTITY:key)")
            continue
        keys[key] = identity
    return keys


@dataclass(frozen=True)
class RateLimitSettings:
    """Admissions allowed per fixed window, per route class."""
    telemetry_limit: int = 60
    telemetry_window: int = 60
    alert_limit: int = 10
    alert_window: int = 60
    lifecycle_limit: int = 5
    lifecycle_window: int = 60
    general_limit: int = 100
    general_window: int = 900


@dataclass(frozen=True)
class RuleSettings:
    """Thresholds and dedup windows for the built-in alert rules."""
    low_power_dedup_minutes: float = 30.0
    temperature_dedup_minutes: float = 15.0
    position_dedup_minutes: float = 30.0
    low_power_critical_floor: float = 5.0
    default_power_threshold: float = 20.0
    temperature_low: float = -10.0
    temperature_high: float = 60.0


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    debug: bool = False
    storage_backend: str = "redis"

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = field(default="", repr=False)
    redis_db: int = 0
    redis_retry_attempts: int = 10
    redis_retry_delay: float = 2.0

    token_secret: str = field(default=DEV_TOKEN_SECRET, repr=False)
    token_max_lifetime_seconds: int = 300
    token_clock_skew_seconds: int = 0

    master_api_key: Optional[str] = field(default=None, repr=False)
    api_keys: tuple[str, ...] = field(default=(), repr=False)
    device_api_keys: dict[str, str] = field(default_factory=dict, repr=False)
    trust_proxy: bool = False

    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    rules: RuleSettings = field(default_factory=RuleSettings)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def auth_configured(self) -> bool:
        return bool(self.master_api_key or self.api_keys or self.device_api_keys)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build Settings from environment variables.

        Raises ValueError in production when TOKEN_SECRET is not set, since
        the development fallback secret is public.
        """
        env = os.environ if env is None else env
        environment = env.get("FLEETWATCH_ENV", "development")

        token_secret = env.get("TOKEN_SECRET", "")
        if not token_secret:
            if environment == "production":
                raise ValueError("TOKEN_SECRET must be set in production")
            logger.warning("TOKEN_SECRET not set -- using development secret")
            token_secret = DEV_TOKEN_SECRET

        rate_limits = RateLimitSettings(
            telemetry_limit=int(env.get("RATE_TELEMETRY_LIMIT", "60")),
            telemetry_window=int(env.get("RATE_TELEMETRY_WINDOW", "60")),
            alert_limit=int(env.get("RATE_ALERT_LIMIT", "10")),
            alert_window=int(env.get("RATE_ALERT_WINDOW", "60")),
            lifecycle_limit=int(env.get("RATE_LIFECYCLE_LIMIT", "5")),
            lifecycle_window=int(env.get("RATE_LIFECYCLE_WINDOW", "60")),
            general_limit=int(env.get("RATE_GENERAL_LIMIT", "100")),
            general_window=int(env.get("RATE_GENERAL_WINDOW", "900")),
        )
        rules = RuleSettings(
            low_power_dedup_minutes=float(env.get("LOW_POWER_DEDUP_MINUTES", "30")),
            temperature_dedup_minutes=float(env.get("TEMPERATURE_DEDUP_MINUTES", "15")),
            position_dedup_minutes=float(env.get("POSITION_DEDUP_MINUTES", "30")),
            low_power_critical_floor=float(env.get("LOW_POWER_CRITICAL_FLOOR", "5.0")),
            default_power_threshold=float(env.get("DEFAULT_POWER_THRESHOLD", "20.0")),
        )

        return cls(
            environment=environment,
            debug=bool(env.get("DEBUG")),
            storage_backend=env.get("STORAGE_BACKEND", "redis").lower(),
            redis_host=env.get("REDIS_HOST", "localhost"),
            redis_port=int(env.get("REDIS_PORT", "6379")),
            redis_password=env.get("REDIS_PASSWORD", ""),
            redis_db=int(env.get("REDIS_DB", "0")),
            redis_retry_attempts=int(env.get("REDIS_RETRY_ATTEMPTS", "10")),
            redis_retry_delay=float(env.get("REDIS_RETRY_DELAY", "2.0")),
            token_secret=token_secret,
            token_max_lifetime_seconds=int(env.get("TOKEN_MAX_LIFETIME_SECONDS", "300")),
            token_clock_skew_seconds=int(env.get("TOKEN_CLOCK_SKEW_SECONDS", "0")),
            master_api_key=env.get("API_KEY") or None,
            api_keys=_env_list(env, "API_KEYS"),
            device_api_keys=_parse_device_keys(_env_list(env, "DEVICE_API_KEYS")),
            trust_proxy=_env_bool(env, "TRUST_PROXY"),
            rate_limits=rate_limits,
            rules=rules,
        )
