# Fleetwatch/src/auth.py
# @ai-rules:
# 1. [Constraint]: Keys are compared with hmac.compare_digest only. Never ==, never a dict lookup on the raw key.
# 2. [Pattern]: CallerContext is the single caller abstraction -- all consumers use .label for logs and actor fields.
# 3. [Gotcha]: Device-scoped keys carry identity_key. Master and standard keys carry None (may act for any identity).
"""Caller API-key authentication.

Three key kinds, all supplied out of band:
    API_KEY          master   -> may archive alerts
    API_KEYS         standard -> any identity, no admin actions
    DEVICE_API_KEYS  device   -> bound to one identity (IDENTITY:key)

Presented via the X-API-Key header or the apiKey query parameter.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Literal, Optional

from .config import Settings
from .errors import AdminRequired, AuthenticationFailure

logger = logging.getLogger(__name__)

KeyType = Literal["master", "standard", "device"]


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller."""
    key_type: KeyType
    identity_key: Optional[str] = None

    @property
    def label(self) -> str:
        if self.key_type == "device":
            return f"device:{self.identity_key}"
        return self.key_type

    @property
    def is_master(self) -> bool:
        return self.key_type == "master"

    def require_master(self) -> None:
        if not self.is_master:
            raise AdminRequired("This action requires the master API key")


def _matches(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode(), expected.encode())


def bound_identity(presented: Optional[str], settings: Settings) -> Optional[str]:
    """Identity a device-scoped key is bound to, or None. Does not authenticate."""
    if not presented:
        return None
    bound: Optional[str] = None
    for key, identity in settings.device_api_keys.items():
        if _matches(presented, key):
            bound = identity
    return bound


def authenticate_caller(presented: Optional[str], settings: Settings) -> CallerContext:
    """Resolve a presented API key to a CallerContext or raise AuthenticationFailure."""
    if not settings.auth_configured:
        logger.error("No API keys configured -- rejecting request")
        raise AuthenticationFailure("Server authentication is not configured", reason="auth_not_configured")
    if not presented:
        raise AuthenticationFailure("API key is required", reason="api_key_missing")

    if settings.master_api_key and _matches(presented, settings.master_api_key):
        return CallerContext(key_type="master")

    # Evaluate every candidate so timing does not reveal which list matched.
    standard = False
    for key in settings.api_keys:
        standard = _matches(presented, key) or standard
    bound = bound_identity(presented, settings)

    if bound is not None:
        return CallerContext(key_type="device", identity_key=bound)
    if standard:
        return CallerContext(key_type="standard")
    raise AuthenticationFailure("API key is invalid", reason="api_key_invalid")
