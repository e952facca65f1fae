# Fleetwatch/src/pipeline/token_verifier.py
# @ai-rules:
# 1. [Constraint]: HS256 only. Tokens with any other alg (including "none") are malformed, not unsigned-but-ok.
# 2. [Pattern]: PyJWT's own time checks are disabled; iat/nbf/exp/max-age are checked here against the injected clock.
# 3. [Gotcha]: The token string and signature never reach a log line or an error message.
"""
Device payload token verification.

Every telemetry or alert submission carries its claims inside a short-lived
HS256 JWT. Verification order:
    1. Decode + signature (malformed -> 400, bad signature -> 401)
    2. iat / nbf not in the future (beyond the configured skew)
    3. exp not reached
    4. now - iat <= max lifetime, whatever exp says
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import jwt

from ..errors import AuthenticationFailure, PayloadShapeError
from ..models import TokenClaims
from ..utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_MAX_LIFETIME_SECONDS = 300
DEFAULT_ISSUER = "fleetwatch-device"
RESERVED_CLAIMS = frozenset({"iss", "iat", "exp", "nbf", "jti", "aud", "sub"})

_DECODE_OPTIONS = {
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "require": ["iat", "exp"],
}


def _numeric(claims: dict[str, Any], name: str) -> Optional[float]:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadShapeError(
            f"Claim '{name}' must be a numeric timestamp",
            errors=[{"field": name, "message": "must be a numeric timestamp"}],
        )
    return float(value)


class TokenVerifier:
    """
    Stateless verifier. Safe to share across concurrent requests.

    The only state is the read-only secret and the limits.
    """

    def __init__(
        self,
        secret: str,
        max_lifetime_seconds: int = DEFAULT_MAX_LIFETIME_SECONDS,
        clock_skew_seconds: int = 0,
        clock: Clock = utc_now,
    ):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self.max_lifetime_seconds = max_lifetime_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    def verify(self, token: Any) -> TokenClaims:
        if not isinstance(token, str) or not token.strip():
            raise PayloadShapeError("A signed token is required", reason="token_missing")
        token = token.strip()

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError:
            raise PayloadShapeError("Token could not be decoded", reason="token_malformed")
        if header.get("alg") != ALGORITHM:
            raise PayloadShapeError(
                f"Token must be signed with {ALGORITHM}", reason="token_malformed"
            )

        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM], options=_DECODE_OPTIONS)
        except jwt.InvalidSignatureError:
            raise AuthenticationFailure("Token signature is invalid", reason="token_signature_invalid")
        except jwt.MissingRequiredClaimError as e:
            raise PayloadShapeError(
                f"Token is missing the '{e.claim}' claim",
                errors=[{"field": e.claim, "message": "required claim missing"}],
            )
        except jwt.InvalidTokenError as e:
            logger.debug(f"Token rejected as malformed: {type(e).__name__}")
            raise PayloadShapeError("Token could not be decoded", reason="token_malformed")

        if not isinstance(claims, dict):
            raise PayloadShapeError("Token claims must be an object", reason="token_malformed")

        issued_at = _numeric(claims, "iat")
        expires_at = _numeric(claims, "exp")
        not_before = _numeric(claims, "nbf")
        now = self._clock().timestamp()
        skew = self.clock_skew_seconds

        if issued_at > now + skew or (not_before is not None and not_before > now + skew):
            raise AuthenticationFailure(
                "Token is not yet valid; check the device clock",
                reason="token_not_yet_valid",
            )
        if now >= expires_at:
            raise AuthenticationFailure(
                "Token has expired; mint a fresh token", reason="token_expired"
            )
        if now - issued_at > self.max_lifetime_seconds:
            raise AuthenticationFailure(
                f"Token is older than {self.max_lifetime_seconds}s; mint a fresh token",
                reason="token_lifetime_exceeded",
            )

        issuer = claims.get("iss")
        return TokenClaims(
            issuer=issuer if isinstance(issuer, str) else None,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            payload={k: v for k, v in claims.items() if k not in RESERVED_CLAIMS},
        )


def peek_claims(token: Any) -> Optional[dict[str, Any]]:
    """
    Decode claims WITHOUT verifying anything.

    Only used to derive a rate-governance admission key before verification.
    Never trust the result for anything else.
    """
    if not isinstance(token, str) or not token.strip():
        return None
    try:
        claims = jwt.decode(token.strip(), options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    return claims if isinstance(claims, dict) else None


def issue_token(
    claims: dict[str, Any],
    secret: str,
    lifetime_seconds: int = DEFAULT_MAX_LIFETIME_SECONDS,
    now: Optional[datetime] = None,
    issuer: str = DEFAULT_ISSUER,
) -> str:
    """Mint a device token. Used by scripts/mint_token.py and tests."""
    issued = int((now or utc_now()).timestamp())
    payload = dict(claims)
    payload.setdefault("iss", issuer)
    payload.setdefault("iat", issued)
    payload.setdefault("exp", issued + lifetime_seconds)
    return jwt.encode(payload, secret, algorithm=ALGORITHM)
