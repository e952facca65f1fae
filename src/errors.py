# Fleetwatch/src/errors.py
# @ai-rules:
# 1. [Pattern]: Every rejection the pipeline produces is a FleetwatchError subclass. Routes never build HTTPException.
# 2. [Constraint]: `reason` strings are a stable contract with field devices -- do not rename.
# 3. [Gotcha]: messages are shown to callers. Never put token text, signatures or secrets in them.
"""Error taxonomy for the ingestion and alerting pipeline."""
from __future__ import annotations

from typing import Any, Optional


class FleetwatchError(Exception):
    """Base class. Carries the HTTP status, a machine reason and optional field errors."""

    status_code: int = 500
    reason: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[str] = None,
        errors: Optional[list[dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason
        self.errors = errors


class AuthenticationFailure(FleetwatchError):
    """Bad signature, expired or not-yet-valid credential, or missing/invalid API key."""
    status_code = 401
    reason = "authentication_failed"


class PayloadShapeError(FleetwatchError):
    """Missing mandatory fields, wrong types, or an undecodable token."""
    status_code = 400
    reason = "payload_invalid"


class RateGoverned(FleetwatchError):
    status_code = 429
    reason = "rate_limited"

    def __init__(self, message: str, *, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class IdentityMismatch(FleetwatchError):
    """Caller credential is bound to a different identity than the payload claims."""
    status_code = 403
    reason = "identity_mismatch"


class AdminRequired(FleetwatchError):
    status_code = 403
    reason = "admin_required"


class IllegalStateTransition(FleetwatchError):
    """Lifecycle command not legal from the alert's current state."""
    status_code = 400
    reason = "illegal_transition"

    def __init__(self, alert_id: str, current: str, attempted: str):
        super().__init__(
            f"Cannot {attempted} alert {alert_id}: transition {current} -> {attempted} is not allowed"
        )
        self.alert_id = alert_id
        self.current = current
        self.attempted = attempted


class NotFound(FleetwatchError):
    status_code = 404
    reason = "not_found"


class StoreUnavailable(FleetwatchError):
    status_code = 503
    reason = "store_unavailable"
