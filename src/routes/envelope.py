# Fleetwatch/src/routes/envelope.py
"""Success envelope shared by all routers: {success, message, data, timestamp}."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from ..utils.clock import utc_now


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def ok(data: Any = None, message: str = "OK") -> dict:
    return {
        "success": True,
        "message": message,
        "data": _plain(data),
        "timestamp": utc_now().isoformat(),
    }
