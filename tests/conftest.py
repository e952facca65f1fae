# Fleetwatch/tests/conftest.py
"""Shared fixtures: a controllable clock and a token factory bound to the test secret."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.pipeline.token_verifier import issue_token

TEST_SECRET = "fleetwatch-test-secret-0123456789abcdef"
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock. Tests move time with advance()."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mint(clock: FakeClock):
    """mint(claims, lifetime=300, issued_at=None) -> token signed with TEST_SECRET at clock time."""

    def _mint(claims: dict[str, Any], lifetime: int = 300, issued_at: datetime | None = None) -> str:
        return issue_token(claims, TEST_SECRET, lifetime_seconds=lifetime, now=issued_at or clock())

    return _mint
