# Fleetwatch/tests/test_token_verifier.py
# @ai-rules:
# 1. [Constraint]: Pure unit tests -- no app, no stores. Clock is FakeClock from conftest.
# 2. [Pattern]: Each failure mode asserts the exception class AND the stable reason string.
"""TokenVerifier: signature, time bounds, max lifetime, malformed input."""
from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from conftest import TEST_SECRET
from src.errors import AuthenticationFailure, PayloadShapeError
from src.pipeline.token_verifier import TokenVerifier, issue_token, peek_claims


@pytest.fixture
def verifier(clock) -> TokenVerifier:
    return TokenVerifier(TEST_SECRET, clock=clock)


class TestValidTokens:
    def test_returns_payload_without_reserved_claims(self, verifier, mint):
        claims = verifier.verify(mint({"identityKey": "DEV1", "powerReading": 3.9}))
        assert claims.payload == {"identityKey": "DEV1", "powerReading": 3.9}
        assert claims.issuer == "fleetwatch-device"
        assert claims.expires_at - claims.issued_at == timedelta(seconds=300)

    def test_accepts_token_just_before_expiry(self, verifier, mint, clock):
        token = mint({"identityKey": "DEV1"})
        clock.advance(seconds=299)
        assert verifier.verify(token).payload["identityKey"] == "DEV1"

    def test_strips_surrounding_whitespace(self, verifier, mint):
        token = mint({"identityKey": "DEV1"})
        assert verifier.verify(f"  {token}\n").payload["identityKey"] == "DEV1"


class TestTimeBounds:
    def test_expired(self, verifier, mint, clock):
        token = mint({"identityKey": "DEV1"}, lifetime=60)
        clock.advance(seconds=61)
        with pytest.raises(AuthenticationFailure) as exc:
            verifier.verify(token)
        assert exc.value.reason == "token_expired"
        assert exc.value.status_code == 401

    def test_lifetime_cap_ignores_long_exp(self, verifier, mint, clock):
        """exp a day out does not extend acceptance past iat + 300s."""
        token = mint({"identityKey": "DEV1"}, lifetime=86400)
        clock.advance(seconds=301)
        with pytest.raises(AuthenticationFailure) as exc:
            verifier.verify(token)
        assert exc.value.reason == "token_lifetime_exceeded"

    def test_long_exp_accepted_inside_cap(self, verifier, mint, clock):
        token = mint({"identityKey": "DEV1"}, lifetime=86400)
        clock.advance(seconds=120)
        verifier.verify(token)

    def test_issued_in_future(self, verifier, mint, clock):
        token = mint({"identityKey": "DEV1"}, issued_at=clock() + timedelta(seconds=30))
        with pytest.raises(AuthenticationFailure) as exc:
            verifier.verify(token)
        assert exc.value.reason == "token_not_yet_valid"

    def test_skew_tolerance(self, mint, clock):
        lenient = TokenVerifier(TEST_SECRET, clock_skew_seconds=60, clock=clock)
        token = mint({"identityKey": "DEV1"}, issued_at=clock() + timedelta(seconds=30))
        assert lenient.verify(token).payload["identityKey"] == "DEV1"

    def test_nbf_in_future(self, verifier, mint, clock):
        nbf = int((clock() + timedelta(seconds=60)).timestamp())
        with pytest.raises(AuthenticationFailure) as exc:
            verifier.verify(mint({"identityKey": "DEV1", "nbf": nbf}))
        assert exc.value.reason == "token_not_yet_valid"


class TestRejections:
    def test_wrong_secret(self, verifier, clock):
        token = issue_token({"identityKey": "DEV1"}, "another-secret-that-is-long-enough-000", now=clock())
        with pytest.raises(AuthenticationFailure) as exc:
            verifier.verify(token)
        assert exc.value.reason == "token_signature_invalid"

    @pytest.mark.parametrize("token", [None, "", "   ", 42])
    def test_missing(self, verifier, token):
        with pytest.raises(PayloadShapeError) as exc:
            verifier.verify(token)
        assert exc.value.reason == "token_missing"

    def test_garbage(self, verifier):
        with pytest.raises(PayloadShapeError) as exc:
            verifier.verify("not-a-token")
        assert exc.value.reason == "token_malformed"
        assert exc.value.status_code == 400

    def test_unsigned_alg_none(self, verifier, clock):
        iat = int(clock().timestamp())
        token = jwt.encode({"identityKey": "DEV1", "iat": iat, "exp": iat + 60}, None, algorithm="none")
        with pytest.raises(PayloadShapeError) as exc:
            verifier.verify(token)
        assert exc.value.reason == "token_malformed"

    def test_missing_exp(self, verifier, clock):
        token = jwt.encode({"identityKey": "DEV1", "iat": int(clock().timestamp())}, TEST_SECRET, algorithm="HS256")
        with pytest.raises(PayloadShapeError) as exc:
            verifier.verify(token)
        assert exc.value.errors == [{"field": "exp", "message": "required claim missing"}]

    def test_message_never_contains_token(self, verifier, mint, clock):
        token = mint({"identityKey": "DEV1"}, lifetime=10)
        clock.advance(seconds=30)
        with pytest.raises(AuthenticationFailure) as exc:
            verifier.verify(token)
        assert token not in exc.value.message
        assert token.split(".")[2] not in str(exc.value)


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        TokenVerifier("")


def test_peek_claims_reads_without_verification(clock):
    token = issue_token({"identityKey": "DEV9"}, "some-other-secret-value-for-peeking-01", now=clock())
    assert peek_claims(token)["identityKey"] == "DEV9"
    assert peek_claims("garbage") is None
    assert peek_claims(None) is None
