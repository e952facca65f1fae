# Fleetwatch/scripts/mint_token.py
# @ai-rules:
# 1. [Constraint]: Reads the secret from TOKEN_SECRET or --secret. Never prints the secret.
# 2. [Pattern]: --post sends the token to a running server with httpx, like a field device would.
"""
Mint a device token for manual testing.

Every positional KEY=VALUE becomes a claim. Values are parsed as JSON when
possible (numbers, booleans, objects), otherwise kept as strings.

Usage:
  TOKEN_SECRET=... python -m scripts.mint_token identityKey=DEV1 powerReading=3.1 temperature=72
  TOKEN_SECRET=... python -m scripts.mint_token identityKey=DEV1 ruleType=tampering message="lid open" \
      --post http://localhost:8000/api/v1/alert --api-key $API_KEY
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.pipeline.token_verifier import DEFAULT_MAX_LIFETIME_SECONDS, issue_token

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger("fleetwatch.mint")


def parse_claims(pairs: list[str]) -> dict:
    claims: dict = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {pair!r}")
        try:
            claims[key] = json.loads(raw)
        except json.JSONDecodeError:
            claims[key] = raw
    return claims


def main() -> int:
    parser = argparse.ArgumentParser(description="Mint a Fleetwatch device token")
    parser.add_argument("claims", nargs="+", help="KEY=VALUE claims")
    parser.add_argument("--secret", default=os.getenv("TOKEN_SECRET", ""), help="HS256 secret (default: $TOKEN_SECRET)")
    parser.add_argument("--lifetime", type=int, default=DEFAULT_MAX_LIFETIME_SECONDS, help="Seconds until exp")
    parser.add_argument("--post", metavar="URL", help="POST {\"token\": ...} to this URL instead of printing")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""), help="X-API-Key for --post")
    args = parser.parse_args()

    if not args.secret:
        parser.error("TOKEN_SECRET is not set and --secret was not given")

    token = issue_token(parse_claims(args.claims), args.secret, lifetime_seconds=args.lifetime)

    if not args.post:
        print(token)
        return 0

    response = httpx.post(
        args.post,
        json={"token": token},
        headers={"X-API-Key": args.api_key},
        timeout=10.0,
    )
    logger.info(f"POST {args.post} -> {response.status_code}")
    print(json.dumps(response.json(), indent=2))
    return 0 if response.is_success else 1


if __name__ == "__main__":
    sys.exit(main())
