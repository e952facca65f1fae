# Fleetwatch/src/pipeline/__init__.py
"""Ingestion and alerting pipeline components."""
from .identity_tracker import IdentityTracker
from .ingest import TelemetryPipeline
from .normalizer import SampleNormalizer
from .rate_governor import RateGovernor, RouteClass
from .rule_engine import AlertRuleEngine
from .stats import StatsAggregator
from .token_verifier import TokenVerifier, issue_token

__all__ = [
    "AlertRuleEngine",
    "IdentityTracker",
    "RateGovernor",
    "RouteClass",
    "SampleNormalizer",
    "StatsAggregator",
    "TelemetryPipeline",
    "TokenVerifier",
    "issue_token",
]
