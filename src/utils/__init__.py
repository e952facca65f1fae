# Fleetwatch/src/utils/__init__.py
"""Utility modules for Fleetwatch."""

from .clock import Clock, ensure_utc, utc_now

__all__ = ["Clock", "ensure_utc", "utc_now"]
