# Fleetwatch/src/pipeline/identity_tracker.py
"""Identity State Tracker: bump lastSeenAt, create on first contact, hand config to the rules."""
from __future__ import annotations

import logging
from datetime import datetime

from ..models import AlertSettings, Identity
from ..state.identity_store import IdentityStore

logger = logging.getLogger(__name__)


class IdentityTracker:
    def __init__(self, store: IdentityStore, default_power_threshold: float = 20.0):
        self.store = store
        self.default_power_threshold = default_power_threshold

    async def touch(self, identity_key: str, now: datetime) -> Identity:
        defaults = Identity(
            key=identity_key,
            label=identity_key,
            power_threshold=self.default_power_threshold,
            alert_settings=AlertSettings(),
            created_at=now,
            last_seen_at=now,
        )
        identity = await self.store.upsert_seen(defaults)
        if not identity.active:
            # Deactivation is owned by the registry; ingestion still records the sample.
            logger.info(f"Sample accepted for inactive identity {identity_key}")
        return identity
