# Fleetwatch/src/pipeline/stats.py
"""Stats Aggregator: composes the store's aggregate and trend queries under one archived policy."""
from __future__ import annotations

from datetime import datetime

from ..models import AlertFilter, AlertStats
from ..state.alert_store import AlertStore


class StatsAggregator:
    def __init__(self, store: AlertStore, trend_hours: int = 24):
        self.store = store
        self.trend_hours = trend_hours

    async def summary(self, alert_filter: AlertFilter, now: datetime) -> AlertStats:
        stats = await self.store.aggregate(alert_filter)
        stats.trend = await self.store.hourly_trend(alert_filter, now, hours=self.trend_hours)
        return stats
