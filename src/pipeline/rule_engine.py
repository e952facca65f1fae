# Fleetwatch/src/pipeline/rule_engine.py
# @ai-rules:
# 1. [Pattern]: Two phases per sample: decide every rule against pre-pass store state, THEN insert. Rules stay independent.
# 2. [Constraint]: Dedup looks for an unresolved, non-archived alert of the same (identity, ruleType) inside the rule's window.
# 3. [Gotcha]: check-then-insert is NOT locked. Two near-simultaneous samples may both raise; the dedup window bounds it.
#    Do not add a per-identity lock here -- it would serialize all ingestion for that identity.
# 4. [Pattern]: Suppression never mutates the existing alert.
"""Alert Rule Engine."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from ..models import Alert, Identity, TelemetrySample
from ..state.alert_store import AlertStore
from .rules import Rule, default_rules

logger = logging.getLogger(__name__)


class AlertRuleEngine:
    def __init__(self, store: AlertStore, rules: Optional[Sequence[Rule]] = None):
        self.store = store
        self.rules = list(rules) if rules is not None else default_rules()

    async def evaluate(self, sample: TelemetrySample, identity: Identity, now: datetime) -> list[Alert]:
        """Return the alerts raised (already persisted) for this sample."""
        to_raise: list[Alert] = []

        for rule in self.rules:
            if not rule.enabled(identity):
                continue
            match = rule.evaluate(sample, identity)
            if match is None:
                continue

            existing = await self.store.find_unresolved_since(
                identity.key, rule.rule_type, now - rule.dedup_window
            )
            if existing is not None:
                logger.debug(
                    f"Suppressed {rule.rule_type.value} for {identity.key}: "
                    f"{existing.id} still {existing.status.value} within {rule.dedup_window}"
                )
                continue

            to_raise.append(
                Alert(
                    identity_key=identity.key,
                    rule_type=rule.rule_type,
                    severity=match.severity,
                    title=match.title,
                    message=match.message,
                    position=sample.position,
                    data={**match.data, "sampleId": sample.id},
                    raised_at=now,
                )
            )

        for alert in to_raise:
            await self.store.insert(alert)
            logger.warning(
                f"Alert raised: {alert.id} {alert.rule_type.value}/{alert.severity.value} "
                f"for {alert.identity_key}"
            )
        return to_raise
