"""
Alert & Audit Store.

Both collections are kept newest-first. The audit log is capped at
max_audit_entries on every insert; the oldest entries are dropped.

All mutations are synchronous, so a batch of alerts from one analysis is
published atomically with respect to other coroutines. Persisting is a
separate awaitable step (persist()).
"""

import json
import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from aiedr.services.persistence import EnginePersistence, PersistedState
from aiedr.services.threat_types import (
    AuditEntry,
    AuditEventType,
    SecurityAlert,
    ThreatLevel,
)

logger = logging.getLogger(__name__)


def _copy_alert(alert: SecurityAlert) -> SecurityAlert:
    return replace(alert, matched_patterns=list(alert.matched_patterns))


class AlertAuditStore:
    """In-memory alerts, audit log and counters with best-effort persistence."""

    def __init__(self, max_audit_entries: int = 10000, persistence: Optional[EnginePersistence] = None):
        self.max_audit_entries = max(1, max_audit_entries)
        self.persistence = persistence
        self._alerts: List[SecurityAlert] = []
        self._audit_log: List[AuditEntry] = []
        self.total_threats_detected = 0
        self.total_threats_blocked = 0

    # =========================================================================
    # Alerts
    # =========================================================================

    def add_alerts(self, alerts: Iterable[SecurityAlert]) -> int:
        """Insert a batch; each alert lands in front of the previous one."""
        added = 0
        for alert in alerts:
            self._alerts.insert(0, alert)
            added += 1
        self.total_threats_detected += added
        return added

    def get_alert(self, alert_id: str) -> Optional[SecurityAlert]:
        for alert in self._alerts:
            if alert.id == alert_id:
                return _copy_alert(alert)
        return None

    def alerts(self) -> List[SecurityAlert]:
        return [_copy_alert(a) for a in self._alerts]

    def active_alerts(self) -> List[SecurityAlert]:
        """Alerts not yet acknowledged, newest first."""
        return [_copy_alert(a) for a in self._alerts if not a.is_acknowledged]

    def acknowledge(self, alert_id: str) -> bool:
        """
        Acknowledge an alert. Acknowledging twice is a no-op.

        Returns False when the id is unknown.
        """
        for alert in self._alerts:
            if alert.id != alert_id:
                continue
            if not alert.is_acknowledged:
                alert.is_acknowledged = True
                self.add_audit_entry(AuditEntry(
                    event_type=AuditEventType.ALERT_ACKNOWLEDGED,
                    description=f"Alert acknowledged: {alert.type.display_name}",
                    severity=alert.severity,
                    metadata={"alert_id": alert.id, "alert_type": alert.type.value},
                ))
            return True
        return False

    def mark_mitigated(self, alert_ids: Iterable[str]) -> int:
        wanted = set(alert_ids)
        count = 0
        for alert in self._alerts:
            if alert.id in wanted and not alert.mitigation_applied:
                alert.mitigation_applied = True
                count += 1
        return count

    def clear_alert(self, alert_id: str) -> bool:
        """Remove an alert. Unknown ids are ignored."""
        before = len(self._alerts)
        self._alerts = [a for a in self._alerts if a.id != alert_id]
        return len(self._alerts) != before

    def clear_acknowledged_alerts(self) -> int:
        before = len(self._alerts)
        self._alerts = [a for a in self._alerts if not a.is_acknowledged]
        removed = before - len(self._alerts)
        if removed:
            logger.info(f"Cleared {removed} acknowledged alert(s)")
        return removed

    def current_threat_level(self) -> ThreatLevel:
        return ThreatLevel.highest(a.severity for a in self._alerts if not a.is_acknowledged)

    def record_blocked_threat(self, count: int = 1) -> None:
        self.total_threats_blocked += max(count, 0)

    # =========================================================================
    # Audit log
    # =========================================================================

    def add_audit_entry(self, entry: AuditEntry) -> None:
        self._audit_log.insert(0, entry)
        self._trim_audit_log()

    def audit_log(self, limit: Optional[int] = None) -> List[AuditEntry]:
        entries = self._audit_log if limit is None else self._audit_log[:limit]
        return [replace(e, metadata=dict(e.metadata)) for e in entries]

    def set_max_audit_entries(self, max_entries: int) -> None:
        self.max_audit_entries = max(1, max_entries)
        self._trim_audit_log()

    def _trim_audit_log(self) -> None:
        if len(self._audit_log) > self.max_audit_entries:
            dropped = len(self._audit_log) - self.max_audit_entries
            del self._audit_log[self.max_audit_entries:]
            logger.debug(f"Audit log at capacity, dropped {dropped} oldest entr{'y' if dropped == 1 else 'ies'}")

    def export_audit_log(self) -> str:
        """
        Serialize the full audit log as a JSON array.

        The export itself is audited after serialization, so it shows up in
        the next export rather than this one.
        """
        payload = json.dumps([e.to_dict() for e in self._audit_log], sort_keys=True, indent=2)
        self.add_audit_entry(AuditEntry(
            event_type=AuditEventType.EXPORT_REQUESTED,
            description="Audit log exported",
            metadata={"entry_count": str(len(self._audit_log))},
        ))
        return payload

    def clear_audit_log(self) -> int:
        removed = len(self._audit_log)
        self._audit_log = []
        logger.info(f"Audit log cleared ({removed} entries)")
        return removed

    # =========================================================================
    # Persistence
    # =========================================================================

    def counters(self) -> Dict[str, int]:
        return {
            "total_threats_detected": self.total_threats_detected,
            "total_threats_blocked": self.total_threats_blocked,
        }

    def snapshot(self) -> PersistedState:
        return PersistedState(
            alerts=self.alerts(),
            audit_log=self.audit_log(),
            total_threats_detected=self.total_threats_detected,
            total_threats_blocked=self.total_threats_blocked,
        )

    def restore(self, state: PersistedState) -> None:
        self._alerts = list(state.alerts)
        self._audit_log = list(state.audit_log)
        self.total_threats_detected = state.total_threats_detected
        self.total_threats_blocked = state.total_threats_blocked
        self._trim_audit_log()

    async def load(self) -> bool:
        if self.persistence is None:
            return False
        state = await self.persistence.load()
        if state is None:
            return False
        self.restore(state)
        logger.info(
            f"✅ Restored {len(self._alerts)} alert(s) and {len(self._audit_log)} audit entr(ies)"
        )
        return True

    async def persist(self) -> bool:
        """Save current state. Failures are logged by the backend and never raised."""
        if self.persistence is None:
            return False
        try:
            return await self.persistence.save(self.snapshot())
        except Exception as e:
            logger.error(f"Unexpected persistence failure, keeping in-memory state: {e}")
            return False
