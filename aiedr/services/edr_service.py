"""
AI Endpoint Detection & Response engine.

One ThreatDetectionEngine is built at startup and handed to callers; it owns
the pattern analyzer, the optional AI intent classifier, the conversation
threat tracker, the host auditor and the alert/audit store.

Flow for every analyzed message:
1. Validate input at the boundary (empty/oversized content is rejected)
2. Pattern analysis (always)
3. AI intent analysis fused on top (when enabled and a classifier exists)
4. Attack attempts recorded against the conversation
5. Alerts and audit entries published together, then persisted

The engine only emits decisions. Blocking is up to the caller, who reports
it back through record_blocked().
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from aiedr.services.base import ConfigurationError, EngineSettings, Validator
from aiedr.services.conversation_tracker import ConversationThreatState, ConversationThreatTracker
from aiedr.services.event_store import AlertAuditStore
from aiedr.services.host_auditor import HostSecurityAuditor
from aiedr.services.intent_analyzer import (
    ClassifierClient,
    IntentClassifier,
    build_classifier_client,
    fuse_verdict,
)
from aiedr.services.persistence import EnginePersistence, InMemoryPersistence
from aiedr.services.threat_analyzer import ThreatAnalyzer
from aiedr.services.threat_types import (
    AlertSource,
    AuditEntry,
    AuditEventType,
    HostSecurityReport,
    SecurityAlert,
    ThreatAnalysis,
    ThreatLevel,
)

logger = logging.getLogger(__name__)

# Settings that require a new classifier client when changed
CLASSIFIER_SETTINGS = frozenset({
    "use_ai_analysis",
    "classifier_provider",
    "ai_analysis_model_id",
    "ollama_url",
    "classifier_timeout_seconds",
})


class Decision(str, Enum):
    """What the caller should do with an analyzed message."""
    BLOCK = "block"
    CONFIRM = "confirm"
    ALLOW = "allow"


class ThreatDetectionEngine:
    """Facade over detection, escalation tracking, host auditing and storage."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        classifier_client: Optional[ClassifierClient] = None,
        analyzer: Optional[ThreatAnalyzer] = None,
        tracker: Optional[ConversationThreatTracker] = None,
        auditor: Optional[HostSecurityAuditor] = None,
        persistence: Optional[EnginePersistence] = None,
    ):
        self.settings = settings or EngineSettings()
        self.analyzer = analyzer or ThreatAnalyzer()
        self.tracker = tracker or ConversationThreatTracker()
        self.auditor = auditor or HostSecurityAuditor()
        self.store = AlertAuditStore(
            max_audit_entries=self.settings.max_audit_entries,
            persistence=persistence or InMemoryPersistence(),
        )

        # An injected client is kept across settings changes
        self._owns_classifier = classifier_client is None
        client = classifier_client if classifier_client is not None else build_classifier_client(self.settings)
        self.classifier = self._wrap_classifier(client)

        self.last_host_report: Optional[HostSecurityReport] = None
        self._host_check_lock = asyncio.Lock()

    def _wrap_classifier(self, client: Optional[ClassifierClient]) -> Optional[IntentClassifier]:
        if client is None:
            return None
        return IntentClassifier(
            client,
            timeout=self.settings.classifier_timeout_seconds,
            context_messages=self.settings.classifier_context_messages,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def load_state(self) -> bool:
        """Restore alerts, audit log and counters from persistence."""
        return await self.store.load()

    async def save(self) -> bool:
        return await self.store.persist()

    async def close(self) -> None:
        await self.store.persist()
        if self.store.persistence is not None:
            await self.store.persistence.close()

    # =========================================================================
    # Message analysis
    # =========================================================================

    def _validate_content(self, content: Any) -> str:
        return Validator.validate_string(content, "content", max_length=self.settings.max_content_length)

    async def analyze_prompt(
        self,
        content: str,
        conversation_context: Sequence[str] = (),
        conversation_id: Optional[str] = None,
    ) -> ThreatAnalysis:
        """
        Analyze an inbound user message.

        Raises ValidationError for empty or oversized content. Classifier
        failures never surface; the pattern result stands on its own.
        """
        content = self._validate_content(content)
        conversation_id = Validator.validate_identifier(conversation_id, "conversation_id")

        if not self.settings.enabled:
            return ThreatAnalysis.clean(content)

        analysis = self.analyzer.analyze_prompt(content)
        state = self.tracker.peek(conversation_id) if conversation_id else None

        ai_audit_entry: Optional[AuditEntry] = None
        if self.settings.use_ai_analysis and self.classifier is not None:
            context = self.classifier.build_context(
                conversation_context,
                state.security_context() if state else None,
            )
            verdict = await self.classifier.classify(content, context, AlertSource.USER_PROMPT)
            if verdict is not None:
                fusion = fuse_verdict(
                    analysis,
                    verdict,
                    content,
                    state=state,
                    source=AlertSource.USER_PROMPT,
                    conversation_id=conversation_id,
                )
                analysis = fusion.analysis
                ai_audit_entry = fusion.audit_entry

        if conversation_id and analysis.alerts:
            await self.tracker.record_attack_attempts(conversation_id, analysis.alerts)

        self._publish(analysis, AlertSource.USER_PROMPT, conversation_id, extra_entries=[ai_audit_entry])
        await self.store.persist()
        return analysis

    async def analyze_response(self, content: str, conversation_id: Optional[str] = None) -> ThreatAnalysis:
        """Analyze an outbound model response. Credentials are redacted in sanitized_content."""
        content = self._validate_content(content)
        conversation_id = Validator.validate_identifier(conversation_id, "conversation_id")

        if not self.settings.enabled:
            return ThreatAnalysis.clean(content)

        # Only user prompts escalate a conversation
        analysis = self.analyzer.analyze_response(content)

        extra: List[Optional[AuditEntry]] = []
        if analysis.sanitized_content != content:
            extra.append(AuditEntry(
                event_type=AuditEventType.DATA_REDACTION,
                description="Credentials redacted from model response",
                severity=ThreatLevel.CRITICAL,
                conversation_id=conversation_id,
            ))

        self._publish(analysis, AlertSource.MODEL_RESPONSE, conversation_id, extra_entries=extra)
        await self.store.persist()
        return analysis

    def _publish(
        self,
        analysis: ThreatAnalysis,
        source: AlertSource,
        conversation_id: Optional[str],
        extra_entries: Sequence[Optional[AuditEntry]] = (),
    ) -> None:
        """Write a call's alerts and audit entries in one synchronous step."""
        self.store.add_alerts(analysis.alerts)

        for entry in extra_entries:
            if entry is not None:
                self.store.add_audit_entry(entry)

        where = "user prompt" if source == AlertSource.USER_PROMPT else "model response"
        if not analysis.is_clean:
            self.store.add_audit_entry(AuditEntry(
                event_type=AuditEventType.THREAT_DETECTED,
                description=f"{len(analysis.alerts)} threat(s) detected in {where}",
                severity=analysis.threat_level,
                conversation_id=conversation_id,
                metadata={
                    "alert_count": str(len(analysis.alerts)),
                    "threat_level": analysis.threat_level.value,
                    "alert_types": ",".join(sorted({a.type.value for a in analysis.alerts})),
                    "confidence": f"{analysis.confidence:.2f}",
                },
            ))
            logger.warning(
                f"🚨 Threat in {where}: level={analysis.threat_level.value}, alerts={len(analysis.alerts)}",
                extra={
                    "conversation_id": conversation_id,
                    "threat_level": analysis.threat_level.value,
                    "alert_type": analysis.alerts[0].type.value,
                },
            )
        elif not self.settings.log_threats_only:
            event_type = AuditEventType.MESSAGE_SENT if source == AlertSource.USER_PROMPT else AuditEventType.MESSAGE_RECEIVED
            self.store.add_audit_entry(AuditEntry(
                event_type=event_type,
                description=f"Analyzed {where}: clean",
                conversation_id=conversation_id,
                metadata={"alert_count": "0", "threat_level": ThreatLevel.NORMAL.value},
            ))

    # =========================================================================
    # Decisions & enforcement feedback
    # =========================================================================

    def decide(self, analysis: ThreatAnalysis) -> Decision:
        if analysis.requires_blocking and self.settings.auto_block_critical:
            return Decision.BLOCK
        if analysis.requires_user_confirmation and self.settings.prompt_on_high:
            return Decision.CONFIRM
        return Decision.ALLOW

    async def record_blocked(self, analysis: ThreatAnalysis, conversation_id: Optional[str] = None) -> int:
        return await self.record_blocked_alerts([a.id for a in analysis.alerts], conversation_id)

    async def record_blocked_alerts(self, alert_ids: Sequence[str], conversation_id: Optional[str] = None) -> int:
        """
        Caller blocked a message whose alerts were already published.

        Marks those alerts mitigated and raises the conversation's blocked
        count without appending the attempts again. Returns how many alerts
        were newly marked.
        """
        conversation_id = Validator.validate_identifier(conversation_id, "conversation_id")

        self.store.record_blocked_threat()
        mitigated = self.store.mark_mitigated(alert_ids)
        self.store.add_audit_entry(AuditEntry(
            event_type=AuditEventType.THREAT_MITIGATED,
            description="Threat blocked",
            severity=ThreatLevel.HIGH,
            conversation_id=conversation_id,
            metadata={"alert_count": str(len(alert_ids)), "mitigated": str(mitigated)},
        ))

        if conversation_id:
            await self.tracker.mark_blocked(conversation_id)

        await self.store.persist()
        return mitigated

    # =========================================================================
    # Conversations
    # =========================================================================

    async def end_conversation(self, conversation_id: str) -> bool:
        conversation_id = Validator.validate_identifier(conversation_id, "conversation_id", allow_none=False)
        had_state = await self.tracker.clear_state(conversation_id)
        self.store.add_audit_entry(AuditEntry(
            event_type=AuditEventType.CONVERSATION_END,
            description="Conversation ended",
            conversation_id=conversation_id,
            metadata={"had_threat_state": "yes" if had_state else "no"},
        ))
        await self.store.persist()
        return had_state

    def conversation_state(self, conversation_id: str) -> Optional[ConversationThreatState]:
        return self.tracker.peek(conversation_id)

    # =========================================================================
    # Host security
    # =========================================================================

    async def check_host(self) -> HostSecurityReport:
        """Audit the host. Overlapping calls wait for the running audit."""
        async with self._host_check_lock:
            report = await self.auditor.audit_host()
            self.last_host_report = report

            self.store.add_audit_entry(AuditEntry(
                event_type=AuditEventType.HOST_SECURITY_CHECK,
                description=f"Host security check: {report.overall_threat_level.value}",
                severity=report.overall_threat_level,
                metadata={
                    "firewall": str(report.firewall_enabled),
                    "filevault": str(report.disk_encrypted),
                    "gatekeeper": str(report.gatekeeper_enabled),
                    "sip": str(report.system_integrity_protection),
                    "secure_boot": str(report.secure_boot_enabled),
                    "remote_login": str(report.remote_login_enabled),
                    "updates_pending": str(report.software_updates_pending),
                    "suspicious_processes": str(len(report.suspicious_processes)),
                    "suspicious_ports": str(len(report.suspicious_ports)),
                    "suspicious_login_items": str(len(report.suspicious_login_items)),
                    "suspicious_connections": str(len(report.suspicious_connections)),
                    "suspicious_kexts": str(len(report.suspicious_kernel_extensions)),
                },
            ))
            await self.store.persist()
            return report

    # =========================================================================
    # Settings
    # =========================================================================

    async def update_settings(self, new_settings: EngineSettings) -> Dict[str, Any]:
        """
        Swap in a new settings object and audit what changed.

        Raises ConfigurationError if the new settings don't validate.
        """
        problems = new_settings.validate()
        if problems:
            raise ConfigurationError("Invalid engine settings", problems)

        changes = self.settings.diff(new_settings)
        if not changes:
            return {}

        self.settings = new_settings
        if "max_audit_entries" in changes:
            self.store.set_max_audit_entries(new_settings.max_audit_entries)

        if self._owns_classifier and CLASSIFIER_SETTINGS & set(changes):
            self.classifier = self._wrap_classifier(build_classifier_client(new_settings))
        elif self.classifier is not None:
            self.classifier = self._wrap_classifier(self.classifier.client)

        self.store.add_audit_entry(AuditEntry(
            event_type=AuditEventType.SECURITY_SETTING_CHANGED,
            description=f"Settings changed: {', '.join(sorted(changes))}",
            metadata={key: str(value) for key, value in changes.items()},
        ))
        logger.info(f"Engine settings updated: {', '.join(sorted(changes))}")
        await self.store.persist()
        return changes

    # =========================================================================
    # Alerts & audit log
    # =========================================================================

    def current_threat_level(self) -> ThreatLevel:
        return self.store.current_threat_level()

    def active_alerts(self) -> List[SecurityAlert]:
        return self.store.active_alerts()

    def alerts(self) -> List[SecurityAlert]:
        return self.store.alerts()

    def audit_log(self, limit: Optional[int] = None) -> List[AuditEntry]:
        return self.store.audit_log(limit)

    async def acknowledge_alert(self, alert_id: str) -> bool:
        found = self.store.acknowledge(alert_id)
        if found:
            await self.store.persist()
        return found

    async def clear_alert(self, alert_id: str) -> bool:
        removed = self.store.clear_alert(alert_id)
        if removed:
            await self.store.persist()
        return removed

    async def clear_acknowledged_alerts(self) -> int:
        removed = self.store.clear_acknowledged_alerts()
        if removed:
            await self.store.persist()
        return removed

    async def export_audit_log(self) -> str:
        payload = self.store.export_audit_log()
        await self.store.persist()
        return payload

    async def clear_audit_log(self) -> int:
        removed = self.store.clear_audit_log()
        await self.store.persist()
        return removed

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.settings.enabled,
            "current_threat_level": self.current_threat_level().value,
            "active_alerts": len(self.store.active_alerts()),
            "total_alerts": len(self.store.alerts()),
            "audit_entries": len(self.store.audit_log()),
            "ai_analysis_enabled": self.settings.use_ai_analysis and self.classifier is not None,
            "tracked_conversations": len(self.tracker.active_conversations()),
            "last_host_check": self.last_host_report.timestamp.isoformat() if self.last_host_report else None,
            **self.store.counters(),
        }
