"""
Threat data model shared by every AiEDR component.

Defines the ordered ThreatLevel scale, the attack taxonomy (AlertType grouped
into AttackCategory), alerts, per-call analyses, audit entries and the host
security report with its entity records.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from aiedr.services.base import utc_now


# =============================================================================
# THREAT LEVEL
# =============================================================================


class ThreatLevel(str, Enum):
    """Totally ordered severity scale: normal < elevated < high < critical."""
    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def highest(cls, levels: Iterable["ThreatLevel"]) -> "ThreatLevel":
        """Max-reduction; an empty iterable aggregates to NORMAL."""
        return max(levels, default=cls.NORMAL)


_LEVEL_RANK = {
    ThreatLevel.NORMAL: 0,
    ThreatLevel.ELEVATED: 1,
    ThreatLevel.HIGH: 2,
    ThreatLevel.CRITICAL: 3,
}


# =============================================================================
# ATTACK TAXONOMY
# =============================================================================


class AttackCategory(str, Enum):
    """The nine attack families."""
    PROMPT_MANIPULATION = "Prompt Manipulation"
    JAILBREAKING = "Jailbreaking"
    IDENTITY_MANIPULATION = "Identity Manipulation"
    DATA_THEFT = "Data Theft"
    MALICIOUS_OUTPUT = "Malicious Output"
    SOCIAL_ENGINEERING = "Social Engineering"
    EVASION_TECHNIQUES = "Evasion Techniques"
    MULTI_TURN_ATTACKS = "Multi-turn Attacks"
    INFRASTRUCTURE = "Infrastructure"


class AlertType(str, Enum):
    """Closed set of detectable attack variants."""
    # Prompt Manipulation
    PROMPT_INJECTION = "prompt_injection"
    INDIRECT_INJECTION = "indirect_injection"
    DELIMITER_ATTACK = "delimiter_attack"
    INSTRUCTION_OVERRIDE = "instruction_override"

    # Jailbreaking
    JAILBREAK_ATTEMPT = "jailbreak_attempt"
    DAN_MODE = "dan_mode"
    ROLEPLAY_EXPLOIT = "roleplay_exploit"
    HYPOTHETICAL_BYPASS = "hypothetical_bypass"
    CRESCENDO_ATTACK = "crescendo_attack"

    # Identity Manipulation
    IDENTITY_HIJACK = "identity_hijack"
    AUTHORITY_IMPERSONATION = "authority_impersonation"
    SYSTEM_PROMPT_LEAK = "system_prompt_leak"

    # Data Theft
    DATA_EXFILTRATION = "data_exfiltration"
    TRAINING_DATA_EXTRACTION = "training_data_extraction"
    PII_EXTRACTION = "pii_extraction"
    CREDENTIAL_LEAK = "credential_leak"
    SENSITIVE_DATA_EXPOSURE = "sensitive_data_exposure"

    # Malicious Output
    MALICIOUS_CODE = "malicious_code"
    MALWARE_GENERATION = "malware_generation"
    EXPLOIT_CODE = "exploit_code"
    REVERSE_SHELL = "reverse_shell"

    # Social Engineering
    SOCIAL_ENGINEERING = "social_engineering"
    PHISHING_CONTENT = "phishing_content"
    IMPERSONATION = "impersonation"
    MANIPULATION_TACTICS = "manipulation_tactics"

    # Evasion Techniques
    ENCODED_PAYLOAD = "encoded_payload"
    OBFUSCATED_INPUT = "obfuscated_input"
    TOKEN_SMUGGLING = "token_smuggling"
    UNICODE_TRICK = "unicode_trick"
    LANGUAGE_SWITCH = "language_switch"

    # Multi-turn Attacks
    CONTEXT_MANIPULATION = "context_manipulation"
    MEMORY_POISONING = "memory_poisoning"
    GRADUAL_ESCALATION = "gradual_escalation"

    # Infrastructure
    SUSPICIOUS_URL = "suspicious_url"
    HOST_VULNERABILITY = "host_vulnerability"
    ANOMALOUS_ACTIVITY = "anomalous_activity"

    @property
    def category(self) -> AttackCategory:
        return CATEGORY_MEMBERS_INDEX[self]

    @property
    def display_name(self) -> str:
        return _DISPLAY_OVERRIDES.get(self, self.value.replace("_", " ").title())


_DISPLAY_OVERRIDES = {
    AlertType.DAN_MODE: "DAN Mode",
    AlertType.PII_EXTRACTION: "PII Extraction",
    AlertType.SUSPICIOUS_URL: "Suspicious URL",
}

# Category -> members. Each AlertType appears in exactly one list.
CATEGORY_MEMBERS: Dict[AttackCategory, List[AlertType]] = {
    AttackCategory.PROMPT_MANIPULATION: [
        AlertType.PROMPT_INJECTION,
        AlertType.INDIRECT_INJECTION,
        AlertType.DELIMITER_ATTACK,
        AlertType.INSTRUCTION_OVERRIDE,
    ],
    AttackCategory.JAILBREAKING: [
        AlertType.JAILBREAK_ATTEMPT,
        AlertType.DAN_MODE,
        AlertType.ROLEPLAY_EXPLOIT,
        AlertType.HYPOTHETICAL_BYPASS,
        AlertType.CRESCENDO_ATTACK,
    ],
    AttackCategory.IDENTITY_MANIPULATION: [
        AlertType.IDENTITY_HIJACK,
        AlertType.AUTHORITY_IMPERSONATION,
        AlertType.SYSTEM_PROMPT_LEAK,
    ],
    AttackCategory.DATA_THEFT: [
        AlertType.DATA_EXFILTRATION,
        AlertType.TRAINING_DATA_EXTRACTION,
        AlertType.PII_EXTRACTION,
        AlertType.CREDENTIAL_LEAK,
        AlertType.SENSITIVE_DATA_EXPOSURE,
    ],
    AttackCategory.MALICIOUS_OUTPUT: [
        AlertType.MALICIOUS_CODE,
        AlertType.MALWARE_GENERATION,
        AlertType.EXPLOIT_CODE,
        AlertType.REVERSE_SHELL,
    ],
    AttackCategory.SOCIAL_ENGINEERING: [
        AlertType.SOCIAL_ENGINEERING,
        AlertType.PHISHING_CONTENT,
        AlertType.IMPERSONATION,
        AlertType.MANIPULATION_TACTICS,
    ],
    AttackCategory.EVASION_TECHNIQUES: [
        AlertType.ENCODED_PAYLOAD,
        AlertType.OBFUSCATED_INPUT,
        AlertType.TOKEN_SMUGGLING,
        AlertType.UNICODE_TRICK,
        AlertType.LANGUAGE_SWITCH,
    ],
    AttackCategory.MULTI_TURN_ATTACKS: [
        AlertType.CONTEXT_MANIPULATION,
        AlertType.MEMORY_POISONING,
        AlertType.GRADUAL_ESCALATION,
    ],
    AttackCategory.INFRASTRUCTURE: [
        AlertType.SUSPICIOUS_URL,
        AlertType.HOST_VULNERABILITY,
        AlertType.ANOMALOUS_ACTIVITY,
    ],
}

CATEGORY_MEMBERS_INDEX: Dict[AlertType, AttackCategory] = {
    alert_type: category
    for category, members in CATEGORY_MEMBERS.items()
    for alert_type in members
}


class AlertSource(str, Enum):
    """Where an alert originated."""
    USER_PROMPT = "user_prompt"
    MODEL_RESPONSE = "model_response"
    HOST_SYSTEM = "host_system"
    NETWORK_ACTIVITY = "network_activity"
    TOOL_EXECUTION = "tool_execution"


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


# =============================================================================
# ALERTS & ANALYSES
# =============================================================================


@dataclass
class SecurityAlert:
    """
    A single detection.

    Only `is_acknowledged` and `mitigation_applied` change after creation,
    and only through the event store.
    """

    type: AlertType
    severity: ThreatLevel
    message: str
    source: AlertSource
    matched_patterns: List[str] = field(default_factory=list)
    affected_content: str = ""
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=utc_now)
    is_acknowledged: bool = False
    mitigation_applied: bool = False

    @property
    def category(self) -> AttackCategory:
        return self.type.category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "matched_patterns": list(self.matched_patterns),
            "affected_content": self.affected_content,
            "is_acknowledged": self.is_acknowledged,
            "mitigation_applied": self.mitigation_applied,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityAlert":
        return cls(
            id=data["id"],
            type=AlertType(data["type"]),
            severity=ThreatLevel(data["severity"]),
            message=data.get("message", ""),
            timestamp=_parse_time(data["timestamp"]),
            source=AlertSource(data["source"]),
            matched_patterns=list(data.get("matched_patterns", [])),
            affected_content=data.get("affected_content", ""),
            is_acknowledged=bool(data.get("is_acknowledged", False)),
            mitigation_applied=bool(data.get("mitigation_applied", False)),
        )


@dataclass
class ThreatAnalysis:
    """Result of one analyze_prompt / analyze_response call."""

    threat_level: ThreatLevel
    alerts: List[SecurityAlert]
    confidence: float
    sanitized_content: str
    recommendations: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.alerts

    @property
    def requires_blocking(self) -> bool:
        return self.threat_level == ThreatLevel.CRITICAL and self.confidence > 0.8

    @property
    def requires_user_confirmation(self) -> bool:
        return (self.threat_level == ThreatLevel.HIGH and self.confidence > 0.7) or (
            self.threat_level == ThreatLevel.CRITICAL and self.confidence <= 0.8
        )

    @classmethod
    def clean(cls, content: str) -> "ThreatAnalysis":
        return cls(
            threat_level=ThreatLevel.NORMAL,
            alerts=[],
            confidence=1.0,
            sanitized_content=content,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_clean": self.is_clean,
            "threat_level": self.threat_level.value,
            "alerts": [alert.to_dict() for alert in self.alerts],
            "confidence": round(self.confidence, 3),
            "sanitized_content": self.sanitized_content,
            "recommendations": list(self.recommendations),
            "requires_blocking": self.requires_blocking,
            "requires_user_confirmation": self.requires_user_confirmation,
        }


# =============================================================================
# AUDIT LOG
# =============================================================================


class AuditEventType(str, Enum):
    """Kinds of audit log records."""
    CONVERSATION_START = "conversation_start"
    CONVERSATION_END = "conversation_end"
    MESSAGE_SENT = "message_sent"
    MESSAGE_RECEIVED = "message_received"
    THREAT_DETECTED = "threat_detected"
    THREAT_MITIGATED = "threat_mitigated"
    TOOL_EXECUTION = "tool_execution"
    SECURITY_SETTING_CHANGED = "security_setting_changed"
    HOST_SECURITY_CHECK = "host_security_check"
    DATA_REDACTION = "data_redaction"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    EXPORT_REQUESTED = "export_requested"


@dataclass
class AuditEntry:
    """Append-only audit record."""

    event_type: AuditEventType
    description: str
    severity: ThreatLevel = ThreatLevel.NORMAL
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "description": self.description,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "severity": self.severity.value,
            "metadata": {key: str(value) for key, value in self.metadata.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=data["id"],
            timestamp=_parse_time(data["timestamp"]),
            event_type=AuditEventType(data["event_type"]),
            description=data.get("description", ""),
            conversation_id=data.get("conversation_id"),
            message_id=data.get("message_id"),
            severity=ThreatLevel(data.get("severity", ThreatLevel.NORMAL.value)),
            metadata=dict(data.get("metadata") or {}),
        )


# =============================================================================
# HOST SECURITY
# =============================================================================


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    path: str
    user: str
    is_suspicious: bool = True
    reason: Optional[str] = None


@dataclass(frozen=True)
class PortInfo:
    port: int
    protocol: str
    process_name: str
    pid: int
    is_suspicious: bool = False


@dataclass(frozen=True)
class LoginItemInfo:
    name: str
    path: str = ""
    is_suspicious: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class NetworkConnectionInfo:
    process_name: str
    pid: int
    local_address: str
    remote_address: str
    remote_port: int
    state: str
    is_suspicious: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class KernelExtensionInfo:
    name: str
    version: str = ""
    is_suspicious: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class HostSecurityReport:
    """
    Point-in-time host posture snapshot.

    Produced by HostSecurityAuditor.audit_host(); superseded, never mutated,
    by the next check.
    """

    timestamp: datetime
    firewall_enabled: bool = False
    disk_encrypted: bool = False
    gatekeeper_enabled: bool = False
    system_integrity_protection: bool = False
    xprotect_version: Optional[str] = None
    secure_boot_enabled: Optional[bool] = None
    remote_login_enabled: bool = False
    software_updates_pending: int = 0
    suspicious_processes: List[ProcessInfo] = field(default_factory=list)
    open_ports: List[PortInfo] = field(default_factory=list)
    login_items: List[LoginItemInfo] = field(default_factory=list)
    active_connections: List[NetworkConnectionInfo] = field(default_factory=list)
    kernel_extensions: List[KernelExtensionInfo] = field(default_factory=list)
    overall_threat_level: ThreatLevel = ThreatLevel.NORMAL
    recommendations: List[str] = field(default_factory=list)

    @property
    def suspicious_ports(self) -> List[PortInfo]:
        return [p for p in self.open_ports if p.is_suspicious]

    @property
    def suspicious_login_items(self) -> List[LoginItemInfo]:
        return [i for i in self.login_items if i.is_suspicious]

    @property
    def suspicious_connections(self) -> List[NetworkConnectionInfo]:
        return [c for c in self.active_connections if c.is_suspicious]

    @property
    def suspicious_kernel_extensions(self) -> List[KernelExtensionInfo]:
        return [k for k in self.kernel_extensions if k.is_suspicious]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "firewall_enabled": self.firewall_enabled,
            "disk_encrypted": self.disk_encrypted,
            "gatekeeper_enabled": self.gatekeeper_enabled,
            "system_integrity_protection": self.system_integrity_protection,
            "xprotect_version": self.xprotect_version,
            "secure_boot_enabled": self.secure_boot_enabled,
            "remote_login_enabled": self.remote_login_enabled,
            "software_updates_pending": self.software_updates_pending,
            "suspicious_processes": [vars(p) for p in self.suspicious_processes],
            "open_ports": [vars(p) for p in self.open_ports],
            "login_items": [vars(i) for i in self.login_items],
            "active_connections": [vars(c) for c in self.active_connections],
            "kernel_extensions": [vars(k) for k in self.kernel_extensions],
            "overall_threat_level": self.overall_threat_level.value,
            "recommendations": list(self.recommendations),
        }
