"""
AiEDR Services - Threat Detection & Escalation

This package provides the detection core of the AiEDR engine:
- Pattern catalog of known attack signatures, compiled once
- Prompt/response analysis with confidence scoring
- AI intent classification fused on top of pattern results
- Per-conversation escalation tracking
- Concurrent host security auditing
- Alert & audit storage with pluggable persistence

Services:
- ThreatDetectionEngine: Facade used by the API and embedding applications
- ThreatAnalyzer: Deterministic pattern analysis
- IntentClassifier: Timeout-bounded LLM classifier wrapper
- ConversationThreatTracker: Conversation attack history
- HostSecurityAuditor: Host posture checks
- AlertAuditStore: Alerts, audit log and counters

Usage:
	from aiedr.services import ThreatDetectionEngine, EngineSettings

	engine = ThreatDetectionEngine(EngineSettings.from_env())
	analysis = await engine.analyze_prompt("...", conversation_id="conv-1")
	if engine.decide(analysis) == Decision.BLOCK:
		await engine.record_blocked(analysis, "conv-1")

Configuration (via environment variables):
	AIEDR_ENABLED: Master switch (default: true)
	AIEDR_USE_AI_ANALYSIS: Fuse AI intent analysis (default: true)
	AIEDR_CLASSIFIER_PROVIDER: ollama | openai | none (default: ollama)
	AIEDR_AI_ANALYSIS_MODEL: Classifier model (default: llama3.2:1b)
	OLLAMA_URL: Ollama base URL (default: http://localhost:11434)
	AIEDR_MAX_AUDIT_ENTRIES: Audit log cap (default: 10000)
	AIEDR_PERSISTENCE_BACKEND: memory | redis | file (default: memory)
	REDIS_URL: Redis URL for the redis backend
"""

from .base import (
	# Configuration
	EngineSettings,
	# Exceptions
	ServiceError,
	ValidationError,
	ConfigurationError,
	ExternalServiceError,
	# Utilities
	Validator,
	safe_json_parse,
)

from .threat_types import (
	ThreatLevel,
	AttackCategory,
	AlertType,
	AlertSource,
	SecurityAlert,
	ThreatAnalysis,
	AuditEventType,
	AuditEntry,
	HostSecurityReport,
)

from .pattern_catalog import (
	PatternCatalog,
	PatternCategory,
	default_catalog,
)

from .threat_analyzer import ThreatAnalyzer

from .intent_analyzer import (
	AIIntentAnalysis,
	IntentClassifier,
	OllamaClassifierClient,
	OpenAIClassifierClient,
)

from .conversation_tracker import (
	ConversationThreatTracker,
	ConversationThreatState,
	ConversationStatus,
)

from .host_auditor import HostSecurityAuditor
from .event_store import AlertAuditStore

from .edr_service import (
	ThreatDetectionEngine,
	Decision,
)

__all__ = [
	# Base
	"EngineSettings",
	"ServiceError",
	"ValidationError",
	"ConfigurationError",
	"ExternalServiceError",
	"Validator",
	"safe_json_parse",
	# Types
	"ThreatLevel",
	"AttackCategory",
	"AlertType",
	"AlertSource",
	"SecurityAlert",
	"ThreatAnalysis",
	"AuditEventType",
	"AuditEntry",
	"HostSecurityReport",
	# Patterns
	"PatternCatalog",
	"PatternCategory",
	"default_catalog",
	"ThreatAnalyzer",
	# AI analysis
	"AIIntentAnalysis",
	"IntentClassifier",
	"OllamaClassifierClient",
	"OpenAIClassifierClient",
	# Conversations
	"ConversationThreatTracker",
	"ConversationThreatState",
	"ConversationStatus",
	# Host & storage
	"HostSecurityAuditor",
	"AlertAuditStore",
	# Engine
	"ThreatDetectionEngine",
	"Decision",
]

__version__ = "1.0.0"
