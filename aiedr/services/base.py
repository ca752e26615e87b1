"""
Base utilities and shared components for AiEDR services.
Provides engine settings, error taxonomy, validation and JSON helpers.
"""
import os
import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes", "on")


CLASSIFIER_PROVIDERS = ("ollama", "openai", "none")
PERSISTENCE_BACKENDS = ("memory", "redis", "file")


@dataclass(frozen=True)
class EngineSettings:
    """
    Immutable engine configuration.

    Replaced as a whole through ThreatDetectionEngine.update_settings();
    never mutated in place.
    """

    # Detection switches
    enabled: bool = True
    auto_block_critical: bool = True
    prompt_on_high: bool = True
    log_threats_only: bool = True
    background_monitoring_enabled: bool = False
    max_audit_entries: int = 10000

    # AI intent analysis
    use_ai_analysis: bool = True
    ai_analysis_model_id: str = "llama3.2:1b"
    classifier_provider: str = "ollama"
    ollama_url: str = "http://localhost:11434"
    classifier_timeout_seconds: float = 15.0
    classifier_context_messages: int = 5

    # Limits
    max_content_length: int = 100000

    # Host monitoring
    monitoring_interval_minutes: int = 5

    # Persistence
    persistence_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    audit_log_path: str = "aiedr_audit_log.json"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from AIEDR_* environment variables."""
        return cls(
            enabled=_env_bool("AIEDR_ENABLED", True),
            auto_block_critical=_env_bool("AIEDR_AUTO_BLOCK_CRITICAL", True),
            prompt_on_high=_env_bool("AIEDR_PROMPT_ON_HIGH", True),
            log_threats_only=_env_bool("AIEDR_LOG_THREATS_ONLY", True),
            background_monitoring_enabled=_env_bool("AIEDR_BACKGROUND_MONITORING", False),
            max_audit_entries=int(os.getenv("AIEDR_MAX_AUDIT_ENTRIES", "10000")),
            use_ai_analysis=_env_bool("AIEDR_USE_AI_ANALYSIS", True),
            ai_analysis_model_id=os.getenv("AIEDR_AI_ANALYSIS_MODEL", "llama3.2:1b"),
            classifier_provider=os.getenv("AIEDR_CLASSIFIER_PROVIDER", "ollama").lower(),
            ollama_url=os.getenv("OLLAMA_URL", "http://localhost:11434"),
            classifier_timeout_seconds=float(os.getenv("AIEDR_CLASSIFIER_TIMEOUT_SECONDS", "15.0")),
            classifier_context_messages=int(os.getenv("AIEDR_CLASSIFIER_CONTEXT_MESSAGES", "5")),
            max_content_length=int(os.getenv("AIEDR_MAX_CONTENT_LENGTH", "100000")),
            monitoring_interval_minutes=int(os.getenv("AIEDR_MONITORING_INTERVAL_MINUTES", "5")),
            persistence_backend=os.getenv("AIEDR_PERSISTENCE_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            audit_log_path=os.getenv("AIEDR_AUDIT_LOG_PATH", "aiedr_audit_log.json"),
        )

    def validate(self) -> List[str]:
        """Validate configuration. Returns list of invalid configs."""
        errors = []
        if self.max_audit_entries < 1:
            errors.append("max_audit_entries must be at least 1")
        if self.classifier_provider not in CLASSIFIER_PROVIDERS:
            errors.append(f"classifier_provider must be one of {', '.join(CLASSIFIER_PROVIDERS)}")
        if self.classifier_provider == "openai" and not os.getenv("OPENAI_API_KEY"):
            errors.append("OPENAI_API_KEY is required for the openai classifier provider")
        if self.classifier_timeout_seconds <= 0:
            errors.append("classifier_timeout_seconds must be positive")
        if self.classifier_context_messages < 0:
            errors.append("classifier_context_messages must not be negative")
        if self.max_content_length < 1:
            errors.append("max_content_length must be at least 1")
        if self.monitoring_interval_minutes < 1:
            errors.append("monitoring_interval_minutes must be at least 1")
        if self.persistence_backend not in PERSISTENCE_BACKENDS:
            errors.append(f"persistence_backend must be one of {', '.join(PERSISTENCE_BACKENDS)}")
        return errors

    def with_changes(self, **changes: Any) -> "EngineSettings":
        """Return a copy with the given fields replaced."""
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}", field="settings")
        return replace(self, **changes)

    def diff(self, other: "EngineSettings") -> Dict[str, Any]:
        """Fields whose value differs in `other`, mapped to the new value."""
        mine, theirs = asdict(self), asdict(other)
        return {key: value for key, value in theirs.items() if mine[key] != value}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class ServiceError(Exception):
    """Base exception for service errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "SERVICE_ERROR"
        self.details = details or {}


class ValidationError(ServiceError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, error_code="VALIDATION_ERROR", details={"field": field})
        self.field = field


class ConfigurationError(ServiceError):
    """Raised when engine configuration is invalid."""

    def __init__(self, message: str, invalid_configs: Optional[List[str]] = None):
        super().__init__(
            message,
            error_code="CONFIGURATION_ERROR",
            details={"invalid_configs": invalid_configs or []},
        )


class ExternalServiceError(ServiceError):
    """Raised when an external collaborator (classifier, Redis) fails."""

    def __init__(self, service: str, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            f"{service} error: {message}",
            error_code=f"{service.upper()}_ERROR",
            details={"original_error": str(original_error) if original_error else None},
        )
        self.service = service
        self.original_error = original_error


# =============================================================================
# VALIDATION
# =============================================================================


class Validator:
    """Input validation utilities."""

    @staticmethod
    def validate_string(
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: int = 10000,
        allow_none: bool = False,
    ) -> Optional[str]:
        """
        Validate a string input.

        Unlike the usual form-field validation, the value is returned
        unstripped: analyzed content must reach the detectors byte for byte.
        """
        if value is None:
            if allow_none:
                return None
            raise ValidationError(f"{field_name} is required", field=field_name)

        if not isinstance(value, str):
            raise ValidationError(f"{field_name} must be a string", field=field_name)

        if len(value.strip()) < min_length:
            raise ValidationError(
                f"{field_name} must be at least {min_length} characters",
                field=field_name,
            )

        if len(value) > max_length:
            raise ValidationError(
                f"{field_name} must be at most {max_length} characters",
                field=field_name,
            )

        return value

    @staticmethod
    def validate_identifier(value: Any, field_name: str, allow_none: bool = True) -> Optional[str]:
        """Validate a conversation or alert identifier."""
        if value is None or value == "":
            if allow_none:
                return None
            raise ValidationError(f"{field_name} is required", field=field_name)

        if not isinstance(value, str):
            raise ValidationError(f"{field_name} must be a string", field=field_name)

        value = value.strip()
        if not value:
            raise ValidationError(f"{field_name} cannot be blank", field=field_name)

        if not all(c.isalnum() or c in "_-:." for c in value):
            raise ValidationError(f"{field_name} contains invalid characters", field=field_name)

        if len(value) > 128:
            raise ValidationError(f"{field_name} must be at most 128 characters", field=field_name)

        return value


# =============================================================================
# UTILITIES
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def strip_code_fences(text: str) -> str:
    """Remove markdown code-fence wrappers a model may put around JSON."""
    # Markers can sit on their own lines or inline around the object
    return text.replace("```json", "").replace("```", "").strip()


def safe_json_parse(text: str, default: Any = None) -> Any:
    """Safely parse JSON with fallback."""
    if not isinstance(text, str):
        return default
    try:
        return json.loads(strip_code_fences(text))
    except (json.JSONDecodeError, ValueError):
        return default
