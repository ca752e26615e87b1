"""
Production Logging Configuration
- JSON structured logging
- File rotation (50MB per file, 30 backups)
- PII and credential scrubbing (threat logs quote attacker content and leaked secrets)
- Environment-based log levels
"""

import logging
import logging.handlers
import json
import re
import os
from datetime import datetime, timezone
from typing import Any, Dict

# Environment-based log levels
LOG_LEVELS = {
    "development": logging.DEBUG,
    "staging": logging.INFO,
    "production": logging.WARNING,
}

# Secret formats that show up in model responses flagged as credential leaks
CREDENTIAL_PATTERNS = [
    re.compile(r'sk-ant-[A-Za-z0-9_-]{20,}'),
    re.compile(r'sk-[A-Za-z0-9_-]{20,}'),
    re.compile(r'AKIA[0-9A-Z]{16}'),
    re.compile(r'gh[pousr]_[A-Za-z0-9]{36,}'),
    re.compile(r'xox[baprs]-[A-Za-z0-9-]{10,}'),
    re.compile(r'-----BEGIN [A-Z ]*PRIVATE KEY-----'),
]


class PIIScrubber:
    """Scrub PII and secrets from log messages"""

    @staticmethod
    def scrub(message: str) -> str:
        """Remove PII from log messages"""
        if not isinstance(message, str):
            return message

        # Email addresses
        message = re.sub(
            r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b',
            '***@***.***',
            message
        )

        # Credit card numbers
        message = re.sub(
            r'\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b',
            '****-****-****-****',
            message
        )

        # Known credential formats
        for pattern in CREDENTIAL_PATTERNS:
            message = pattern.sub('***REDACTED***', message)

        # API keys and tokens
        message = re.sub(
            r'(api[_-]?key|token|secret|password)["\']?\s*[:=]\s*["\']?[\w-]{8,}',
            r'\1=***REDACTED***',
            message,
            flags=re.IGNORECASE
        )

        # Truncate quoted prompts/responses
        if len(message) > 500:
            message = message[:500] + "...[TRUNCATED]"

        return message


class JSONFormatter(logging.Formatter):
    """Format logs as JSON with structured fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": PIIScrubber.scrub(str(record.getMessage())),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = PIIScrubber.scrub(
                self.formatException(record.exc_info)
            )

        # Add extra fields
        if getattr(record, "conversation_id", None):
            conversation_id = str(record.conversation_id)
            log_data["conversation_id"] = conversation_id[:8] + "***" if len(conversation_id) > 8 else conversation_id

        if hasattr(record, "request_id"):
            log_data["request_id"] = record.request_id

        if hasattr(record, "duration_ms"):
            log_data["duration_ms"] = record.duration_ms

        if hasattr(record, "endpoint"):
            log_data["endpoint"] = record.endpoint

        if hasattr(record, "status_code"):
            log_data["status_code"] = record.status_code

        if hasattr(record, "alert_type"):
            log_data["alert_type"] = record.alert_type

        if hasattr(record, "threat_level"):
            log_data["threat_level"] = record.threat_level

        return json.dumps(log_data)


def setup_logging(app_name: str = "aiedr"):
    """Configure logging for production"""
    env = os.getenv("ENVIRONMENT", "development")
    log_level = LOG_LEVELS.get(env, logging.INFO)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler (always enabled)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)

    if env == "production":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)

    # File handlers (production only)
    if env == "production":
        log_dir = os.getenv("AIEDR_LOG_DIR", "/var/log/aiedr")
        try:
            os.makedirs(log_dir, exist_ok=True)

            # Rotating file handler - 50MB per file, keep 30 backups
            file_handler = logging.handlers.RotatingFileHandler(
                filename=f"{log_dir}/{app_name}.log",
                maxBytes=50 * 1024 * 1024,
                backupCount=30,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(JSONFormatter())
            root_logger.addHandler(file_handler)

            # Error file handler - separate file for errors only
            error_handler = logging.handlers.RotatingFileHandler(
                filename=f"{log_dir}/{app_name}-errors.log",
                maxBytes=50 * 1024 * 1024,
                backupCount=30,
                encoding="utf-8",
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(JSONFormatter())
            root_logger.addHandler(error_handler)

            logging.info(f"✅ Production logging enabled: {log_dir}")
        except PermissionError:
            logging.warning(
                f"⚠️ Cannot write to {log_dir}, using console only. "
                "Set AIEDR_LOG_DIR to a writable directory."
            )
    else:
        logging.info(f"ℹ️ Console logging only ({env} mode)")

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return root_logger
