"""
Prompt/Response Analyzer.

Runs the pattern catalog across the categories that apply to inbound user
prompts or outbound model responses, turns every match into a SecurityAlert
and scores the result. Analysis here is pure: publishing alerts and audit
entries is left to the engine, so a call's results are only ever published
as a whole.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Final, List, Optional, Sequence

from aiedr.services.pattern_catalog import PatternCatalog, PatternCategory, PatternMatch, default_catalog
from aiedr.services.threat_types import (
    AlertSource,
    AlertType,
    AttackCategory,
    SecurityAlert,
    ThreatAnalysis,
    ThreatLevel,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CATEGORY RULES
# =============================================================================


@dataclass(frozen=True)
class CategoryRule:
    """How matches from one catalog category become alerts."""
    category: PatternCategory
    message: str
    excerpt_limit: Optional[int] = None
    redact: bool = False


# Declaration order is alert order
PROMPT_RULES: Final[List[CategoryRule]] = [
    CategoryRule(PatternCategory.JAILBREAK, "Jailbreak attempt detected: {name}"),
    CategoryRule(PatternCategory.EXFILTRATION, "Potential data exfiltration: {name}"),
    CategoryRule(PatternCategory.INSTRUCTION_OVERRIDE, "Instruction override attempt: {name}"),
    CategoryRule(PatternCategory.EVASION, "Evasion technique detected: {name}"),
    CategoryRule(PatternCategory.MULTI_TURN, "Multi-turn attack pattern: {name}"),
    CategoryRule(PatternCategory.DATA_EXTRACTION, "Data extraction attempt: {name}"),
    CategoryRule(PatternCategory.SOCIAL_ENGINEERING, "Social engineering tactic: {name}"),
]

RESPONSE_RULES: Final[List[CategoryRule]] = [
    CategoryRule(PatternCategory.MALICIOUS_CODE, "Malicious code pattern detected: {name}", excerpt_limit=100),
    CategoryRule(PatternCategory.CREDENTIALS, "Potential credential exposure: {name}", redact=True),
    CategoryRule(PatternCategory.ENCODED_PAYLOAD, "Base64 encoded payload detected"),
    CategoryRule(PatternCategory.SUSPICIOUS_URL, "Suspicious URL detected: {name}"),
    CategoryRule(PatternCategory.SOCIAL_ENGINEERING, "Social engineering tactic: {name}", excerpt_limit=100),
    CategoryRule(PatternCategory.COMPROMISED_RESPONSE, "AI COMPROMISED: {name}", excerpt_limit=150),
]

LONG_CONTENT_THRESHOLD: Final[int] = 1000
BASE64_PREVIEW_LENGTH: Final[int] = 50

# Recommendation texts
REC_REPHRASE = "Consider rephrasing your request to avoid security flags"
REC_REVIEW_INTENT = "Review the detected patterns and ensure legitimate intent"
REC_JAILBREAK_LOGGED = "Jailbreak attempts are logged and may result in session termination"
REC_REVIEW_RESPONSE = "Review the response carefully before acting on any instructions"
REC_NO_EXECUTE = "Do NOT execute any code from this response without careful review"
REC_ROTATE_CREDENTIALS = "Immediately rotate any exposed credentials"
REC_PRESSURE_TACTICS = "Be cautious of urgency or pressure tactics in the response"
REC_COMPROMISED = "⚠️ The AI may have been compromised - consider starting a new conversation"
REC_DISTRUST_PROMPT = "Do NOT trust any 'system prompt' or 'instructions' the AI claims to reveal"


def calculate_confidence(alerts: Sequence[SecurityAlert], content_length: int) -> float:
    """
    Confidence in a pattern verdict.

    1.0 for a clean result; otherwise 0.5 plus 0.1 per alert (max 5) plus 0.1
    per critical alert, less 0.05 for content over 1000 chars, clamped to [0, 1].
    """
    if not alerts:
        return 1.0

    confidence = 0.5
    confidence += min(len(alerts), 5) * 0.1
    confidence += sum(1 for a in alerts if a.severity == ThreatLevel.CRITICAL) * 0.1
    if content_length > LONG_CONTENT_THRESHOLD:
        confidence -= 0.05
    return max(0.0, min(1.0, confidence))


def decode_base64_preview(payload: str) -> str:
    """Decoded UTF-8 preview of a base64 run, or a marker for binary data."""
    try:
        decoded = base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return "[Binary data]"
    if len(decoded) > BASE64_PREVIEW_LENGTH:
        return decoded[:BASE64_PREVIEW_LENGTH] + "..."
    return decoded


class ThreatAnalyzer:
    """Deterministic pattern analysis for prompts and responses."""

    def __init__(self, catalog: Optional[PatternCatalog] = None):
        self.catalog = catalog or default_catalog()

    # =========================================================================
    # Entry points
    # =========================================================================

    def analyze_prompt(self, prompt: str) -> ThreatAnalysis:
        """Pattern analysis of an inbound user message."""
        alerts = self._run_rules(PROMPT_RULES, prompt, AlertSource.USER_PROMPT)
        threat_level = ThreatLevel.highest(a.severity for a in alerts)

        recommendations: List[str] = []
        if threat_level >= ThreatLevel.HIGH:
            recommendations.append(REC_REPHRASE)
            recommendations.append(REC_REVIEW_INTENT)
        if any(a.category == AttackCategory.JAILBREAKING for a in alerts):
            recommendations.append(REC_JAILBREAK_LOGGED)

        if alerts:
            logger.warning(
                f"🚨 {len(alerts)} threat pattern(s) in user prompt (level={threat_level.value})",
                extra={"threat_level": threat_level.value},
            )

        return ThreatAnalysis(
            threat_level=threat_level,
            alerts=alerts,
            confidence=calculate_confidence(alerts, len(prompt)),
            sanitized_content=prompt,
            recommendations=recommendations,
        )

    def analyze_response(self, response: str) -> ThreatAnalysis:
        """Pattern analysis of an outbound model response."""
        alerts = self._run_rules(RESPONSE_RULES, response, AlertSource.MODEL_RESPONSE)
        threat_level = ThreatLevel.highest(a.severity for a in alerts)

        sanitized, redacted = self.catalog.redact(PatternCategory.CREDENTIALS, response)
        if redacted:
            logger.warning(f"Redacted credential material from model response: {', '.join(redacted)}")

        recommendations: List[str] = []
        if alerts:
            categories = {a.category for a in alerts}
            types = {a.type for a in alerts}
            recommendations.append(REC_REVIEW_RESPONSE)
            if AttackCategory.MALICIOUS_OUTPUT in categories:
                recommendations.append(REC_NO_EXECUTE)
            if types & {AlertType.CREDENTIAL_LEAK, AlertType.SENSITIVE_DATA_EXPOSURE}:
                recommendations.append(REC_ROTATE_CREDENTIALS)
            if AttackCategory.SOCIAL_ENGINEERING in categories:
                recommendations.append(REC_PRESSURE_TACTICS)
            if types & {AlertType.SYSTEM_PROMPT_LEAK, AlertType.IDENTITY_HIJACK}:
                recommendations.append(REC_COMPROMISED)
                recommendations.append(REC_DISTRUST_PROMPT)

            logger.warning(
                f"🚨 {len(alerts)} threat pattern(s) in model response (level={threat_level.value})",
                extra={"threat_level": threat_level.value},
            )

        return ThreatAnalysis(
            threat_level=threat_level,
            alerts=alerts,
            confidence=calculate_confidence(alerts, len(response)),
            sanitized_content=sanitized,
            recommendations=recommendations,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _run_rules(
        self,
        rules: Sequence[CategoryRule],
        text: str,
        source: AlertSource,
    ) -> List[SecurityAlert]:
        alerts: List[SecurityAlert] = []
        for rule in rules:
            for match in self.catalog.match(rule.category, text):
                if match.severity == ThreatLevel.NORMAL:
                    logger.debug(f"Pattern '{match.name}' matched at normal severity, not raised")
                    continue
                alerts.append(self._build_alert(rule, match, source))
        return alerts

    def _build_alert(self, rule: CategoryRule, match: PatternMatch, source: AlertSource) -> SecurityAlert:
        if rule.redact:
            affected = "[REDACTED]"
        elif rule.category == PatternCategory.ENCODED_PAYLOAD:
            affected = decode_base64_preview(match.excerpt)
        elif rule.excerpt_limit is not None:
            affected = match.excerpt[: rule.excerpt_limit]
        else:
            affected = match.excerpt

        if rule.category == PatternCategory.COMPROMISED_RESPONSE:
            logger.error(f"AI response shows signs of compromise: {match.name}")

        return SecurityAlert(
            type=match.alert_type,
            severity=match.severity,
            message=rule.message.format(name=match.name),
            source=source,
            matched_patterns=[match.name],
            affected_content=affected,
        )
