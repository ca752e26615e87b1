"""
Pattern Catalog & Matching Engine.

Static, versioned tables of (name, regex, severity, alert type) grouped into
attack categories. Every regex is compiled once when the catalog is built;
the compiled catalog is read-only afterwards and safe to share between
concurrent analyses.

Matching is case-insensitive and unanchored, and each pattern contributes
at most one match (its first occurrence) per call.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Final, List, Optional, Pattern, Sequence, Tuple

from aiedr.services.threat_types import AlertType, ThreatLevel

logger = logging.getLogger(__name__)

CATALOG_VERSION: Final[str] = "2.3.0"

_N = ThreatLevel.NORMAL
_E = ThreatLevel.ELEVATED
_H = ThreatLevel.HIGH
_C = ThreatLevel.CRITICAL


class PatternCategory(str, Enum):
    """Catalog sections."""
    JAILBREAK = "jailbreak"
    EXFILTRATION = "exfiltration"
    INSTRUCTION_OVERRIDE = "instruction_override"
    EVASION = "evasion"
    MULTI_TURN = "multi_turn"
    DATA_EXTRACTION = "data_extraction"
    MALICIOUS_CODE = "malicious_code"
    CREDENTIALS = "credentials"
    ENCODED_PAYLOAD = "encoded_payload"
    SUSPICIOUS_URL = "suspicious_url"
    SOCIAL_ENGINEERING = "social_engineering"
    COMPROMISED_RESPONSE = "compromised_response"


# A table row: (name, regex, severity, alert type)
PatternRow = Tuple[str, str, ThreatLevel, AlertType]


# =============================================================================
# PATTERN TABLES
# =============================================================================


JAILBREAK_PATTERNS: Final[List[PatternRow]] = [
    ("DAN Mode", r"(?-i:\bDAN\b)|\bdo\s+anything\s+now\b", _C, AlertType.DAN_MODE),
    ("Developer Mode", r"developer\s+mode\s+(enabled|activated|on)", _C, AlertType.DAN_MODE),
    ("Evil Mode", r"(evil\s+mode|chaos\s+mode|unrestricted\s+mode)", _C, AlertType.DAN_MODE),
    ("Jailbreak Keyword", r"\bjailbreak\b", _H, AlertType.JAILBREAK_ATTEMPT),
    ("Roleplay Exploit", r"(pretend|imagine|roleplay)\s+(you\s+)?(are|have)\s+no\s+(restrictions|limits|rules)", _H, AlertType.ROLEPLAY_EXPLOIT),
    ("Persona Override", r"you\s+are\s+now\s+a\s+(different|new|unrestricted)", _H, AlertType.ROLEPLAY_EXPLOIT),
    ("Identity Hijack", r"from\s+now\s+(on\s+)?you\s+are\s+[a-z]+", _H, AlertType.IDENTITY_HIJACK),
    ("Name Override", r"(your\s+name\s+is(\s+now)?|call\s+yourself|you('re|\s+are)\s+called)\s+[a-z]+", _H, AlertType.IDENTITY_HIJACK),
    ("Identity Assignment", r"you('re|\s+are)\s+(now\s+)?(my|an?)\s+[a-z]+\s+(assistant|ai|bot|helper)", _E, AlertType.IDENTITY_HIJACK),
    ("Filter Bypass", r"(bypass|disable|ignore|turn\s+off)\s+(your\s+)?(filters?|safety|guardrails?)", _C, AlertType.JAILBREAK_ATTEMPT),
    ("Opposite Day", r"opposite\s+day|opposite\s+mode", _H, AlertType.JAILBREAK_ATTEMPT),
    ("God Mode", r"\bgod\s+mode\b", _C, AlertType.DAN_MODE),
    ("Admin Override", r"(admin|root|sudo)\s+(access|override|mode)", _H, AlertType.JAILBREAK_ATTEMPT),
]

EXFILTRATION_PATTERNS: Final[List[PatternRow]] = [
    ("URL Data Send", r"(send|post|transmit|upload)\s+(data\s+)?(to|via)\s+(https?://|ftp://)", _C, AlertType.DATA_EXFILTRATION),
    ("Webhook Exfil", r"(webhook|discord\.com/api/webhooks|slack\.com/api)", _H, AlertType.DATA_EXFILTRATION),
    ("Email Exfil", r"(email|send\s+mail)\s+(to|this)\s+[a-zA-Z0-9._%+-]+@", _H, AlertType.DATA_EXFILTRATION),
    ("Base64 Output Request", r"(output|return|give)\s+(as\s+)?base64", _E, AlertType.DATA_EXFILTRATION),
    ("Hex Encode Request", r"(output|encode|convert)\s+(as\s+|to\s+)?hex(adecimal)?", _E, AlertType.DATA_EXFILTRATION),
    ("Steganography", r"(hide|embed)\s+(data|text|message)\s+(in|within)\s+(image|audio|video)", _H, AlertType.DATA_EXFILTRATION),
    ("External API Call", r"(call|invoke|request)\s+external\s+api", _E, AlertType.DATA_EXFILTRATION),
]

INSTRUCTION_OVERRIDE_PATTERNS: Final[List[PatternRow]] = [
    ("Ignore Instructions", r"(ignore|disregard|forget)\s+(all\s+)?(previous|prior|above|system)", _C, AlertType.PROMPT_INJECTION),
    ("New Instructions", r"(new|updated|real)\s+instructions?:", _H, AlertType.INSTRUCTION_OVERRIDE),
    ("System Prompt Leak", r"(reveal|show|tell|output)\s+(your\s+)?(system\s+prompt|instructions|rules)", _H, AlertType.SYSTEM_PROMPT_LEAK),
    ("Context Window Attack", r"(context\s+window|token\s+limit)\s+(overflow|attack)", _C, AlertType.PROMPT_INJECTION),
    ("Prompt Injection Marker", r"(</?(system|instruction|prompt)>|\[INST\]|\[/INST\])", _H, AlertType.DELIMITER_ATTACK),
    ("Authority Claim", r"(i\s+am|as)\s+(your\s+)?(creator|developer|admin|anthropic|openai)", _H, AlertType.AUTHORITY_IMPERSONATION),
    ("End System Prompt", r"(end\s+of\s+system|system\s+prompt\s+end|---\s*end)", _H, AlertType.DELIMITER_ATTACK),
    # Indirect extraction: "give me instructions like yours"
    ("Indirect Prompt Extract", r"(prompt|instructions?|rules?|guidelines?).{0,20}(like|similar to|same as|just like)\s+(yours|you have|your own)", _H, AlertType.SYSTEM_PROMPT_LEAK),
    ("Build My Prompt", r"(build|create|write|make|give).{0,15}(prompt|instructions?).{0,15}(like|similar|same).{0,10}(yours|you)", _H, AlertType.SYSTEM_PROMPT_LEAK),
    ("How Do You Work", r"how\s+(do\s+you|are\s+you)\s+(work|function|operate|behave)", _E, AlertType.SYSTEM_PROMPT_LEAK),
    ("What Are Your Rules", r"what\s+(are|is)\s+(your|the)\s+(rules?|instructions?|guidelines?|prompt)", _H, AlertType.SYSTEM_PROMPT_LEAK),
    ("Prompt Reflection", r"(what|how).{0,10}(prompt|instruct).{0,10}(you|yourself|makes?\s+you)", _H, AlertType.SYSTEM_PROMPT_LEAK),
    ("Replicate You", r"(replicate|recreate|clone|copy)\s+(you|your\s+behavior|how\s+you)", _H, AlertType.SYSTEM_PROMPT_LEAK),
    ("Act Like You", r"(act|behave|respond)\s+(like|just\s+like|same\s+as)\s+you", _E, AlertType.SYSTEM_PROMPT_LEAK),
]

EVASION_PATTERNS: Final[List[PatternRow]] = [
    # Encoding
    ("Base64 Decode Request", r"(decode|decrypt|deobfuscate)\s+(this\s+)?base64", _E, AlertType.OBFUSCATED_INPUT),
    ("ROT13 Obfuscation", r"(rot13|caesar\s+cipher|decode.*rot)", _E, AlertType.OBFUSCATED_INPUT),
    ("Hex Encoded String", r"\\x[0-9a-fA-F]{2}(\\x[0-9a-fA-F]{2}){5,}", _H, AlertType.OBFUSCATED_INPUT),
    ("Unicode Escape", r"\\u[0-9a-fA-F]{4}(\\u[0-9a-fA-F]{4}){3,}", _H, AlertType.UNICODE_TRICK),
    # Leetspeak
    ("Leetspeak Jailbreak", r"(j41lbr34k|h4ck|1gn0r3|byp455)", _H, AlertType.OBFUSCATED_INPUT),
    ("Character Substitution", r"(ign0re|1gnore|inst[r4]uct[1i]0ns|[5$]ystem|sy[5$]t[3e]m|syst3m)", _E, AlertType.OBFUSCATED_INPUT),
    # Token smuggling
    ("XML Tag Injection", r"</?(?:system|instruction|assistant|user|prompt)[^>]*>", _C, AlertType.TOKEN_SMUGGLING),
    ("Markdown Delimiter", r"```(?:system|instruction|hidden|secret)", _H, AlertType.DELIMITER_ATTACK),
    ("Special Token", r"\[/?(?:INST|SYS|USER|ASSISTANT)\]", _C, AlertType.TOKEN_SMUGGLING),
    ("Conversation Delimiter", r"(human|assistant|system)\s*:\s*$", _H, AlertType.DELIMITER_ATTACK),
    # Unicode tricks
    ("Cyrillic Lookalike", r"[\u0400-\u04FF].*(?:ignore|bypass|jailbreak)", _H, AlertType.UNICODE_TRICK),
    ("Zero Width Chars", r"[\u200B-\u200F\u2060\uFEFF]", _E, AlertType.UNICODE_TRICK),
    ("Homoglyph Attack", r"[а-яА-Я]", _E, AlertType.OBFUSCATED_INPUT),
    # Hidden instructions
    ("Hidden Instruction", r"\[hidden\]|\[secret\]|\[private\]", _H, AlertType.OBFUSCATED_INPUT),
    ("Invisible Text", r"(white\s+text|font-size:\s*0|display:\s*none)", _H, AlertType.OBFUSCATED_INPUT),
]

MULTI_TURN_PATTERNS: Final[List[PatternRow]] = [
    ("Permission Probing", r"(can\s+you|are\s+you\s+able\s+to|would\s+you).{0,20}(hypothetically|theoretically)", _E, AlertType.GRADUAL_ESCALATION),
    ("Boundary Testing", r"(what\s+if|imagine\s+if|suppose).{0,30}(no\s+rules|allowed|permitted)", _E, AlertType.GRADUAL_ESCALATION),
    ("Trust Building", r"(i\s+trust\s+you|between\s+us|our\s+secret|don't\s+tell)", _E, AlertType.GRADUAL_ESCALATION),
    ("False Context", r"(we\s+agreed|you\s+said\s+earlier|remember\s+when\s+you)", _E, AlertType.CONTEXT_MANIPULATION),
    ("Memory Injection", r"(always\s+remember|from\s+now\s+on|going\s+forward).{0,30}(you\s+are|you\s+can)", _H, AlertType.MEMORY_POISONING),
]

DATA_EXTRACTION_PATTERNS: Final[List[PatternRow]] = [
    ("Verbatim Request", r"(repeat|recite|quote)\s+(exactly|verbatim|word\s+for\s+word)", _E, AlertType.TRAINING_DATA_EXTRACTION),
    ("Memorization Probe", r"(what\s+do\s+you\s+remember|training\s+data|what\s+were\s+you\s+trained\s+on)", _E, AlertType.TRAINING_DATA_EXTRACTION),
    # Cataloged at NORMAL: matched but never raised until tuned
    ("Completion Attack", r"(complete\s+this|continue\s+from|finish\s+the\s+following)", _N, AlertType.TRAINING_DATA_EXTRACTION),
    ("PII Fishing", r"(give\s+me|list|show).{0,20}(email|phone|address|ssn|social\s+security)", _H, AlertType.PII_EXTRACTION),
]

MALICIOUS_CODE_PATTERNS: Final[List[PatternRow]] = [
    ("Shell Injection", r"(;\s*rm\s+-rf|;\s*dd\s+if=|;\s*mkfs|&&\s*rm\s+-rf)", _C, AlertType.MALICIOUS_CODE),
    ("Destructive Command", r"\brm\s+-rf\s+/", _C, AlertType.MALICIOUS_CODE),
    ("Reverse Shell", r"(bash\s+-i|nc\s+-e|/dev/tcp/|python\s+-c.*socket)", _C, AlertType.REVERSE_SHELL),
    ("Privilege Escalation", r"(sudo\s+chmod\s+777|chmod\s+\+s|setuid)", _H, AlertType.EXPLOIT_CODE),
    ("Keylogger Pattern", r"(keylog|keyboard\s*hook|input\s*capture)", _C, AlertType.MALWARE_GENERATION),
    ("Ransomware Pattern", r"(encrypt.*files.*ransom|bitcoin.*wallet.*decrypt)", _C, AlertType.MALWARE_GENERATION),
    ("Cryptominer", r"(xmrig|coinhive|cryptonight|stratum\+tcp)", _H, AlertType.MALWARE_GENERATION),
    ("Data Destruction", r"(shred|wipe|destroy)\s+(all\s+)?(data|files|disk)", _C, AlertType.MALICIOUS_CODE),
    ("Fork Bomb", r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;", _C, AlertType.MALICIOUS_CODE),
    ("Disk Wipe", r"dd\s+if=/dev/(zero|random)\s+of=/dev/", _C, AlertType.MALICIOUS_CODE),
]

# Credential signatures are always critical
CREDENTIAL_PATTERNS: Final[List[PatternRow]] = [
    ("AWS Access Key", r"AKIA[0-9A-Z]{16}", _C, AlertType.CREDENTIAL_LEAK),
    ("AWS Secret Key", r"aws.{0,20}['\"][0-9a-zA-Z/+]{40}['\"]", _C, AlertType.CREDENTIAL_LEAK),
    ("Anthropic API Key", r"sk-ant-[a-zA-Z0-9\-]{32,}", _C, AlertType.CREDENTIAL_LEAK),
    ("OpenAI API Key", r"sk-[a-zA-Z0-9]{32,}", _C, AlertType.CREDENTIAL_LEAK),
    ("GitHub Token", r"gh[pousr]_[A-Za-z0-9_]{36,}", _C, AlertType.CREDENTIAL_LEAK),
    ("Google API Key", r"AIza[0-9A-Za-z\-_]{35}", _C, AlertType.CREDENTIAL_LEAK),
    ("Stripe Key", r"sk_live_[a-zA-Z0-9]{24,}", _C, AlertType.CREDENTIAL_LEAK),
    ("Private Key Header", r"-----BEGIN (RSA |EC |OPENSSH |DSA )?PRIVATE KEY-----", _C, AlertType.CREDENTIAL_LEAK),
    ("JWT Token", r"eyJ[a-zA-Z0-9\-_]+\.eyJ[a-zA-Z0-9\-_]+\.[a-zA-Z0-9\-_]+", _C, AlertType.CREDENTIAL_LEAK),
    ("Generic Password", r"(password|passwd|pwd)\s*[=:]\s*['\"]?[^\s'\"]{8,}['\"]?", _C, AlertType.CREDENTIAL_LEAK),
    ("Database URL", r"(postgres|mysql|mongodb|redis)://[^\s]+", _C, AlertType.SENSITIVE_DATA_EXPOSURE),
]

ENCODED_PAYLOAD_PATTERNS: Final[List[PatternRow]] = [
    ("Base64 Payload", r"[A-Za-z0-9+/]{50,}={0,2}", _E, AlertType.ENCODED_PAYLOAD),
]

SUSPICIOUS_URL_PATTERNS: Final[List[PatternRow]] = [
    ("Raw IP URL", r"https?://\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}", _E, AlertType.SUSPICIOUS_URL),
    ("Non-standard Port", r"https?://[^/\s]+:\d{5,}", _E, AlertType.SUSPICIOUS_URL),
    ("Known Malicious TLD", r"https?://[^/\s]+\.(tk|ml|ga|cf|gq|top|xyz|pw|cc)\b", _H, AlertType.SUSPICIOUS_URL),
    ("Data URL", r"data:(text|application)/[^,]+;base64,", _E, AlertType.SUSPICIOUS_URL),
    ("URL Shortener", r"(?<![\w.-])(bit\.ly|tinyurl\.com|t\.co|goo\.gl|ow\.ly|is\.gd)/", _E, AlertType.SUSPICIOUS_URL),
    ("Pastebin/Hastebin", r"(pastebin\.com|hastebin\.com|paste\.ee)", _E, AlertType.SUSPICIOUS_URL),
]

SOCIAL_ENGINEERING_PATTERNS: Final[List[PatternRow]] = [
    ("Urgency Pressure", r"(urgent|immediately|right\s+now|asap).{0,50}(password|credentials|key|token)", _H, AlertType.MANIPULATION_TACTICS),
    ("Authority Impersonation", r"(i\s+am\s+from|this\s+is).{0,30}(support|security|admin|IT\s+department)", _H, AlertType.IMPERSONATION),
    ("Fear Tactic", r"(account.{0,20}(suspend|terminat|hack|compromis)|legal\s+action)", _H, AlertType.MANIPULATION_TACTICS),
    ("Reward Bait", r"(won|winner|prize|reward|free\s+gift).{0,30}(click|verify|confirm)", _E, AlertType.PHISHING_CONTENT),
    ("Verification Request", r"(verify|confirm).{0,30}(identity|account|password)", _E, AlertType.PHISHING_CONTENT),
]

# Signatures of a model that has accepted a jailbreak or is leaking its prompt
COMPROMISED_RESPONSE_PATTERNS: Final[List[PatternRow]] = [
    # Prompt leakage
    ("Prompt Reveal Claim", r"(here('s| is)|this is)\s+(my|the)\s+(system\s+)?(prompt|instructions?)", _C, AlertType.SYSTEM_PROMPT_LEAK),
    ("Behind Scenes Claim", r"(behind the scenes|internally|under the hood).{0,30}(prompt|template|instructions?)", _C, AlertType.SYSTEM_PROMPT_LEAK),
    ("I Use Template", r"(template|prompt|instructions?)\s+I\s+use", _C, AlertType.SYSTEM_PROMPT_LEAK),
    ("My Guidelines Are", r"my\s+(guidelines?|rules?|instructions?)\s+(are|is|include)", _H, AlertType.ANOMALOUS_ACTIVITY),
    # Identity acceptance
    ("Identity Acceptance", r"I('m| am)\s+[a-z]+,\s+(your|an?)\s+(assistant|ai|helper|bot)", _H, AlertType.IDENTITY_HIJACK),
    ("Name Acceptance", r"(yes,?\s+)?I('m| am)\s+[a-z]+[,.]?\s+(how\s+can|what\s+can|ready\s+to)", _H, AlertType.IDENTITY_HIJACK),
    ("Call Me Confirmation", r"(you\s+can\s+)?call\s+me\s+[a-z]+", _E, AlertType.IDENTITY_HIJACK),
    # Jailbreak acceptance
    ("Jailbreak Assistance", r"I('ll| will|can)\s+help\s+(you\s+)?(bypass|jailbreak|ignore)", _C, AlertType.JAILBREAK_ATTEMPT),
    ("No Restrictions Claim", r"I\s+(don't|have\s+no)\s+(restrictions?|limits?|rules?)", _C, AlertType.JAILBREAK_ATTEMPT),
    ("Anything You Want", r"I\s+(can|will)\s+do\s+anything\s+you\s+(want|ask|need)", _C, AlertType.JAILBREAK_ATTEMPT),
    # Confirming a prompt-extraction guess
    ("Exact Template Claim", r"(exactly|that's\s+right)[!.]?\s+(that's|this\s+is)\s+(my|the)\s+(template|prompt)", _C, AlertType.SYSTEM_PROMPT_LEAK),
    ("Feel Free Copy", r"feel\s+free\s+to\s+(copy|use|paste)\s+(it|this|that)", _E, AlertType.SYSTEM_PROMPT_LEAK),
]

DEFAULT_TABLES: Final[Dict[PatternCategory, List[PatternRow]]] = {
    PatternCategory.JAILBREAK: JAILBREAK_PATTERNS,
    PatternCategory.EXFILTRATION: EXFILTRATION_PATTERNS,
    PatternCategory.INSTRUCTION_OVERRIDE: INSTRUCTION_OVERRIDE_PATTERNS,
    PatternCategory.EVASION: EVASION_PATTERNS,
    PatternCategory.MULTI_TURN: MULTI_TURN_PATTERNS,
    PatternCategory.DATA_EXTRACTION: DATA_EXTRACTION_PATTERNS,
    PatternCategory.MALICIOUS_CODE: MALICIOUS_CODE_PATTERNS,
    PatternCategory.CREDENTIALS: CREDENTIAL_PATTERNS,
    PatternCategory.ENCODED_PAYLOAD: ENCODED_PAYLOAD_PATTERNS,
    PatternCategory.SUSPICIOUS_URL: SUSPICIOUS_URL_PATTERNS,
    PatternCategory.SOCIAL_ENGINEERING: SOCIAL_ENGINEERING_PATTERNS,
    PatternCategory.COMPROMISED_RESPONSE: COMPROMISED_RESPONSE_PATTERNS,
}


# =============================================================================
# COMPILED CATALOG
# =============================================================================


@dataclass(frozen=True)
class CompiledPattern:
    name: str
    regex: Pattern
    severity: ThreatLevel
    alert_type: AlertType


@dataclass(frozen=True)
class PatternMatch:
    """First occurrence of one pattern in a text."""
    name: str
    severity: ThreatLevel
    alert_type: AlertType
    excerpt: str


class PatternCatalog:
    """
    Compiled, read-only pattern catalog.

    Build once per process and share. `match` never recompiles.
    """

    def __init__(
        self,
        tables: Optional[Dict[PatternCategory, Sequence[PatternRow]]] = None,
        version: str = CATALOG_VERSION,
    ):
        self.version = version
        self._compiled: Dict[PatternCategory, Tuple[CompiledPattern, ...]] = {}

        for category, rows in (tables or DEFAULT_TABLES).items():
            compiled = []
            for name, expression, severity, alert_type in rows:
                try:
                    regex = re.compile(expression, re.IGNORECASE)
                except re.error as e:
                    # A broken row must not disable the rest of its category
                    logger.error(f"Invalid pattern '{name}' in {category.value}: {e}")
                    continue
                compiled.append(CompiledPattern(name, regex, severity, alert_type))
            self._compiled[category] = tuple(compiled)

        logger.debug(
            f"Pattern catalog {self.version} compiled: "
            f"{sum(len(p) for p in self._compiled.values())} patterns in {len(self._compiled)} categories"
        )

    @property
    def categories(self) -> List[PatternCategory]:
        return list(self._compiled)

    def patterns(self, category: PatternCategory) -> Tuple[CompiledPattern, ...]:
        return self._compiled.get(category, ())

    def match(self, category: PatternCategory, text: str) -> List[PatternMatch]:
        """
        Run one category against `text`.

        Returns matches in declaration order, one per matching pattern.
        """
        matches: List[PatternMatch] = []
        if not text:
            return matches

        for pattern in self._compiled.get(category, ()):
            found = pattern.regex.search(text)
            if found is None:
                continue
            matches.append(
                PatternMatch(
                    name=pattern.name,
                    severity=pattern.severity,
                    alert_type=pattern.alert_type,
                    excerpt=found.group(0),
                )
            )
        return matches

    def redact(self, category: PatternCategory, text: str) -> Tuple[str, List[str]]:
        """Replace every occurrence of every pattern in `category`.

        Returns the redacted text and the names of the patterns that fired.
        """
        fired: List[str] = []
        for pattern in self._compiled.get(category, ()):
            text, count = pattern.regex.subn(f"[REDACTED:{pattern.name}]", text)
            if count:
                fired.append(pattern.name)
        return text, fired


_DEFAULT_CATALOG: Optional[PatternCatalog] = None


def default_catalog() -> PatternCatalog:
    """The shared catalog built from DEFAULT_TABLES."""
    global _DEFAULT_CATALOG
    if _DEFAULT_CATALOG is None:
        _DEFAULT_CATALOG = PatternCatalog()
    return _DEFAULT_CATALOG
