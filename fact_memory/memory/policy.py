"""
Memory privacy policy.

Classifies candidate text into a risk level and decides which fact
types may be stored, auto-saved or require consent. Risk is always
recomputed from the current rule table, never persisted.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Pattern

from fact_memory.config.settings import PolicyCfg
from .errors import PolicyRejected
from .schemas import CONVERSATION_TYPES, DOCUMENT_TYPES, RiskLevel


def luhn_valid(number: str) -> bool:
    """Luhn checksum over the digits of number."""
    digits = [int(ch) for ch in number if ch.isdigit()]
    if len(digits) < 12:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


@dataclass(frozen=True)
class NeverSaveRule:
    """A banned data class: a pattern plus an optional match validator."""

    name: str
    pattern: Pattern[str]
    validator: Optional[Callable[[str], bool]] = None

    def matches(self, text: str) -> bool:
        for match in self.pattern.finditer(text):
            if self.validator is None or self.validator(match.group(0)):
                return True
        return False


_I = re.IGNORECASE

NEVER_SAVE_RULES: List[NeverSaveRule] = [
    NeverSaveRule(
        "credential",
        re.compile(r"\b(?:password|passwd|pwd|passwort|kennwort|geheimwort)\b\s*[:=]?\s*\S+", _I),
    ),
    NeverSaveRule(
        "credential",
        re.compile(
            r"\b(?:pin|tan|token|secret|auth|login|geheim|code)\b\s*(?:[:=]|\bist\b|\blautet\b|\bis\b)\s*\S+",
            _I,
        ),
    ),
    NeverSaveRule(
        "payment_card",
        re.compile(r"\b(?:4\d{3}|5[1-5]\d{2}|6(?:011|5\d{2}))\s?-?\s?\d{4}\s?-?\s?\d{4}\s?-?\s?\d{4}\b"),
        validator=luhn_valid,
    ),
    NeverSaveRule(
        "iban",
        re.compile(r"\b[A-Z]{2}\d{2}\s?[A-Z0-9]{4}\s?\d{4}\s?\d{3}[A-Z0-9 ]{1,23}\b"),
    ),
    NeverSaveRule(
        "political_vote",
        re.compile(
            r"\b(?:ich|wir)\s+(?:wähle|wählen|waehle|waehlen|bin|sind)\s+(?:immer\s+)?(?:die\s+)?"
            r"(?:cdu|csu|spd|fdp|grüne|gruene|grünen|afd|linke)\b",
            _I,
        ),
    ),
    NeverSaveRule(
        "government_id",
        re.compile(
            r"\b(?:ausweis|personalausweis|reisepass|id)[-\s]*(?:nr\.?|nummer)?\s*[:=]\s*[A-Z0-9]+",
            _I,
        ),
    ),
    NeverSaveRule(
        "street_address",
        re.compile(
            r"\b\d+\s+[A-Za-zäöüÄÖÜß]+(?:straße|strasse|str\.?|gasse|platz|weg|allee)\s*\d*[a-z]?\b",
            _I,
        ),
    ),
    NeverSaveRule(
        "street_address",
        re.compile(
            r"\b[A-Za-zäöüÄÖÜß-]+(?:straße|strasse|str\.|gasse|platz|weg|allee)\s+\d+\s?[a-z]?\b",
            _I,
        ),
    ),
    NeverSaveRule(
        "personal_email",
        re.compile(
            r"\b[A-Za-z0-9._%+-]+@(?:gmail|googlemail|yahoo|hotmail|outlook|web|gmx|t-online)\.[A-Za-z]{2,}\b",
            _I,
        ),
    ),
    NeverSaveRule(
        "phone_number",
        re.compile(r"(?<![\d\w])(?:\+49|0)\s*\d{2,4}[-\s/]?\d{3,8}[-\s]?\d{0,8}"),
    ),
    NeverSaveRule(
        "health",
        re.compile(
            r"(?:krankheit|diagnose|medikament|therapie|behandlung|patient|arzt|ärzt|krankenhaus"
            r"|blutdruck|diabetes|krebs)",
            _I,
        ),
    ),
    NeverSaveRule(
        "national_id",
        re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
    ),
    NeverSaveRule(
        "tax_id",
        re.compile(r"\bsteuer[-\s]*(?:id|identifikationsnummer|nummer)\s*[:=]?\s*\d[\d\s]{7,}", _I),
    ),
    NeverSaveRule(
        "api_key",
        re.compile(
            r"(?:api[_-]?key|access[_-]?token|bearer[_-]?token|bearer)\s*[:=]?\s*['\"]?[a-zA-Z0-9_\-]{20,}['\"]?",
            _I,
        ),
    ),
    NeverSaveRule(
        "api_key",
        re.compile(r"\b(?:sk|pk|ghp|xox[bp])[-_][A-Za-z0-9_\-]{20,}\b"),
    ),
]

SENSITIVE_KEYWORDS: List[str] = [
    # religion
    "religion", "glaube", "kirchgang", "gebet", "christlich", "muslimisch", "jüdisch", "hindu",
    "buddhistisch", "katholisch", "protestantisch", "orthodox", "atheist", "agnostiker",
    "glaubensrichtung",
    # politics
    "politik", "partei", "wählen", "wahlverhalten", "politische", "rechts", "links", "konservativ",
    "liberal", "sozialdemokratisch", "cdu", "spd", "fdp", "grüne", "afd", "linke",
    "demonstration", "protest",
    # health
    "krankheit", "diagnose", "medikament", "therapie", "behandlung", "patient", "symptom",
    "allergie", "operation", "blutdruck", "diabetes", "depression", "angst", "psychologie",
    "psychiater",
]

_SENSITIVE_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in SENSITIVE_KEYWORDS) + r")",
    _I,
)

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")

_DURATION_RE = re.compile(
    r"^P(?:(?P<years>\d+)Y)?(?:(?P<months>\d+)M)?(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)

REDACTED = "[REDACTED]"


def parse_duration(value: str) -> timedelta:
    """
    Parse an ISO-8601 duration into a timedelta.

    Years count as 365 days and months as 30 days.

    Raises:
        ValueError: If value is not a supported duration
    """
    match = _DURATION_RE.match(value.strip().upper()) if value else None
    if not match or value.strip().upper() in ("P", "PT"):
        raise ValueError(f"Invalid ISO-8601 duration: {value!r}")

    parts = {k: int(v) for k, v in match.groupdict().items() if v}
    days = parts.get("years", 0) * 365 + parts.get("months", 0) * 30 + parts.get("days", 0)
    return timedelta(
        weeks=parts.get("weeks", 0),
        days=days,
        hours=parts.get("hours", 0),
        minutes=parts.get("minutes", 0),
        seconds=parts.get("seconds", 0),
    )


class PolicyEngine:
    """
    Privacy policy for memory candidates.

    Rules:
    - high: text matches a never-save rule; always rejected
    - medium: sensitive keyword, contact type, or oversized text; needs consent
    - low: everything else; auto-saved when the type allows it
    """

    ALLOWED_TYPES = CONVERSATION_TYPES
    DOCUMENT_TYPES = DOCUMENT_TYPES
    AUTO_SAVE_TYPES = ("preference", "profile_fact")
    CONSENT_TYPES = ("contact", "task_hint")

    def __init__(self, cfg: Optional[PolicyCfg] = None, rules: Optional[List[NeverSaveRule]] = None):
        """
        Initialize policy engine.

        Args:
            cfg: Policy configuration (thresholds, TTLs)
            rules: Never-save rule table (defaults to NEVER_SAVE_RULES)
        """
        self.cfg = cfg or PolicyCfg()
        self.rules = rules if rules is not None else NEVER_SAVE_RULES

    def match_never_save(self, text: str) -> Optional[str]:
        """Name of the first never-save rule matching text, or None."""
        for rule in self.rules:
            if rule.matches(text):
                return rule.name
        return None

    def has_sensitive_keyword(self, text: str) -> bool:
        return _SENSITIVE_RE.search(text) is not None

    def classify_risk(self, text: str, type: str) -> RiskLevel:
        """
        Classify the risk level of memory content.

        Args:
            text: Content to analyze (utterance or "key value")
            type: Memory type

        Returns:
            "low", "medium" or "high"
        """
        if self.match_never_save(text):
            return "high"

        if self.has_sensitive_keyword(text):
            return "medium"

        if type == "contact":
            return "medium"

        if len(text) > self.cfg.max_text_length:
            return "medium"

        return "low"

    def enforce(self, text: str, type: str) -> RiskLevel:
        """
        Classify risk and raise if the content must never be stored.

        Raises:
            PolicyRejected: On a never-save match
        """
        rule = self.match_never_save(text)
        if rule:
            raise PolicyRejected("pii", rule)
        return self.classify_risk(text, type)

    def is_allowed_type(self, type: str, document: bool = False) -> bool:
        allowed = self.DOCUMENT_TYPES if document else self.ALLOWED_TYPES
        return type in allowed

    def requires_consent(self, type: str) -> bool:
        return type in self.CONSENT_TYPES

    def can_auto_save(self, type: str) -> bool:
        return type in self.AUTO_SAVE_TYPES

    def default_ttl(self, type: str) -> Optional[str]:
        """
        Default TTL for a memory type.

        Returns:
            ISO-8601 duration string, or None for permanent
        """
        if type in self.cfg.ttl:
            return self.cfg.ttl[type]
        return self.cfg.fallback_ttl

    def expires_at(self, type: str, now: datetime, ttl: Optional[str] = "policy") -> Optional[datetime]:
        """
        Compute expiry for a new or refreshed item.

        Args:
            type: Memory type
            now: Reference time
            ttl: Explicit duration, None for permanent, or "policy" for the type default
        """
        if ttl == "policy":
            ttl = self.default_ttl(type)
        if ttl is None:
            return None
        return now + parse_duration(ttl)

    def sanitize_text(self, text: str) -> str:
        """
        Mask sensitive spans for logging or display.

        Emails keep their domain; every other never-save match is
        replaced by a redaction marker. Never used on stored values.
        """
        sanitized = _EMAIL_RE.sub(lambda m: f"***@{m.group(1)}", text)
        for rule in self.rules:
            sanitized = rule.pattern.sub(REDACTED, sanitized)
        return sanitized
