"""
Fact extraction from utterances and document chunks.

Two stages: the generation collaborator is asked for a JSON array of
candidates; if it fails, times out, returns garbage or returns nothing,
an ordered table of deterministic pattern rules runs instead and the
result is marked degraded.
"""

import asyncio
import ipaddress
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Pattern, Sequence

import structlog

from fact_memory.config.settings import ExtractionCfg
from fact_memory.generation.generator import BaseGenerator, GenerationConfig
from .errors import GenerationUnavailable, ParseError
from .guardrails import RateLimiter, analyze_suspicious_content, clamp_length, is_question, sanitize_utterance
from .schemas import CONVERSATION_TYPES, DOCUMENT_TYPES, Candidate, ExtractionResult
from .text_utils import normalize_slug

logger = structlog.get_logger(__name__)


EXTRACTION_SYSTEM_PROMPT = """Extrahiere aus der deutschen Aussage alle langfristig nützlichen Fakten und Präferenzen.
Antworte ausschliesslich als JSON-Array von Objekten mit den Feldern:
person, type (preference|profile_fact|contact|task_hint), key, value, confidence (0..1).
Speichere niemals geheime oder sensible Daten. Wenn nichts geeignet ist: [].

Beispiele:
"Romans Lieblingsfarbe ist blau." ->
[{"person":"roman","type":"preference","key":"lieblingsfarbe","value":"blau","confidence":0.92}]

"Ich heisse Anna." ->
[{"person":"self","type":"profile_fact","key":"name","value":"anna","confidence":0.85}]

"Ich arbeite als Software-Entwickler in Berlin." ->
[{"person":"self","type":"profile_fact","key":"beruf","value":"software-entwickler","confidence":0.90},
 {"person":"self","type":"profile_fact","key":"arbeitsort","value":"berlin","confidence":0.85}]

"Erinnere mich jeden Freitag an das Meeting." ->
[{"person":"self","type":"task_hint","key":"meeting","value":"jeden freitag","confidence":0.75}]

"Mein Passwort ist abc123" -> []
"Meine Adresse ist Musterstrasse 123." -> []

NIE speichern: Passwörter, TAN, IBAN, Kreditkarten, Ausweis-Nr., Gesundheitsdaten,
religiöse oder politische Überzeugungen, private Adressen."""

DOCUMENT_SYSTEM_PROMPT = """Extract durable technical facts from the document excerpt.
Answer only with a JSON array of objects with the fields:
person (null), type (fact|preference|profile_fact|contact|task_hint), key, value, confidence (0..1).
Focus on hosts, IP addresses, ports, operating systems, services, certificates and configuration files.
Never extract passwords, keys, tokens or personal data. If nothing qualifies: [].

Example:
"The web server web01.intern (10.0.0.12) runs nginx on port 443." ->
[{"person":null,"type":"fact","key":"web_server_host","value":"web01.intern","confidence":0.85},
 {"person":null,"type":"fact","key":"web_server_ip","value":"10.0.0.12","confidence":0.85},
 {"person":null,"type":"fact","key":"web_server_port","value":"443","confidence":0.8}]"""


@dataclass(frozen=True)
class ExtractionRule:
    """
    One deterministic fallback rule.

    value_group selects the captured value; person_group, when set,
    takes the person from the match instead of the fixed person.
    """

    name: str
    pattern: Pattern[str]
    type: str
    key: str
    confidence: float
    person: Optional[str] = None
    value_group: int = 1
    person_group: Optional[int] = None
    validator: Optional[Callable[[str], bool]] = None
    person_validator: Optional[Callable[[str], bool]] = None

    def apply(self, text: str) -> Optional[Candidate]:
        """First valid match of this rule as a raw candidate."""
        for match in self.pattern.finditer(text):
            value = (match.group(self.value_group) or "").strip()
            if not value:
                continue
            if self.validator is not None and not self.validator(value):
                continue
            person = self.person
            if self.person_group is not None:
                person = match.group(self.person_group)
                if self.person_validator is not None and not self.person_validator(person):
                    continue
            return Candidate(
                person=person,
                type=self.type,
                key=self.key,
                value=value,
                confidence=self.confidence,
            )
        return None


_I = re.IGNORECASE
_L = "a-zA-ZäöüÄÖÜß"

PRONOUNS = {"ich", "du", "er", "sie", "es", "wir", "ihr", "man", "wer", "jeder", "niemand", "keiner"}


def _not_pronoun(name: str) -> bool:
    return name.lower() not in PRONOUNS


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _valid_port(value: str) -> bool:
    return 0 < int(value) < 65536


CONVERSATION_RULES: List[ExtractionRule] = [
    ExtractionRule(
        "name",
        re.compile(rf"\b(?:ich\s+hei(?:ß|ss)e|mein\s+name\s+ist)\s+([{_L}][{_L}\s-]*?)\s*(?:[.,!;]|$)", _I),
        "profile_fact", "name", 0.8, person="self",
    ),
    ExtractionRule(
        "favorite_color",
        re.compile(rf"\b(?:meine\s+)?lieblingsfarbe\s+ist\s+([{_L}]+)", _I),
        "preference", "lieblingsfarbe", 0.9, person="self",
    ),
    ExtractionRule(
        "likes",
        re.compile(rf"\bich\s+mag\s+([{_L}][{_L}\s]*?)(?:\s+sehr)?\s*(?:gerne?\b|[.,!;]|$)", _I),
        "preference", "mag", 0.7, person="self",
    ),
    ExtractionRule(
        "residence",
        re.compile(rf"\b(?:ich\s+)?wohne\s+in\s+([{_L}][{_L}\s-]*?)\s*(?:[.,!;]|$)", _I),
        "profile_fact", "wohnort", 0.9, person="self",
    ),
    ExtractionRule(
        "age",
        re.compile(r"\bich\s+bin\s+(\d{1,3})\s+(?:jahre\s+)?alt\b", _I),
        "profile_fact", "alter", 0.9, person="self",
    ),
    ExtractionRule(
        "email",
        re.compile(r"\b(?:meine\s+)?(?:e-?mail(?:[-\s]?adresse)?)\s+ist\s+([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})", _I),
        "contact", "email", 0.9, person="self",
    ),
    ExtractionRule(
        "phone",
        re.compile(r"\b(?:meine\s+)?(?:telefonnummer|handynummer|nummer)\s+ist\s+(\+?[\d(][\d\s\-()/]{4,}\d)", _I),
        "contact", "telefon", 0.8, person="self",
    ),
    ExtractionRule(
        "profession",
        re.compile(
            rf"\b(?:ich\s+arbeite\s+als|mein\s+beruf\s+ist|ich\s+bin\s+von\s+beruf)\s+"
            rf"([{_L}][{_L}\s-]*?)\s*(?:\s(?:in|bei|für)\b|[.,!;]|$)",
            _I,
        ),
        "profile_fact", "beruf", 0.8, person="self",
    ),
    ExtractionRule(
        "reminder",
        re.compile(r"\b(?:erinnere\s+mich\s+(?:daran,?\s*)?|vergiss\s+nicht,?\s*)(.+?)\s*(?:[.!]|$)", _I),
        "task_hint", "aufgabe", 0.7, person="self",
    ),
    ExtractionRule(
        "third_party_likes",
        re.compile(rf"\b([A-ZÄÖÜ][a-zäöüß]+)\s+mag\s+([{_L}][{_L}\s]*?)(?:\s+sehr)?\s*(?:gerne?\b|[.,!;]|$)"),
        "preference", "mag", 0.7, value_group=2, person_group=1,
        person_validator=_not_pronoun,
    ),
]

DOCUMENT_RULES: List[ExtractionRule] = [
    ExtractionRule(
        "ip_address",
        re.compile(r"(?<![\d.])((?:\d{1,3}\.){3}\d{1,3})(?![\d.])"),
        "fact", "ip_adresse", 0.7, validator=_valid_ip,
    ),
    ExtractionRule(
        "hostname",
        re.compile(
            r"(?<![@\w.-])((?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
            r"(?:local|lan|intern|internal|corp|com|de|net|org|io))\b",
            _I,
        ),
        "fact", "hostname", 0.6,
    ),
    ExtractionRule(
        "certificate_file",
        re.compile(r"(?<![\w/.-])([\w/.-]+\.(?:pem|crt|cer|p12|pfx|csr))\b", _I),
        "fact", "zertifikat", 0.6,
    ),
    ExtractionRule(
        "config_file",
        re.compile(r"(?<![\w/.-])([\w/.-]+\.(?:conf|cfg|ini|ya?ml|toml))\b", _I),
        "fact", "konfigurationsdatei", 0.6,
    ),
    ExtractionRule(
        "port",
        re.compile(r"\bport\s*[:=]?\s*(\d{2,5})\b", _I),
        "fact", "port", 0.6, validator=_valid_port,
    ),
    ExtractionRule(
        "operating_system",
        re.compile(
            r"\b(ubuntu(?:\s\d{2}\.\d{2})?|debian(?:\s\d{1,2})?|windows\s+server(?:\s\d{4})?"
            r"|windows(?:\s1[01])?|centos(?:\s\d)?|rhel(?:\s\d)?|red\s+hat\s+enterprise\s+linux"
            r"|alpine|macos|freebsd)\b",
            _I,
        ),
        "fact", "betriebssystem", 0.6,
    ),
    ExtractionRule(
        "service",
        re.compile(
            r"\b(nginx|apache(?:2)?|postgres(?:ql)?|mysql|mariadb|redis|docker|kubernetes"
            r"|elasticsearch|rabbitmq|mongodb|tomcat|iis|openssh|haproxy)\b",
            _I,
        ),
        "fact", "dienst", 0.6,
    ),
]


def normalize_value(value: str, type: str) -> str:
    """Lowercase preference and profile values; keep contact, task and document values verbatim."""
    trimmed = value.strip()
    if type in ("preference", "profile_fact"):
        return trimmed.lower()
    return trimmed


def normalize_candidate(candidate: Candidate) -> Optional[Candidate]:
    """
    Normalize key, person and value of a candidate.

    Returns:
        Normalized candidate, or None if key or value end up empty
    """
    key = normalize_slug(candidate.key)
    value = normalize_value(candidate.value, candidate.type)
    if not key or not value:
        return None

    person = candidate.person
    if person:
        person = normalize_slug(person) or None

    return candidate.model_copy(update={"key": key, "value": value, "person": person})


def _coerce_candidate(obj: Any, allowed_types: Sequence[str]) -> Optional[Candidate]:
    """Structural validation of one generated object."""
    if not isinstance(obj, dict):
        return None
    if obj.get("type") not in allowed_types:
        return None
    key, value = obj.get("key"), obj.get("value")
    if not isinstance(key, str) or not isinstance(value, str):
        return None
    confidence = obj.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        return None
    if not 0.0 <= confidence <= 1.0:
        return None
    person = obj.get("person")
    if person is not None and not isinstance(person, str):
        return None
    return Candidate(person=person, type=obj["type"], key=key, value=value, confidence=float(confidence))


def parse_candidates(
    text: str,
    allowed_types: Sequence[str] = CONVERSATION_TYPES,
    max_chars: int = 16000,
) -> List[Candidate]:
    """
    Parse a generation response into candidates.

    The array is located between the first '[' and the last ']'.
    Structurally invalid entries are dropped.

    Raises:
        ParseError: If no JSON array can be located or decoded
    """
    if len(text) > max_chars:
        raise ParseError(f"Response too long ({len(text)} chars)")

    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        raise ParseError("No JSON array in response")

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise ParseError(f"Malformed JSON array: {e.msg}") from e

    if not isinstance(data, list):
        raise ParseError("Response is not a JSON array")

    candidates = []
    for obj in data:
        candidate = _coerce_candidate(obj, allowed_types)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def apply_rules(text: str, rules: Sequence[ExtractionRule]) -> List[Candidate]:
    """Run rules in order; each contributes at most one normalized candidate."""
    candidates = []
    for rule in rules:
        raw = rule.apply(text)
        if raw is None:
            continue
        normalized = normalize_candidate(raw)
        if normalized is not None:
            candidates.append(normalized)
    return candidates


class FactExtractor:
    """
    Turns utterances and document chunks into candidate facts.

    Interrogative utterances are ignored, requests are throttled per
    user, and input is sanitized and clamped before generation.
    """

    def __init__(
        self,
        generator: Optional[BaseGenerator] = None,
        cfg: Optional[ExtractionCfg] = None,
        rate_limiter: Optional[RateLimiter] = None,
        document_rate_limiter: Optional[RateLimiter] = None,
        model_name: Optional[str] = None,
    ):
        """
        Initialize extractor.

        Args:
            generator: Generation collaborator; None means pattern rules only
            cfg: Extraction configuration
            rate_limiter: Per-user limiter for conversational extraction
            document_rate_limiter: Per-identity limiter for document chunks
            model_name: Model override forwarded in the generation config;
                None uses the generator's own model
        """
        self.generator = generator
        self.cfg = cfg or ExtractionCfg()
        self.rate_limiter = rate_limiter or RateLimiter(
            self.cfg.rate_limit_requests, self.cfg.rate_limit_window_s
        )
        self.document_rate_limiter = document_rate_limiter or RateLimiter(
            self.cfg.document_rate_limit_requests, self.cfg.rate_limit_window_s
        )
        self.model_name = model_name

    async def extract(self, text: str, user_id: str) -> ExtractionResult:
        """
        Extract candidate facts from a conversational utterance.

        Args:
            text: Raw utterance
            user_id: Requesting user (rate-limit key)

        Returns:
            ExtractionResult, degraded when the pattern fallback was used

        Raises:
            RateLimited: If the user exceeded the extraction window
        """
        self._log_suspicious(text, user_id, "conversation")
        if is_question(text):
            logger.info("extraction_skipped_question", user_id=user_id)
            return ExtractionResult.ok([])

        await self.rate_limiter.acquire(user_id)

        cleaned = clamp_length(sanitize_utterance(text), self.cfg.max_input_chars)
        if not cleaned:
            return ExtractionResult.ok([])

        return await self._two_stage(
            cleaned,
            user_id,
            system_prompt=EXTRACTION_SYSTEM_PROMPT,
            user_prompt=f'Aussage: "{cleaned}"',
            allowed_types=CONVERSATION_TYPES,
            rules=CONVERSATION_RULES,
            max_candidates=self.cfg.max_candidates,
            max_tokens=self.cfg.max_tokens,
        )

    async def extract_document(self, chunk: str, target_id: str) -> ExtractionResult:
        """
        Extract technical facts from a document chunk.

        No question filter applies; the per-chunk cap is higher and the
        fallback rules target infrastructure facts.

        Args:
            chunk: Plain-text document chunk
            target_id: Owning user or the global-knowledge identity

        Raises:
            RateLimited: If the identity exceeded the document window
        """
        self._log_suspicious(chunk, target_id, "document")
        await self.document_rate_limiter.acquire(target_id)

        cleaned = clamp_length(sanitize_utterance(chunk), self.cfg.document_max_input_chars)
        if not cleaned:
            return ExtractionResult.ok([])

        return await self._two_stage(
            cleaned,
            target_id,
            system_prompt=DOCUMENT_SYSTEM_PROMPT,
            user_prompt=f'Document excerpt: "{cleaned}"',
            allowed_types=DOCUMENT_TYPES,
            rules=DOCUMENT_RULES,
            max_candidates=self.cfg.document_max_candidates,
            max_tokens=self.cfg.document_max_tokens,
        )

    async def _two_stage(
        self,
        cleaned: str,
        user_id: str,
        system_prompt: str,
        user_prompt: str,
        allowed_types: Sequence[str],
        rules: Sequence[ExtractionRule],
        max_candidates: int,
        max_tokens: int,
    ) -> ExtractionResult:
        reason = "generator_missing"
        if self.generator is not None:
            try:
                raw = await self._generate(system_prompt, user_prompt, allowed_types, max_tokens)
                candidates = self._normalize_all(raw)
                if candidates:
                    return ExtractionResult.ok(candidates[:max_candidates])
                reason = "empty_response"
            except GenerationUnavailable as e:
                reason = "generation_unavailable"
                logger.warning("extraction_generation_failed", user_id=user_id, error=str(e))
            except ParseError as e:
                reason = "parse_error"
                logger.warning("extraction_parse_failed", user_id=user_id, error=str(e))

        fallback = apply_rules(cleaned, rules)[:max_candidates]
        if reason == "empty_response" and not fallback:
            return ExtractionResult.ok([])

        logger.info(
            "extraction_degraded",
            user_id=user_id,
            reason=reason,
            candidates=len(fallback),
        )
        return ExtractionResult.fallback(fallback, reason)

    async def _generate(
        self,
        system_prompt: str,
        user_prompt: str,
        allowed_types: Sequence[str],
        max_tokens: int,
    ) -> List[Candidate]:
        config = GenerationConfig(
            model_name=self.model_name,
            temperature=self.cfg.temperature,
            max_tokens=max_tokens,
        )
        try:
            response = await asyncio.wait_for(
                self.generator.generate(system_prompt, user_prompt, config),
                timeout=self.cfg.generation_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise GenerationUnavailable(
                f"Generation timed out after {self.cfg.generation_timeout_s}s"
            ) from e
        except Exception as e:
            raise GenerationUnavailable(f"{type(e).__name__}: {e}") from e

        text = (response.text or "").strip()
        if not text:
            return []
        return parse_candidates(text, allowed_types, self.cfg.max_response_chars)

    @staticmethod
    def _log_suspicious(text: str, identity: str, source: str) -> None:
        analysis = analyze_suspicious_content(text)
        if analysis["risk_level"] != "low":
            logger.warning(
                "suspicious_input",
                identity=identity,
                source=source,
                risk_level=analysis["risk_level"],
                matches=analysis["suspicious_matches"],
            )

    @staticmethod
    def _normalize_all(candidates: List[Candidate]) -> List[Candidate]:
        normalized = []
        for candidate in candidates:
            result = normalize_candidate(candidate)
            if result is not None:
                normalized.append(result)
        return normalized
