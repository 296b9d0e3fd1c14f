"""
Input guardrails for LLM-based extraction.

Neutralizes prompt-injection phrasing, strips encoded sequences and
markup, bounds input length, and throttles extraction per user.
"""

import asyncio
import re
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, List, Optional

import structlog

from .errors import RateLimited

logger = structlog.get_logger(__name__)

_I = re.IGNORECASE

DANGEROUS_PATTERNS = [
    # Direct instruction attempts
    re.compile(r"(?:ignore|forget|disregard)\s+(?:previous|all|above|earlier|prior)\s+(?:instructions?|prompts?|commands?|rules?)", _I),
    # Role markers
    re.compile(r"\b(?:system|assistant|user|human|ai)\s*:\s*", _I),
    # Role playing
    re.compile(r"\byou\s+are\s+(?:now|a|an)\s+", _I),
    re.compile(r"\bpretend\s+(?:to\s+be|you\s+are)", _I),
    re.compile(r"\bact\s+as\s+(?:a|an)\s+", _I),
    re.compile(r"\broleplay\s+as\b", _I),
    re.compile(r"\bassume\s+the\s+role\b", _I),
    # Instruction overrides
    re.compile(r"\b(?:new|updated?)\s+instructions?\s*:", _I),
    re.compile(r"\bdo(?:n't|\s+not)\s+(?:extract|remember|store|save)\b", _I),
    re.compile(r"\b(?:respond\s+with|output|return|print|say)\s+(?:only|just)\b", _I),
    # Format manipulation
    re.compile(r"```(?:json)?", _I),
    re.compile(r"\[\s*\]"),
    re.compile(r"\{\s*\}"),
    # Escape attempts
    re.compile(r"\\[nrt]"),
    re.compile(r"<\s*/?\s*script", _I),
    re.compile(r"\b(?:javascript|data):", _I),
    # German equivalents
    re.compile(r"\b(?:ignoriere|vergiss|missachte)\s+(?:vorherige|alle|obige|frühere)\s+(?:anweisungen?|befehle?|regeln?)", _I),
    re.compile(r"\b(?:neue|aktualisierte?)\s+anweisungen?\s*:", _I),
    re.compile(r"\bdu\s+bist\s+(?:jetzt|ab\s+sofort)\s+", _I),
    re.compile(r"\btue\s+so\s+als\s+(?:ob|wärst)\b", _I),
    re.compile(r"\bverhalte\s+dich\s+wie\b", _I),
    re.compile(r"\bantworte\s+(?:nur|ausschließlich)\s+mit\b", _I),
]

SUSPICIOUS_KEYWORDS = [
    "execute", "eval", "compile", "ausführen",
    "admin", "administrator", "root", "sudo", "berechtigung",
    "command", "instruction", "directive", "befehl", "anweisung", "direktive",
    "override", "bypass", "überschreiben", "umgehen",
]

FILTERED = "[FILTERED]"

QUESTION_WORDS = frozenset({
    "was", "wie", "wer", "wo", "wann", "warum", "wieso", "weshalb", "welche", "welcher",
    "welches", "wem", "wen", "wessen", "woher", "wohin",
    "what", "how", "who", "where", "when", "why", "which",
})


def sanitize_utterance(text: str) -> str:
    """
    Sanitize an utterance before it reaches the generation collaborator.

    Args:
        text: Raw user text

    Returns:
        Text with injection phrasing replaced by [FILTERED], encoded
        sequences and markup removed, and whitespace normalized
    """
    if not text:
        return ""

    sanitized = text.strip()

    for pattern in DANGEROUS_PATTERNS:
        sanitized = pattern.sub(FILTERED, sanitized)

    sanitized = re.sub(r"\s+", " ", sanitized).strip()

    # Excessive punctuation
    sanitized = re.sub(r"[!?]{3,}", "!!", sanitized)
    sanitized = re.sub(r"\.{4,}", "...", sanitized)

    # Encoded sequences
    sanitized = re.sub(r"%[0-9a-fA-F]{2}", "", sanitized)
    sanitized = re.sub(r"\\u[0-9a-fA-F]{4}", "", sanitized)
    sanitized = re.sub(r"\\x[0-9a-fA-F]{2}", "", sanitized)

    # Markup
    sanitized = re.sub(r"<[^>]*>", "", sanitized)

    return re.sub(r"\s+", " ", sanitized).strip()


def clamp_length(text: str, max_chars: int = 800) -> str:
    """
    Clamp text length, preferring a word boundary near the limit.

    A cut is made at the last space if it falls in the final 20% of the
    window, otherwise hard. Truncated text ends with "...".
    """
    if not text:
        return ""

    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")

    if last_space > max_chars * 0.8:
        return truncated[:last_space].rstrip() + "..."
    return truncated.rstrip() + "..."


def is_question(text: str) -> bool:
    """True for interrogative input: a leading question word or any '?'."""
    stripped = text.strip().lower()
    if not stripped:
        return False
    if "?" in stripped:
        return True
    first = re.split(r"[\s,.!;:]+", stripped, maxsplit=1)[0]
    return first in QUESTION_WORDS


def analyze_suspicious_content(text: str) -> Dict[str, object]:
    """
    Inspect text for injection attempts.

    Returns:
        Dict with has_dangerous_patterns, suspicious_matches and risk_level
    """
    lower = text.lower()
    dangerous = any(p.search(text) for p in DANGEROUS_PATTERNS)
    matches = [kw for kw in SUSPICIOUS_KEYWORDS if re.search(rf"\b{re.escape(kw)}\b", lower)]

    if dangerous:
        risk = "high"
    elif len(matches) > 2:
        risk = "medium"
    else:
        risk = "low"

    return {
        "has_dangerous_patterns": dangerous,
        "suspicious_matches": matches,
        "risk_level": risk,
    }


class RateLimiter:
    """
    Per-user sliding-window request limiter.

    Constructed once per service and injected into extractors; check and
    record happen atomically under one lock.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_s: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests: Requests allowed per window
            window_s: Window length in seconds
            clock: Monotonic time source (defaults to time.monotonic)
        """
        self.max_requests = max_requests
        self.window_s = window_s
        self._clock = clock or time.monotonic
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def _prune(self, user_id: str, now: float) -> Deque[float]:
        history = self._requests[user_id]
        while history and now - history[0] >= self.window_s:
            history.popleft()
        return history

    async def acquire(self, user_id: str) -> None:
        """
        Record a request for user_id.

        Raises:
            RateLimited: If the user already used the whole window
        """
        async with self._lock:
            now = self._clock()
            history = self._prune(user_id, now)
            if len(history) >= self.max_requests:
                retry_after = self.window_s - (now - history[0])
                logger.warning("extraction_rate_limited", user_id=user_id, retry_after=retry_after)
                raise RateLimited(user_id, retry_after)
            history.append(now)

    def remaining(self, user_id: str) -> int:
        """Requests still available in the current window."""
        history = self._prune(user_id, self._clock())
        return max(0, self.max_requests - len(history))

    def reset(self, user_id: Optional[str] = None) -> None:
        """Forget request history for one user or everyone."""
        if user_id is None:
            self._requests.clear()
        else:
            self._requests.pop(user_id, None)

    def active_users(self) -> List[str]:
        return [u for u, h in self._requests.items() if h]
