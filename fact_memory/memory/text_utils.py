"""
Text normalization and similarity helpers tuned for short German facts.

semantic_similarity blends trigram Jaccard, keyword Jaccard and a
normalized edit-distance score. Weights default to 0.5 / 0.3 / 0.2.
"""

import re
import unicodedata
from typing import Dict, List, Optional, Set, Tuple

UMLAUTS = {"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"}

STOPWORDS: Set[str] = {
    "der", "die", "das", "und", "oder", "aber", "ich", "du", "er", "sie", "es",
    "wir", "ihr", "bin", "bist", "ist", "sind", "war", "waren", "hat", "haben",
    "mit", "von", "zu", "auf", "fuer", "durch", "ueber", "unter", "vor", "nach",
    "bei", "seit", "bis", "ohne", "gegen", "trotz", "waehrend", "wegen",
    "mein", "meine", "meinen", "meiner", "dein", "deine", "was", "wie", "wer",
    "the", "and", "for", "with", "what", "who", "how", "my", "your",
}

FILLER_WORDS = re.compile(r"\b(ein|eine|einer|der|die|das|und|oder|aber|sehr|ganz|ziemlich|gerne?)\b")

# Key stems treated as the same concept when clustering or matching
SEMANTIC_KEY_GROUPS: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "vorname", "heisst", "genannt"),
    "wohnort": ("wohnort", "stadt", "lebt_in", "zuhause"),
    "beruf": ("beruf", "job", "arbeitet_als", "taetigkeit"),
    "mag": ("mag", "gefaellt", "liebt", "bevorzugt"),
    "kann": ("kann", "beherrscht", "kennt", "versteht"),
}

# Bound on edit-distance input so scoring cost stays linear in item count
_MAX_EDIT_CHARS = 256


def fold_umlauts(text: str) -> str:
    """Replace German umlauts and eszett with their ASCII digraphs."""
    for src, dst in UMLAUTS.items():
        text = text.replace(src, dst)
    return text


def fold_diacritics(text: str) -> str:
    """Lowercase, fold umlauts, then strip any remaining combining marks."""
    text = fold_umlauts(text.lower())
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_slug(text: str) -> str:
    """
    Normalize a key or person name into a slug.

    Examples:
        >>> normalize_slug("Lieblings-Farbe")
        'lieblings_farbe'
        >>> normalize_slug("  Müller ")
        'mueller'
    """
    folded = fold_diacritics(text)
    slug = re.sub(r"[^a-z0-9]+", "_", folded)
    return slug.strip("_")


def normalize_text(text: str) -> str:
    """Normalize free text for comparison (folded, no punctuation or filler words)."""
    normalized = fold_diacritics(text.strip())
    normalized = normalized.replace("_", " ")
    normalized = re.sub(r"[^\w\s]", "", normalized)
    normalized = FILLER_WORDS.sub("", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def trigrams(text: str) -> Set[str]:
    """Character trigrams with two-space padding on each side."""
    collapsed = re.sub(r"\s+", " ", text.lower()).strip()
    padded = f"  {collapsed}  "
    return {padded[i:i + 3] for i in range(len(padded) - 2)}


def trigram_similarity(a: str, b: str) -> float:
    """Jaccard overlap of character trigrams."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    ta, tb = trigrams(a), trigrams(b)
    union = ta | tb
    if not union:
        return 0.0
    return len(ta & tb) / len(union)


def keywords(text: str) -> Set[str]:
    """Content words longer than two characters, minus stopwords."""
    return {
        w for w in normalize_text(text).split()
        if len(w) > 2 and w not in STOPWORDS
    }


def keyword_similarity(a: str, b: str) -> float:
    """Jaccard overlap of keyword sets."""
    ka, kb = keywords(a), keywords(b)
    union = ka | kb
    if not union:
        return 0.0
    return len(ka & kb) / len(union)


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance with a rolling row."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j - 1] + cost,  # substitution
                current[j - 1] + 1,      # insertion
                previous[j] + 1,         # deletion
            ))
        previous = current
    return previous[-1]


def edit_similarity(a: str, b: str) -> float:
    """1 - distance / max_length on bounded inputs."""
    a, b = a[:_MAX_EDIT_CHARS], b[:_MAX_EDIT_CHARS]
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return 1.0 - levenshtein(a, b) / longest


def semantic_similarity(
    a: str,
    b: str,
    weights: Tuple[float, float, float] = (0.5, 0.3, 0.2),
) -> float:
    """
    Blended similarity of two short texts.

    Args:
        a: First text (typically the query)
        b: Second text (typically a rendered memory)
        weights: (trigram, keyword, edit) weights

    Returns:
        Score in [0, 1]; identical normalized strings score 1.0
    """
    na, nb = normalize_text(a), normalize_text(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0

    w_tri, w_kw, w_edit = weights
    return (
        w_tri * trigram_similarity(na, nb)
        + w_kw * keyword_similarity(a, b)
        + w_edit * edit_similarity(na, nb)
    )


def semantic_group(key: str) -> Optional[str]:
    """Return the concept group a key belongs to, if any."""
    slug = normalize_slug(key)
    for group, stems in SEMANTIC_KEY_GROUPS.items():
        for stem in stems:
            if slug == stem or slug.startswith(stem + "_") or slug.endswith("_" + stem):
                return group
    return None


def key_base(key: str) -> str:
    """Cluster label for a key: its semantic group or its whole slug."""
    return semantic_group(key) or normalize_slug(key)


def words(text: str) -> List[str]:
    """Lowercase word tokens."""
    return re.findall(r"\w+", text.lower())
