"""
Stable hashing utilities.

Used to reference queries and values in audit events without logging
their raw text.
"""

import hashlib
import json
import unicodedata


def stable_hash(obj: dict | list | str | bytes, digest_size: int = 32) -> str:
    """
    Compute stable hash of an object.

    - Dicts/lists: sorted by keys, then JSON-serialized
    - Strings: NFC normalized, UTF-8 encoded
    - Bytes: used directly

    Returns:
        Hex string (blake2b, 2 * digest_size characters)

    Examples:
        >>> stable_hash({"b": 2, "a": 1}) == stable_hash({"a": 1, "b": 2})
        True
    """
    if isinstance(obj, (dict, list)):
        canonical = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        data = canonical.encode("utf-8")
    elif isinstance(obj, str):
        data = unicodedata.normalize("NFC", obj).encode("utf-8")
    elif isinstance(obj, bytes):
        data = obj
    else:
        raise TypeError(f"Cannot hash type {type(obj)}: {obj}")

    return hashlib.blake2b(data, digest_size=digest_size).hexdigest()


def short_hash(text: str) -> str:
    """16-character hash for log correlation."""
    return stable_hash(text, digest_size=8)
