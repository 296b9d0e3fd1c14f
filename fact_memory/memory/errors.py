"""
Error taxonomy for the memory engine.

Only RateLimited, Unauthorized and StorageError ever reach a caller.
GenerationUnavailable and ParseError are converted into a degraded
extraction result, and PolicyRejected into a recorded rejection.
"""


class FactMemoryError(Exception):
    """Base class for all memory engine errors."""


class RateLimited(FactMemoryError):
    """Extraction request exceeded the per-user sliding window."""

    def __init__(self, user_id: str, retry_after: float = 0.0):
        self.user_id = user_id
        self.retry_after = retry_after
        super().__init__(
            f"Extraction rate limit exceeded for user {user_id!r}; "
            f"retry in {retry_after:.1f}s"
        )


class GenerationUnavailable(FactMemoryError):
    """The generation collaborator failed, timed out or is unreachable."""


class ParseError(FactMemoryError):
    """Generation output did not contain a usable JSON array."""


class PolicyRejected(FactMemoryError):
    """A candidate violated the privacy policy and must not be stored."""

    def __init__(self, reason: str, rule: str = ""):
        self.reason = reason
        self.rule = rule
        super().__init__(f"{reason}: {rule}" if rule else reason)


class Unauthorized(FactMemoryError):
    """The requesting user does not own the referenced record."""

    def __init__(self, user_id: str, item_id: str):
        self.user_id = user_id
        self.item_id = item_id
        super().__init__(f"User {user_id!r} does not own memory {item_id!r}")


class StorageError(FactMemoryError):
    """Persistence of a fact or consent decision failed."""
