"""
Telemetry and logging infrastructure for the memory engine.

Configures structlog for JSON output and provides MetricsSink, an
append-only NDJSON event log. Sink failures are logged and never
propagate to the operation that emitted the event.
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Optional, Union

import structlog

from .schemas import MetricEvent


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog with ISO timestamps and JSON rendering."""
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_logging()

logger = structlog.get_logger(__name__)


class MetricsSink:
    """
    Append-only event log.

    Events are written as one JSON object per line when a path is set,
    and the most recent ones are also kept in memory.
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        clock: Optional[Callable[[], datetime]] = None,
        buffer_size: int = 1000,
    ):
        """
        Initialize metrics sink.

        Args:
            path: NDJSON file to append to (None keeps events in memory only)
            clock: Time source for event timestamps
            buffer_size: Number of recent events kept in memory
        """
        self.path = Path(path) if path is not None else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.recent: Deque[MetricEvent] = deque(maxlen=buffer_size)

    def emit(self, type: str, user_id: Optional[str] = None, **fields: Any) -> None:
        """
        Record one event. Never raises.

        Args:
            type: Event type (save, ask, reject, retrieve, ...)
            user_id: Owning user, if any
            **fields: Type-specific event fields
        """
        try:
            event = MetricEvent(
                type=type,
                ts=self._clock().timestamp(),
                user_id=user_id,
                **fields,
            )
            self.recent.append(event)
            if self.path is not None:
                line = json.dumps(event.model_dump(exclude_none=True), ensure_ascii=False)
                with self._lock:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with open(self.path, "a", encoding="utf-8") as f:
                        f.write(line + "\n")
        except Exception as e:
            logger.warning("metrics_emit_failed", event_type=type, error=str(e))

    def log_save(self, user_id: str, key: str, kind: str, score: float, risk: str) -> None:
        self.emit("save", user_id, key=key, kind=kind, score=score, risk=risk)

    def log_ask(self, user_id: str, key: str, score: float) -> None:
        self.emit("ask", user_id, key=key, score=score)

    def log_reject(self, user_id: str, key: str, reason: str, score: Optional[float] = None) -> None:
        self.emit("reject", user_id, key=key, reason=reason, score=score)

    def log_retrieve(self, user_id: str, query_hash: str, returned: int, latency_ms: float) -> None:
        self.emit("retrieve", user_id, query_hash=query_hash, returned=returned, latency_ms=latency_ms)

    def log_expire(self, user_id: Optional[str], count: int) -> None:
        self.emit("expire", user_id, count=count)

    def log_error(self, where: str, message: str, user_id: Optional[str] = None) -> None:
        self.emit("error", user_id, where=where, message=message)

    def log_summarize(self, user_id: str, cluster_size: int, archived: int) -> None:
        self.emit("summarize", user_id, cluster_size=cluster_size, archived=archived)

    def log_consent(self, user_id: str, key: str, decision: str) -> None:
        self.emit("consent", user_id, key=key, decision=decision)

    def log_extract(self, user_id: str, status: str, count: int, reason: Optional[str] = None) -> None:
        self.emit("extract", user_id, status=status, count=count, reason=reason)

    def counts(self) -> Dict[str, int]:
        """Event counts by type over the in-memory buffer."""
        counts: Dict[str, int] = {}
        for event in self.recent:
            counts[event.type] = counts.get(event.type, 0) + 1
        return counts
