"""
KPI aggregation over the NDJSON memory event log.
"""

import json
from collections import Counter
from pathlib import Path
from typing import Iterable, List, Optional, Union

import numpy as np
import structlog

from .schemas import KeyCount, MemoryKPIs, MetricEvent

logger = structlog.get_logger(__name__)


def read_events(
    path: Union[str, Path],
    from_ts: Optional[float] = None,
    to_ts: Optional[float] = None,
) -> List[MetricEvent]:
    """
    Stream events from an NDJSON log, skipping malformed lines.

    Args:
        path: NDJSON event log
        from_ts: Inclusive lower bound (unix seconds)
        to_ts: Inclusive upper bound (unix seconds)

    Returns:
        Events within the window; empty if the log does not exist
    """
    path = Path(path)
    if not path.exists():
        return []

    events = []
    skipped = 0
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = MetricEvent.model_validate(json.loads(line))
            except ValueError:
                skipped += 1
                continue
            if from_ts is not None and event.ts < from_ts:
                continue
            if to_ts is not None and event.ts > to_ts:
                continue
            events.append(event)

    if skipped:
        logger.warning("metrics_lines_skipped", path=str(path), skipped=skipped)
    return events


def percentile_lower(values: List[float], q: float) -> float:
    """Percentile using the lower-index method (element at floor((n-1)*q))."""
    if not values:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), q * 100, method="lower"))


def aggregate_kpis(events: Iterable[MetricEvent], top_n: int = 10) -> MemoryKPIs:
    """
    Compute KPIs from a sequence of events.

    Rates are relative to all decisions (save + ask + reject).
    """
    saved = auto = asked = rejected = 0
    save_scores: List[float] = []
    reject_scores: List[float] = []
    returned: List[int] = []
    latencies: List[float] = []
    keys: Counter = Counter()
    kpis = MemoryKPIs()

    for e in events:
        if e.type == "save":
            saved += 1
            if e.kind == "auto":
                auto += 1
            save_scores.append(e.score or 0.0)
            if e.key:
                keys[e.key] += 1
        elif e.type == "ask":
            asked += 1
        elif e.type == "reject":
            rejected += 1
            if e.score is not None:
                reject_scores.append(e.score)
            if e.key:
                keys[e.key] += 1
        elif e.type == "retrieve":
            kpis.retrievals += 1
            returned.append(e.returned or 0)
            if e.latency_ms is not None:
                latencies.append(e.latency_ms)
        elif e.type == "expire":
            kpis.expired += e.count or 0
        elif e.type == "error":
            kpis.errors += 1
        elif e.type == "extract" and e.status == "degraded":
            kpis.degraded_extractions += 1
        elif e.type == "consent":
            if e.decision == "approved":
                kpis.consents_approved += 1
            elif e.decision == "declined":
                kpis.consents_declined += 1
        elif e.type == "summarize":
            kpis.summaries_created += 1
            kpis.memories_archived += e.archived or 0

    decisions = saved + asked + rejected or 1

    kpis.total_saved = saved
    kpis.auto_save_rate = auto / saved if saved else 0.0
    kpis.ask_rate = asked / decisions
    kpis.reject_rate = rejected / decisions
    kpis.avg_score_saved = float(np.mean(save_scores)) if save_scores else 0.0
    kpis.avg_score_rejected = float(np.mean(reject_scores)) if reject_scores else 0.0
    kpis.avg_relevant_count = float(np.mean(returned)) if returned else 0.0
    kpis.latency_p50 = percentile_lower(latencies, 0.5)
    kpis.latency_p95 = percentile_lower(latencies, 0.95)
    kpis.top_keys = [KeyCount(key=k, count=c) for k, c in keys.most_common(top_n)]
    return kpis


def compute_kpis(
    path: Union[str, Path],
    from_ts: Optional[float] = None,
    to_ts: Optional[float] = None,
) -> MemoryKPIs:
    """
    Compute KPIs for a time window of the event log.

    Args:
        path: NDJSON event log
        from_ts: Inclusive lower bound (unix seconds)
        to_ts: Inclusive upper bound (unix seconds)
    """
    return aggregate_kpis(read_events(path, from_ts, to_ts))
