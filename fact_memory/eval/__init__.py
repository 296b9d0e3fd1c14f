"""
Telemetry for the memory engine.

Provides the NDJSON event sink, event schemas and KPI aggregation.
"""

from .schemas import MetricEvent, MemoryKPIs, KeyCount
from .telemetry import MetricsSink, configure_logging
from .metrics import read_events, aggregate_kpis, compute_kpis, percentile_lower

__all__ = [
    "MetricEvent",
    "MemoryKPIs",
    "KeyCount",
    "MetricsSink",
    "configure_logging",
    "read_events",
    "aggregate_kpis",
    "compute_kpis",
    "percentile_lower",
]
