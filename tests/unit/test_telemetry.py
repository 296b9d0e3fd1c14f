"""
Unit tests for fact_memory/eval/telemetry.py
"""
import json

from fact_memory.eval.metrics import read_events
from fact_memory.eval.telemetry import MetricsSink


def test_events_are_appended_as_ndjson(metrics, clock):
    metrics.log_save("u1", "name", "auto", 0.9, "low")
    metrics.log_reject("u1", "passwort", "pii", 0.95)

    lines = metrics.path.read_text(encoding="utf-8").splitlines()

    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first == {
        "type": "save",
        "ts": clock().timestamp(),
        "user_id": "u1",
        "key": "name",
        "kind": "auto",
        "score": 0.9,
        "risk": "low",
    }
    assert json.loads(lines[1])["reason"] == "pii"


def test_written_events_read_back(metrics):
    metrics.log_retrieve("u1", "abcd", 2, 3.5)
    metrics.log_expire("u1", 4)

    events = read_events(metrics.path)

    assert [e.type for e in events] == ["retrieve", "expire"]
    assert events[0].latency_ms == 3.5
    assert events[1].count == 4


def test_counts_over_recent_buffer():
    sink = MetricsSink(buffer_size=2)
    sink.log_ask("u1", "email", 0.6)
    sink.log_ask("u1", "telefon", 0.6)
    sink.log_consent("u1", "email", "approved")

    assert sink.counts() == {"ask": 1, "consent": 1}


def test_invalid_event_is_dropped_without_raising(metrics):
    metrics.emit("not_an_event_type", "u1")

    assert metrics.counts() == {}
    assert not metrics.path.exists()


def test_write_failure_does_not_raise(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    sink = MetricsSink(blocker / "events.ndjson")

    sink.log_error("fact_store.upsert", "disk full", "u1")

    # The event is still kept in memory
    assert sink.counts() == {"error": 1}


def test_memory_only_sink():
    sink = MetricsSink()
    sink.log_summarize("u1", 3, 2)
    sink.log_extract("u1", "degraded", 1, "parse_error")

    assert sink.path is None
    assert [e.type for e in sink.recent] == ["summarize", "extract"]
