"""Unit test for settings configuration."""
import json

import pytest
from pydantic import ValidationError

from fact_memory.config.settings import Settings


def test_default_settings():
    """Test that default thresholds and windows are correctly configured."""
    settings = Settings()
    assert settings.policy.auto_save_threshold == 0.75
    assert settings.policy.suggest_threshold == 0.5
    assert settings.policy.blacklist_hours == 24
    assert settings.retrieval.default_limit == 5
    assert settings.summarizer.min_age_days == 30


def test_default_ttls():
    settings = Settings()
    assert settings.policy.ttl == {
        "preference": None,
        "profile_fact": None,
        "contact": "P90D",
        "task_hint": "P30D",
    }


def test_paths_configuration():
    """Test that default paths are properly set."""
    settings = Settings()
    assert settings.paths.memory_db == "data/memory/memory.db"
    assert settings.paths.metrics_log == "data/metrics/memory_events.ndjson"
    assert settings.paths.jobs_state == "data/jobs/jobs.jsonl"


def test_load_missing_file_gives_defaults(tmp_path):
    assert Settings.load(tmp_path / "missing.json") == Settings()
    assert Settings.load() == Settings()


def test_load_overrides(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({
        "policy": {"blacklist_hours": 48, "ttl": {"task_hint": "P7D"}},
        "retrieval": {"default_limit": 3},
    }))

    settings = Settings.load(path)

    assert settings.policy.blacklist_hours == 48
    assert settings.policy.ttl == {"task_hint": "P7D"}
    assert settings.retrieval.default_limit == 3
    assert settings.extraction.max_candidates == 8


def test_invalid_threshold_rejected(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"policy": {"auto_save_threshold": 1.5}}))

    with pytest.raises(ValidationError):
        Settings.load(path)
