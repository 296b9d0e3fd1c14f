"""Application settings and configuration schema."""

import json
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field


class PolicyCfg(BaseModel):
    """Privacy policy parameters shared by every decision point."""
    auto_save_threshold: float = Field(0.75, ge=0.0, le=1.0)
    suggest_threshold: float = Field(0.5, ge=0.0, le=1.0)
    document_save_threshold: float = Field(0.5, ge=0.0, le=1.0)
    blacklist_hours: int = 24
    max_text_length: int = 1000
    ttl: Dict[str, Optional[str]] = Field(
        default_factory=lambda: {
            "preference": None,
            "profile_fact": None,
            "contact": "P90D",
            "task_hint": "P30D",
        }
    )
    fallback_ttl: str = "P30D"


class ExtractionCfg(BaseModel):
    """Configuration for candidate extraction."""
    max_input_chars: int = 800
    document_max_input_chars: int = 4000
    max_response_chars: int = 16000
    max_candidates: int = 8
    document_max_candidates: int = 20
    rate_limit_requests: int = 10
    rate_limit_window_s: float = 60.0
    document_rate_limit_requests: int = 120
    generation_timeout_s: float = 20.0
    temperature: float = 0.1
    max_tokens: int = 500
    document_max_tokens: int = 1000


class RetrievalCfg(BaseModel):
    """Configuration for prompt-context retrieval."""
    default_limit: int = 5
    trigram_weight: float = 0.5
    keyword_weight: float = 0.3
    edit_weight: float = 0.2


class SummarizerCfg(BaseModel):
    """Configuration for memory consolidation."""
    min_age_days: int = 30
    min_cluster_size: int = 2
    confidence_boost: float = 0.05


class Paths(BaseModel):
    """File and directory paths configuration."""
    data_dir: str = "data"
    memory_db: str = "data/memory/memory.db"
    metrics_log: str = "data/metrics/memory_events.ndjson"
    jobs_state: str = "data/jobs/jobs.jsonl"


class Settings(BaseModel):
    """Main application settings."""
    policy: PolicyCfg = PolicyCfg()
    extraction: ExtractionCfg = ExtractionCfg()
    retrieval: RetrievalCfg = RetrievalCfg()
    summarizer: SummarizerCfg = SummarizerCfg()
    paths: Paths = Paths()

    @classmethod
    def load(cls, path: Union[str, Path, None] = None) -> "Settings":
        """
        Load settings from a JSON file.

        Args:
            path: Path to a JSON settings file; missing files yield defaults

        Returns:
            Validated Settings instance
        """
        if path is None:
            return cls()

        path = Path(path)
        if not path.exists():
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        return cls.model_validate(data)
