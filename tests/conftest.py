"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from fact_memory.config.settings import Settings
from fact_memory.eval.telemetry import MetricsSink
from fact_memory.generation.generator import BaseGenerator, GenerationConfig, MockGenerator
from fact_memory.memory.pipeline import MemoryPipeline, create_memory_pipeline
from fact_memory.memory.policy import PolicyEngine
from fact_memory.memory.store import FactStore
from fact_memory.persist.memory_kv import MemoryKV


class FakeClock:
    """Controllable time source; advance() moves it forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingGenerator(BaseGenerator):
    """Generator whose backend is always down."""

    def __init__(self):
        self.calls = 0

    async def generate(self, system_prompt: str, user_prompt: str, config: Optional[GenerationConfig] = None):
        self.calls += 1
        raise ConnectionError("generation backend unreachable")

    async def is_available(self) -> bool:
        return False



@pytest.fixture
def clock():
    """Controllable clock starting 2024-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def mem_kv():
    """In-process KV backend."""
    return MemoryKV()


@pytest.fixture
def metrics(tmp_path, clock):
    """Metrics sink writing to a temporary NDJSON file."""
    return MetricsSink(tmp_path / "metrics" / "events.ndjson", clock=clock)


@pytest.fixture
def policy():
    return PolicyEngine()


@pytest.fixture
def store(mem_kv, policy, clock, metrics):
    """FactStore over the in-process backend with a fake clock."""
    return FactStore(mem_kv, policy, clock=clock, metrics=metrics)


@pytest.fixture
def failing_generator():
    return FailingGenerator()


@pytest.fixture
def mock_generator():
    return MockGenerator()


@pytest.fixture
def make_pipeline(mem_kv, clock, metrics):
    """Factory for pipelines sharing the test backend, clock and sink."""

    def _make(generator: Optional[BaseGenerator] = None, settings: Optional[Settings] = None) -> MemoryPipeline:
        return create_memory_pipeline(
            settings=settings,
            generator=generator,
            kv=mem_kv,
            metrics=metrics,
            clock=clock,
        )

    return _make
