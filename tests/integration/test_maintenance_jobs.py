"""
Integration tests for maintenance jobs run through the JobManager.
"""
import pytest

from fact_memory.memory.schemas import MemoryItemInput
from fact_memory.ops.jobs import JobManager
from fact_memory.ops.maintenance import run_consent_cleanup, run_expire_sweep, run_summarization

# Mark all tests as async
pytestmark = pytest.mark.asyncio


@pytest.fixture
def manager(tmp_path, clock):
    return JobManager(state_file=tmp_path / "jobs" / "jobs.jsonl", clock=clock)


async def test_expire_sweep_job(make_pipeline, manager, clock, metrics):
    pipeline = make_pipeline()
    await pipeline.store.upsert("u1", MemoryItemInput(type="task_hint", key="meeting", value="freitag"))
    await pipeline.store.upsert("u1", MemoryItemInput(type="preference", key="farbe", value="blau"))
    clock.advance(days=31)

    job = await manager.wait(manager.submit("expire_sweep", run_expire_sweep(pipeline)))

    assert job.state == "succeeded"
    assert job.result == {"removed": 1}
    assert metrics.counts()["expire"] == 1
    assert [i.key for i in await pipeline.list_memories("u1")] == ["farbe"]


async def test_consent_cleanup_job(make_pipeline, manager, clock):
    pipeline = make_pipeline()
    await pipeline.consent.record_consent("u1", "email", "contact", approved=False)
    clock.advance(hours=25)

    job = await manager.wait(manager.submit("consent_cleanup", run_consent_cleanup(pipeline)))

    assert job.result == {"removed": 1}
    assert await pipeline.consent.get_consent_history("u1", include_expired=True) == []


async def test_summarization_job_over_all_users(make_pipeline, manager, clock):
    pipeline = make_pipeline()
    for user_id in ("u1", "u2"):
        await pipeline.store.upsert(user_id, MemoryItemInput(type="profile_fact", key="beruf", value="lehrer", confidence=0.9))
        await pipeline.store.upsert(user_id, MemoryItemInput(type="profile_fact", key="job", value="lehrer", confidence=0.6))
    clock.advance(days=31)

    job = await manager.wait(manager.submit("summarize", run_summarization(pipeline)))

    assert job.state == "succeeded"
    assert job.result == {"users": 2, "clusters": 2, "archived": 2}
    assert [i.key for i in await pipeline.list_memories("u1")] == ["beruf"]
    assert [i.key for i in await pipeline.list_memories("u2")] == ["beruf"]


async def test_summarization_job_for_selected_users(make_pipeline, manager):
    pipeline = make_pipeline()
    await pipeline.store.upsert("u1", MemoryItemInput(type="profile_fact", key="beruf", value="lehrer"))
    await pipeline.store.upsert("u1", MemoryItemInput(type="profile_fact", key="job", value="lehrer"))

    job = await manager.wait(manager.submit(
        "summarize", run_summarization(pipeline, user_ids=["u1"], min_age_days=0),
    ))

    assert job.result == {"users": 1, "clusters": 1, "archived": 1}
    assert len(await pipeline.list_memories("u1")) == 1


async def test_summarization_job_with_empty_store(make_pipeline, manager):
    pipeline = make_pipeline()

    job = await manager.wait(manager.submit("summarize", run_summarization(pipeline)))

    assert job.state == "succeeded"
    assert job.result == {"users": 0, "clusters": 0, "archived": 0}
