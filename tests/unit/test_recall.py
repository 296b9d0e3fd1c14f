"""
Unit tests for fact_memory/memory/recall.py

Tests ranking, limits, context formatting and retrieve metrics.
"""
import pytest

from fact_memory.config.settings import RetrievalCfg
from fact_memory.memory.recall import CONTEXT_HEADER, MemoryRetriever
from fact_memory.memory.schemas import MemoryItem, MemoryItemInput

# Mark all tests as async
pytestmark = pytest.mark.asyncio


@pytest.fixture
def retriever(store, metrics):
    return MemoryRetriever(store, metrics=metrics)


async def _seed(store, *items):
    for type_, key, value, person in items:
        await store.upsert("u1", MemoryItemInput(type=type_, key=key, value=value, person=person))


async def test_empty_store_returns_empty_context(retriever):
    result = await retriever.retrieve_for_prompt("u1", "Was mag ich?")

    assert result.context == ""
    assert result.relevant == []


async def test_most_relevant_memory_first(retriever, store):
    await _seed(
        store,
        ("preference", "lieblingsfarbe", "blau", "self"),
        ("profile_fact", "beruf", "lehrer", "self"),
        ("profile_fact", "wohnort", "berlin", "self"),
    )

    result = await retriever.retrieve_for_prompt("u1", "Welche Lieblingsfarbe habe ich?")

    assert result.relevant[0].key == "lieblingsfarbe"


async def test_limit_is_respected(retriever, store):
    await _seed(store, *[("preference", f"hobby_{i}", f"wert{i}", "self") for i in range(8)])

    assert len((await retriever.retrieve_for_prompt("u1", "hobby")).relevant) == 5
    assert len((await retriever.retrieve_for_prompt("u1", "hobby", limit=2)).relevant) == 2
    assert (await retriever.retrieve_for_prompt("u1", "hobby", limit=0)).relevant == []


async def test_configured_default_limit(store):
    retriever = MemoryRetriever(store, RetrievalCfg(default_limit=1))
    await _seed(store, ("preference", "a", "x", "self"), ("preference", "b", "y", "self"))

    assert len((await retriever.retrieve_for_prompt("u1", "x")).relevant) == 1


async def test_ties_prefer_recently_updated(retriever, store, clock):
    await _seed(store, ("preference", "farbe", "blau", "self"))
    clock.advance(minutes=1)
    await _seed(store, ("preference", "essen", "brot", "self"))

    result = await retriever.retrieve_for_prompt("u1", "zzzz")

    assert [i.key for i in result.relevant] == ["essen", "farbe"]


async def test_expired_memories_are_not_retrieved(retriever, store, clock):
    await store.upsert("u1", MemoryItemInput(type="task_hint", key="meeting", value="freitag"))
    clock.advance(days=31)

    result = await retriever.retrieve_for_prompt("u1", "meeting freitag")

    assert result.relevant == []


async def test_other_users_memories_are_not_retrieved(retriever, store):
    await store.upsert("u2", MemoryItemInput(type="preference", key="lieblingsfarbe", value="rot"))

    result = await retriever.retrieve_for_prompt("u1", "Lieblingsfarbe")

    assert result.relevant == []


async def test_context_groups_by_type(retriever, store):
    await _seed(
        store,
        ("task_hint", "meeting", "freitag", "self"),
        ("preference", "lieblingsfarbe", "blau", "self"),
        ("preference", "mag", "jazz", "roman"),
    )

    result = await retriever.retrieve_for_prompt("u1", "was weißt du")
    lines = result.context.splitlines()

    assert lines[0] == CONTEXT_HEADER
    assert lines.index("Preferences:") < lines.index("Tasks & Hints:")
    assert "- roman: mag = jazz" in lines
    assert "- lieblingsfarbe: blau" in lines
    assert "- meeting: freitag" in lines


async def test_retrieve_emits_metric_without_raw_query(retriever, store, metrics):
    await _seed(store, ("preference", "lieblingsfarbe", "blau", "self"))

    await retriever.retrieve_for_prompt("u1", "geheime frage")

    event = metrics.recent[-1]
    assert event.type == "retrieve"
    assert event.returned == 1
    assert event.query_hash != "geheime frage"
    assert event.latency_ms >= 0


async def test_memory_text_includes_third_party():
    item = MemoryItem(user_id="u1", type="preference", key="lieblings_musik", value="jazz", person="roman")

    assert MemoryRetriever.memory_text(item) == "roman lieblings musik jazz"


async def test_format_context_empty():
    assert MemoryRetriever.format_context([]) == ""
