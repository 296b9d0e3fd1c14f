"""
Unit tests for FactStore (upsert identity, TTL filtering, ownership).

Tests:
- upsert(): Create, overwrite in place, recreate after expiry
- list_by_user(): Live items only, most recent first
- remove() / clear_user(): Ownership and bulk wipe
- expire_sweep() / get_stats() / search() / list_users()
"""
import asyncio
from datetime import timedelta

import pytest

from fact_memory.memory.errors import StorageError, Unauthorized
from fact_memory.memory.schemas import MemoryItemInput
from fact_memory.memory.store import GLOBAL_USER_ID, FactStore

# Mark all tests as async
pytestmark = pytest.mark.asyncio


def _item(key="lieblingsfarbe", value="blau", type="preference", person="self", **kwargs):
    return MemoryItemInput(type=type, key=key, value=value, person=person, **kwargs)


# ============================================================================
# Upsert Tests
# ============================================================================

async def test_upsert_then_list_roundtrip(store):
    saved = await store.upsert("u1", _item())

    items = await store.list_by_user("u1")

    assert [i.id for i in items] == [saved.id]
    assert items[0].value == "blau"
    assert items[0].user_id == "u1"
    assert items[0].id.startswith("mem_")


async def test_upsert_is_idempotent_per_identity(store, clock):
    first = await store.upsert("u1", _item(value="blau", confidence=0.8))
    clock.advance(minutes=5)
    second = await store.upsert("u1", _item(value="grün", confidence=0.95))

    items = await store.list_by_user("u1")

    assert len(items) == 1
    assert second.id == first.id
    assert items[0].value == "grün"
    assert items[0].confidence == 0.95
    assert items[0].created_at == first.created_at
    assert items[0].updated_at > first.updated_at


async def test_identity_includes_type_and_person(store):
    await store.upsert("u1", _item(person="self"))
    await store.upsert("u1", _item(person="roman"))
    await store.upsert("u1", _item(type="profile_fact"))

    assert len(await store.list_by_user("u1")) == 3


async def test_concurrent_upserts_keep_one_item(store):
    await asyncio.gather(*[
        store.upsert("u1", _item(value=f"farbe{i}")) for i in range(10)
    ])

    items = await store.list_by_user("u1")
    assert len(items) == 1


async def test_users_are_isolated(store):
    await store.upsert("u1", _item())
    await store.upsert(GLOBAL_USER_ID, _item(type="fact", key="hostname", value="web01.intern", person=None))

    assert [i.key for i in await store.list_by_user("u1")] == ["lieblingsfarbe"]
    assert [i.key for i in await store.list_by_user(GLOBAL_USER_ID)] == ["hostname"]


async def test_user_ids_with_separator_do_not_collide(store):
    await store.upsert("a:b", _item())
    await store.upsert("a", _item(key="b"))

    assert len(await store.list_by_user("a:b")) == 1
    assert len(await store.list_by_user("a")) == 1


# ============================================================================
# TTL Tests
# ============================================================================

async def test_permanent_preference_survives_1000_days(store, clock):
    await store.upsert("u1", _item(key="lieblingsfarbe", value="blau", ttl=None))

    clock.advance(days=1000)

    items = await store.list_by_user("u1")
    assert [(i.key, i.value) for i in items] == [("lieblingsfarbe", "blau")]


async def test_task_hint_expires_after_30_days(store, clock):
    await store.upsert("u1", _item(type="task_hint", key="meeting", value="jeden freitag", ttl="P30D"))

    clock.advance(days=30)
    assert [i.key for i in await store.list_by_user("u1")] == ["meeting"]

    clock.advance(days=1)
    assert await store.list_by_user("u1") == []


async def test_policy_ttl_is_the_default(store, clock):
    saved = await store.upsert("u1", _item(type="contact", key="email", value="anna@firma.de"))

    assert saved.expires_at == clock() + timedelta(days=90)


async def test_expired_item_is_invisible_to_get(store, clock):
    saved = await store.upsert("u1", _item(type="task_hint", key="meeting", value="freitag"))

    clock.advance(days=31)

    assert await store.get("u1", saved.id) is None


async def test_upsert_after_expiry_creates_new_item(store, clock):
    old = await store.upsert("u1", _item(type="task_hint", key="meeting", value="freitag"))
    clock.advance(days=31)

    new = await store.upsert("u1", _item(type="task_hint", key="meeting", value="montag"))

    assert new.id != old.id
    assert new.created_at == clock()
    items = await store.list_by_user("u1")
    assert [i.value for i in items] == ["montag"]


async def test_refresh_recomputes_expiry(store, clock):
    first = await store.upsert("u1", _item(type="task_hint", key="meeting", value="freitag"))
    clock.advance(days=20)

    refreshed = await store.upsert("u1", _item(type="task_hint", key="meeting", value="freitag"))

    assert refreshed.id == first.id
    assert refreshed.expires_at > first.expires_at


async def test_expire_sweep_purges_and_logs(store, clock, metrics):
    await store.upsert("u1", _item(type="task_hint", key="meeting", value="freitag"))
    await store.upsert("u2", _item(type="task_hint", key="arzt", value="montag"))
    await store.upsert("u1", _item())

    clock.advance(days=31)
    removed = await store.expire_sweep()

    assert removed == 2
    assert metrics.counts()["expire"] == 2
    assert (await store.get_stats("u1")).expired == 0
    assert await store.list_users() == ["u1"]


# ============================================================================
# Remove / Update Tests
# ============================================================================

async def test_remove_own_item(store):
    saved = await store.upsert("u1", _item())

    assert await store.remove("u1", saved.id) is True
    assert await store.list_by_user("u1") == []
    assert await store.remove("u1", saved.id) is False


async def test_remove_missing_item_returns_false(store):
    assert await store.remove("u1", "mem_doesnotexist") is False


async def test_remove_other_users_item_is_unauthorized(store):
    saved = await store.upsert("u1", _item())

    with pytest.raises(Unauthorized):
        await store.remove("u2", saved.id)

    assert len(await store.list_by_user("u1")) == 1


async def test_remove_frees_identity(store):
    saved = await store.upsert("u1", _item())
    await store.remove("u1", saved.id)

    again = await store.upsert("u1", _item(value="rot"))

    assert again.id != saved.id


async def test_update_keeps_expiry(store, clock):
    saved = await store.upsert("u1", _item(type="task_hint", key="meeting", value="freitag"))
    clock.advance(days=3)

    updated = await store.update("u1", saved.id, value="montag", confidence=0.6)

    assert updated.value == "montag"
    assert updated.confidence == 0.6
    assert updated.expires_at == saved.expires_at
    assert updated.updated_at == clock()


async def test_update_other_users_item_is_unauthorized(store):
    saved = await store.upsert("u1", _item())

    with pytest.raises(Unauthorized):
        await store.update("u2", saved.id, value="rot")


async def test_clear_user(store):
    await store.upsert("u1", _item())
    await store.upsert("u1", _item(key="wohnort", value="berlin", type="profile_fact"))
    await store.upsert("u2", _item())

    assert await store.clear_user("u1") == 2
    assert await store.list_by_user("u1") == []
    assert len(await store.list_by_user("u2")) == 1


# ============================================================================
# Stats / Search Tests
# ============================================================================

async def test_get_stats(store, clock):
    await store.upsert("u1", _item())
    await store.upsert("u1", _item(key="mag", value="jazz", person="roman"))
    await store.upsert("u1", _item(type="task_hint", key="meeting", value="freitag"))
    clock.advance(days=31)

    stats = await store.get_stats("u1")

    assert stats.total == 2
    assert stats.expired == 1
    assert stats.by_type == {"preference": 2}
    assert stats.by_person == {"self": 1, "roman": 1}


async def test_search(store):
    await store.upsert("u1", _item())
    await store.upsert("u1", _item(key="mag", value="Jazz", person="roman"))

    assert [i.key for i in await store.search("u1", "jazz")] == ["mag"]
    assert [i.key for i in await store.search("u1", "ROMAN")] == ["mag"]
    assert len(await store.search("u1", "")) == 2


async def test_list_is_most_recent_first(store, clock):
    await store.upsert("u1", _item(key="a"))
    clock.advance(seconds=1)
    await store.upsert("u1", _item(key="b"))
    clock.advance(seconds=1)
    await store.upsert("u1", _item(key="a", value="neu"))

    assert [i.key for i in await store.list_by_user("u1")] == ["a", "b"]


# ============================================================================
# SQLite Backend Tests
# ============================================================================

async def test_sqlite_backend_persists(kv, policy, clock):
    store = FactStore(kv, policy, clock=clock)
    saved = await store.upsert("u1", _item())

    reopened = FactStore(kv, policy, clock=clock)
    items = await reopened.list_by_user("u1")

    assert items[0].id == saved.id
    assert items[0].expires_at is None


async def test_backend_failure_raises_storage_error(kv, policy, clock, metrics):
    store = FactStore(kv, policy, clock=clock, metrics=metrics)
    kv.close()

    with pytest.raises(StorageError):
        await store.upsert("u1", _item())
    assert metrics.counts()["error"] == 1
