import asyncio
from unittest.mock import AsyncMock

import pytest

from giftsync.core.auth import SessionAuth
from giftsync.core.errors import RemoteStoreError
from giftsync.core.selection_metrics import selection_metrics
from giftsync.models.models import Gift
from giftsync.schemas.selection import Candidate, RemoteGiftCreate
from giftsync.stores.remote_store import SqlGiftStore


@pytest.mark.anyio
async def test_sync_uploads_local_only_selection(selection_engine, fetch_gifts):
    stored = selection_engine.local_cache.select(
        Candidate(name="Bluetooth Speaker", price=45, confidence=0.9, reasoning="Loves music"), "r1", "o1"
    )
    before = selection_metrics.repaired

    report = await selection_engine.sync_selections("r1", "o1")

    assert report.uploaded == ["Bluetooth Speaker"]
    assert report.failed == []
    assert report.error is None
    gifts = await fetch_gifts()
    assert [gift.name for gift in gifts] == ["Bluetooth Speaker"]
    assert gifts[0].price == 4500
    assert gifts[0].is_ai_generated is True
    assert gifts[0].ai_metadata["model"] == "restored-from-local"
    assert gifts[0].ai_metadata["source"] == "restored_from_local"
    assert gifts[0].ai_metadata["confidence"] == 0.9
    assert gifts[0].ai_metadata["original_id"] == stored.id
    assert selection_engine.local_cache.get(stored.id).remote_id == gifts[0].id
    assert selection_metrics.repaired == before + 1

    views = await selection_engine.get_unified_selections("r1", "o1")
    assert [(view.name, view.origin) for view in views] == [("Bluetooth Speaker", "remote")]


@pytest.mark.anyio
async def test_sync_does_not_duplicate_remote_records(selection_engine, gift_store, count_rows):
    selection_engine.local_cache.select(Candidate(name="Mug", price=12), "r1", "o1")
    selection_engine.local_cache.select(Candidate(name="Scarf", price=20), "r1", "o1")
    existing = await gift_store.create(RemoteGiftCreate(recipient_id="r1", occasion_id="o1", name="MUG", price=1200))

    report = await selection_engine.sync_selections("r1", "o1")

    assert report.uploaded == ["Scarf"]
    assert await count_rows(Gift) == 2
    assert await count_rows(Gift, Gift.name == "Mug") == 0
    mug = selection_engine.local_cache.find_by_name("r1", "o1", "mug")
    assert mug.remote_id == existing.id

    second = await selection_engine.sync_selections("r1", "o1")
    assert second.uploaded == []
    assert await count_rows(Gift) == 2


@pytest.mark.anyio
async def test_sync_matches_any_remote_status(selection_engine, gift_store, count_rows):
    selection_engine.local_cache.select(Candidate(name="Mug", price=12), "r1", "o1")
    await gift_store.create(
        RemoteGiftCreate(recipient_id="r1", occasion_id="o1", name="Mug", price=1200, status="ordered")
    )

    report = await selection_engine.sync_selections("r1", "o1")

    assert report.uploaded == []
    assert await count_rows(Gift) == 1


@pytest.mark.anyio
async def test_sync_skips_failed_uploads(make_engine, session_factory, auth, fetch_gifts):
    store = SqlGiftStore(session_factory, auth)
    real_create = store.create

    async def flaky_create(data):
        if data.name == "Mug":
            raise RemoteStoreError("constraint violation")
        return await real_create(data)

    store.create = flaky_create
    engine = make_engine(gift_store=store)
    engine.local_cache.select(Candidate(name="Mug", price=12), "r1", "o1")
    engine.local_cache.select(Candidate(name="Scarf", price=20), "r1", "o1")

    report = await engine.sync_selections("r1", "o1")

    assert report.failed == ["Mug"]
    assert report.uploaded == ["Scarf"]
    assert [gift.name for gift in await fetch_gifts()] == ["Scarf"]


@pytest.mark.anyio
async def test_sync_reentrant_call_is_skipped(make_engine, session_factory, auth):
    store = SqlGiftStore(session_factory, auth)
    release = asyncio.Event()
    real_query = store.query_by_recipient

    async def slow_query(recipient_id):
        await release.wait()
        return await real_query(recipient_id)

    store.query_by_recipient = slow_query
    engine = make_engine(gift_store=store)

    first = asyncio.create_task(engine.sync_selections("r1", "o1"))
    await asyncio.sleep(0)
    assert engine.is_syncing("r1", "o1") is True

    second = await engine.sync_selections("r1", "o1")
    release.set()
    first_report = await first

    assert second.skipped is True
    assert first_report.skipped is False
    assert engine.is_syncing("r1", "o1") is False


@pytest.mark.anyio
async def test_sync_without_actor_reports_error(make_engine, count_rows):
    engine = make_engine(auth=SessionAuth())
    engine.local_cache.select(Candidate(name="Mug", price=12), "r1", "o1")

    report = await engine.sync_selections("r1", "o1")

    assert report.error == "User not authenticated"
    assert await count_rows(Gift) == 0


@pytest.mark.anyio
async def test_sync_aborts_when_remote_unreachable(make_engine):
    store = AsyncMock()
    store.query_by_recipient.side_effect = RemoteStoreError("gift store unreachable")
    engine = make_engine(gift_store=store)
    engine.local_cache.select(Candidate(name="Mug", price=12), "r1", "o1")

    report = await engine.sync_selections("r1", "o1")

    assert "unreachable" in report.error
    store.create.assert_not_awaited()


@pytest.mark.anyio
async def test_sync_with_remote_disabled_is_a_noop(make_engine):
    engine = make_engine(remote_enabled=False)

    report = await engine.sync_selections("r1", "o1")

    assert report.error == "remote backend disabled"
    assert report.uploaded == []
