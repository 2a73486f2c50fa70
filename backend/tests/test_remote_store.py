from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from giftsync.core.auth import SessionAuth
from giftsync.core.errors import AuthenticationError, RemoteStoreError
from giftsync.models.models import Gift
from giftsync.schemas.selection import RemoteGiftCreate
from giftsync.stores.remote_store import SqlDirectory, SqlGiftStore


def _payload(name: str = "Bluetooth Speaker", occasion_id: str = "o1", price: int = 4500) -> RemoteGiftCreate:
    return RemoteGiftCreate(recipient_id="r1", occasion_id=occasion_id, name=name, price=price)


@pytest.mark.anyio
async def test_create_stores_integer_cents(gift_store, fetch_gifts):
    record = await gift_store.create(_payload())

    assert record.price == 4500
    assert str(record.price_units) == "45.00"
    rows = await fetch_gifts(Gift.id == record.id)
    assert rows[0].price == 4500
    assert rows[0].user_id == 1
    assert rows[0].is_ai_generated is True
    assert rows[0].status == "idea"


@pytest.mark.anyio
async def test_create_requires_authenticated_actor(session_factory, count_rows):
    store = SqlGiftStore(session_factory, SessionAuth())

    with pytest.raises(AuthenticationError):
        await store.create(_payload())
    assert await count_rows(Gift) == 0


@pytest.mark.anyio
async def test_query_by_recipient_returns_all_statuses(gift_store, session_factory):
    await gift_store.create(_payload("Mug"))
    await gift_store.create(RemoteGiftCreate(recipient_id="r1", occasion_id="o2", name="Scarf", price=2000, status="ordered"))
    await gift_store.create(RemoteGiftCreate(recipient_id="r2", occasion_id="o1", name="Book", price=1500))

    records = await gift_store.query_by_recipient("r1")

    assert sorted(record.name for record in records) == ["Mug", "Scarf"]


@pytest.mark.anyio
async def test_query_is_scoped_to_actor(gift_store, session_factory, actor):
    await gift_store.create(_payload("Mug"))
    other = SqlGiftStore(
        session_factory,
        SessionAuth(actor.model_copy(update={"user_id": 2, "email": "bob@example.com"})),
    )

    assert await other.query_by_recipient("r1") == []


@pytest.mark.anyio
async def test_query_without_actor_is_empty(gift_store, session_factory):
    await gift_store.create(_payload("Mug"))

    assert await SqlGiftStore(session_factory, SessionAuth()).query_by_recipient("r1") == []


@pytest.mark.anyio
async def test_remove_reports_whether_deleted(gift_store):
    record = await gift_store.create(_payload())

    assert await gift_store.remove(record.id) is True
    assert await gift_store.remove(record.id) is False
    assert await gift_store.query_by_recipient("r1") == []


@pytest.mark.anyio
async def test_database_errors_become_remote_store_errors(auth):
    session = MagicMock()
    session.__aenter__.side_effect = OperationalError("SELECT 1", {}, Exception("database is locked"))
    factory = MagicMock(return_value=session)
    store = SqlGiftStore(factory, auth)

    with pytest.raises(RemoteStoreError) as excinfo:
        await store.query_by_recipient("r1")
    assert excinfo.value.step == "remote"


@pytest.mark.anyio
async def test_directory_snapshots(directory):
    recipient = await directory.get_recipient("r1")
    occasion = await directory.get_occasion("o1")

    assert recipient.relationship == "sister"
    assert recipient.format_address() == "12 Elm St, Portland, OR 97201, US"
    assert recipient.shipping_address()["zip_code"] == "97201"
    assert occasion.budget_cents == 10000
    assert occasion.gift_wrap is True
    assert await directory.get_recipient("missing") is None


@pytest.mark.anyio
async def test_directory_requires_actor(session_factory):
    with pytest.raises(AuthenticationError):
        await SqlDirectory(session_factory, SessionAuth()).get_occasion("o1")
