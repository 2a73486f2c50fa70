import os
import warnings

import pytest

# Set environment variables BEFORE importing giftsync modules
os.environ["POSTGRES_DSN"] = "sqlite+aiosqlite:///file:giftsync_tests?mode=memory&cache=shared&uri=true"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["LOCAL_CACHE_BACKEND"] = "memory"
os.environ["RECOMMENDATIONS_URL"] = ""
os.environ["REMOTE_BACKEND_ENABLED"] = "true"

warnings.filterwarnings("ignore", category=DeprecationWarning)

from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

from giftsync.api.deps import get_session_factory, reset_engines
from giftsync.core.auth import SessionAuth
from giftsync.core.security import create_access_token
from giftsync.db.session import build_session_factory, create_schema, get_db
from giftsync.engine.reconciler import SelectionEngine
from giftsync.integrations.recommendations import RecommendationClient
from giftsync.main import app
from giftsync.models.models import AdminOrder, Gift, Occasion, Recipient, User
from giftsync.orders.emitter import OrderEmitter
from giftsync.schemas.selection import Actor
from giftsync.stores.local_cache import LocalSelectionCache, MemoryStateBackend
from giftsync.stores.remote_store import SqlDirectory, SqlGiftStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'giftsync-test.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(db_engine):
    factory = build_session_factory(db_engine)
    async with factory() as session:
        session.add(User(id=1, email="ann@example.com", name="Ann", plan_id="premium"))
        session.add(User(id=2, email="bob@example.com", name="Bob"))
        session.add(
            Recipient(
                id="r1",
                user_id=1,
                name="Mia",
                relationship_label="sister",
                birthdate="1994-05-02",
                interests=["music", "hiking"],
                address_line1="12 Elm St",
                city="Portland",
                state="OR",
                postal_code="97201",
                country="US",
            )
        )
        session.add(Recipient(id="r2", user_id=1, name="Leo", relationship_label="friend"))
        session.add(
            Occasion(
                id="o1",
                recipient_id="r1",
                user_id=1,
                name="Birthday",
                date="2026-05-02",
                budget_cents=10000,
                gift_wrap=True,
                note_text="Happy birthday!",
            )
        )
        session.add(Occasion(id="o2", recipient_id="r1", user_id=1, name="Christmas", date="2026-12-25"))
        await session.commit()
    return factory


@pytest.fixture
def actor():
    return Actor(user_id=1, email="ann@example.com", display_name="Ann", plan="premium")


@pytest.fixture
def auth(actor):
    return SessionAuth(actor)


@pytest.fixture
def local_backend():
    return MemoryStateBackend()


@pytest.fixture
def local_cache(local_backend):
    return LocalSelectionCache(local_backend)


@pytest.fixture
def gift_store(session_factory, auth):
    return SqlGiftStore(session_factory, auth)


@pytest.fixture
def directory(session_factory, auth):
    return SqlDirectory(session_factory, auth)


@pytest.fixture
def order_emitter(session_factory, auth):
    return OrderEmitter(session_factory, auth)


@pytest.fixture
def make_engine(session_factory, auth, local_backend):
    """Build an engine over the shared stores, as a fresh process would."""

    def _make(**kwargs) -> SelectionEngine:
        engine_auth = kwargs.pop("auth", auth)
        return SelectionEngine(
            kwargs.pop("local_cache", None) or LocalSelectionCache(local_backend),
            kwargs.pop("gift_store", None) or SqlGiftStore(session_factory, engine_auth),
            kwargs.pop("order_emitter", None) or OrderEmitter(session_factory, engine_auth),
            kwargs.pop("directory", None) or SqlDirectory(session_factory, engine_auth),
            engine_auth,
            recommendations=kwargs.pop("recommendations", None) or RecommendationClient(base_url=""),
            remote_enabled=kwargs.pop("remote_enabled", True),
        )

    return _make


@pytest.fixture
def selection_engine(make_engine):
    return make_engine()


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *criteria) -> int:
        async with session_factory() as session:
            result = await session.execute(select(func.count()).select_from(model).filter(*criteria))
            return int(result.scalar_one())

    return _count


@pytest.fixture
def fetch_orders(session_factory):
    async def _fetch(*criteria) -> list[AdminOrder]:
        async with session_factory() as session:
            result = await session.execute(select(AdminOrder).filter(*criteria).order_by(AdminOrder.id))
            return list(result.scalars().all())

    return _fetch


@pytest.fixture
def fetch_gifts(session_factory):
    async def _fetch(*criteria) -> list[Gift]:
        async with session_factory() as session:
            result = await session.execute(select(Gift).filter(*criteria).order_by(Gift.id))
            return list(result.scalars().all())

    return _fetch


@pytest.fixture
async def async_client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_session_factory():
        return session_factory

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_get_session_factory
    reset_engines()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    reset_engines()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token('1')}"}
