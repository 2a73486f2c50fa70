from collections import OrderedDict
from typing import Annotated
import logging

from fastapi import Cookie, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftsync.core.config import settings
from giftsync.core.security import decode_access_token
from giftsync.db.session import async_session_factory, ensure_schema_ready, get_db
from giftsync.engine.reconciler import SelectionEngine, build_selection_engine
from giftsync.models.models import User
from giftsync.schemas.selection import Actor


DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
logger = logging.getLogger("giftsync.auth")

# one engine per signed-in user, least recently used evicted first; the engine
# holds the user's in-flight guards, so it must outlive a single request
_engines: OrderedDict[int, SelectionEngine] = OrderedDict()


def _token_from_request(request: Request, access_token: str | None) -> str | None:
    token = access_token
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token


async def get_current_user(
    request: Request,
    db: DbSessionDep,
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> User:
    token = _token_from_request(request, access_token)
    if not token:
        logger.info(
            "Auth token missing path=%s ip=%s",
            request.url.path,
            request.client.host if request.client else None,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        logger.info("Auth token invalid path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        logger.info("Auth token subject invalid path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from None

    try:
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
    except SQLAlchemyError:
        logger.exception("get_current_user: DB error when fetching user_id=%s", user_id)
        raise HTTPException(status_code=500, detail="Database error") from None

    if not user:
        logger.info("Auth user missing path=%s user_id=%s", request.url.path, user_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    logger.debug("get_current_user: authenticated user_id=%s", user.id)
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, email=user.email, display_name=user.name, plan=user.plan_id)


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    await ensure_schema_ready()
    return async_session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_selection_engine(user: CurrentUserDep, session_factory: SessionFactoryDep) -> SelectionEngine:
    engine = _engines.get(user.id)
    if engine is None:
        engine = build_selection_engine(actor_for(user), session_factory)
        _engines[user.id] = engine
        logger.info("Selection engine created user_id=%s", user.id)
        while len(_engines) > settings.selection_engine_cache_size:
            evicted_id, _ = _engines.popitem(last=False)
            logger.info("Selection engine evicted user_id=%s", evicted_id)
    else:
        _engines.move_to_end(user.id)
    # remote gifts are re-read once per request
    engine.mark_remote_stale()
    return engine


def reset_engines() -> None:
    _engines.clear()


SelectionEngineDep = Annotated[SelectionEngine, Depends(get_selection_engine)]
