"""
Authoritative gift records, visible across devices and to fulfillment staff.

Prices cross this boundary as integer minor units (cents). Converting to and
from decimal units is the caller's job (see ``giftsync.core.money``).
"""

import logging
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftsync.core.auth import SessionAuth
from giftsync.core.errors import RemoteStoreError
from giftsync.models.models import Gift, Occasion, Recipient
from giftsync.schemas.selection import GiftRecord, OccasionSnapshot, RecipientSnapshot, RemoteGiftCreate

logger = logging.getLogger("giftsync.remote_store")


class GiftStore(Protocol):
    async def create(self, data: RemoteGiftCreate) -> GiftRecord: ...

    async def query_by_recipient(self, recipient_id: str) -> list[GiftRecord]: ...

    async def remove(self, gift_id: int) -> bool: ...


class Directory(Protocol):
    async def get_recipient(self, recipient_id: str) -> RecipientSnapshot | None: ...

    async def get_occasion(self, occasion_id: str) -> OccasionSnapshot | None: ...


class SqlGiftStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], auth: SessionAuth) -> None:
        self._session_factory = session_factory
        self._auth = auth

    async def create(self, data: RemoteGiftCreate) -> GiftRecord:
        actor = self._auth.require()
        values = data.model_dump(exclude_none=True)
        try:
            async with self._session_factory() as session:
                gift = Gift(user_id=actor.user_id, **values)
                session.add(gift)
                await session.commit()
                await session.refresh(gift)
                record = GiftRecord.model_validate(gift)
        except (SQLAlchemyError, OSError) as exc:
            raise RemoteStoreError(f"Gift create failed: {exc}") from exc
        logger.info(
            "Gift created id=%s recipient_id=%s occasion_id=%s name=%s price_cents=%s",
            record.id,
            record.recipient_id,
            record.occasion_id,
            record.name,
            record.price,
        )
        return record

    async def query_by_recipient(self, recipient_id: str) -> list[GiftRecord]:
        actor = self._auth.actor
        if actor is None:
            return []
        stmt = (
            select(Gift)
            .where(Gift.user_id == actor.user_id, Gift.recipient_id == recipient_id)
            .order_by(Gift.created_at.desc(), Gift.id.desc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                gifts = result.scalars().all()
        except (SQLAlchemyError, OSError) as exc:
            raise RemoteStoreError(f"Gift query failed: {exc}") from exc
        return [GiftRecord.model_validate(gift) for gift in gifts]

    async def remove(self, gift_id: int) -> bool:
        actor = self._auth.require()
        stmt = delete(Gift).where(Gift.id == gift_id, Gift.user_id == actor.user_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise RemoteStoreError(f"Gift delete failed id={gift_id}: {exc}") from exc
        deleted = bool(result.rowcount)
        logger.info("Gift removed id=%s deleted=%s", gift_id, deleted)
        return deleted


class SqlDirectory:
    """Reads recipients and occasions fresh, for order snapshots."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], auth: SessionAuth) -> None:
        self._session_factory = session_factory
        self._auth = auth

    async def get_recipient(self, recipient_id: str) -> RecipientSnapshot | None:
        actor = self._auth.require()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Recipient).where(Recipient.id == recipient_id, Recipient.user_id == actor.user_id)
                )
                recipient = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise RemoteStoreError(f"Recipient lookup failed id={recipient_id}: {exc}") from exc
        if recipient is None:
            return None
        return RecipientSnapshot(
            id=recipient.id,
            name=recipient.name,
            relationship=recipient.relationship_label or "friend",
            interests=list(recipient.interests or []),
            birthdate=recipient.birthdate,
            address_line1=recipient.address_line1,
            address_line2=recipient.address_line2,
            city=recipient.city,
            state=recipient.state,
            postal_code=recipient.postal_code,
            country=recipient.country,
        )

    async def get_occasion(self, occasion_id: str) -> OccasionSnapshot | None:
        actor = self._auth.require()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Occasion).where(Occasion.id == occasion_id, Occasion.user_id == actor.user_id)
                )
                occasion = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise RemoteStoreError(f"Occasion lookup failed id={occasion_id}: {exc}") from exc
        if occasion is None:
            return None
        return OccasionSnapshot(
            id=occasion.id,
            recipient_id=occasion.recipient_id,
            name=occasion.name,
            date=occasion.date,
            budget_cents=occasion.budget_cents,
            gift_wrap=bool(occasion.gift_wrap),
            note_text=occasion.note_text,
        )
