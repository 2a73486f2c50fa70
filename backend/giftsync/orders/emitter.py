"""
Order records for fulfillment staff.

An order is written once, through the ORM. If that fails, exactly one more
attempt goes through a direct Core insert into the same table. Orders link
back to their gift twice: the ``gift_id`` foreign key when the remote gift
exists, and a ``Gift ID: <ref> | ...`` note that admins can read.
"""

import logging
import re
from time import perf_counter
from typing import Any

from sqlalchemy import delete, insert, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from giftsync.core.auth import SessionAuth
from giftsync.core.errors import OrderEmissionError
from giftsync.core.selection_metrics import selection_metrics
from giftsync.models.models import AdminOrder
from giftsync.schemas.selection import OrderCreate, OrderReceipt

logger = logging.getLogger("giftsync.orders")

_GIFT_REF_RE = re.compile(r"^Gift ID: ([^|]+)")


def build_note(gift_ref: int | str, text: str = "") -> str:
    note = f"Gift ID: {gift_ref} |"
    return f"{note} {text.strip()}" if text and text.strip() else note


def extract_gift_ref(notes: str | None) -> str | None:
    match = _GIFT_REF_RE.match(notes or "")
    return match.group(1).strip() if match else None


def strip_absent(values: dict[str, Any]) -> dict[str, Any]:
    """Drop None-valued fields; the orders table rejects explicit absents."""
    return {key: value for key, value in values.items() if value is not None}


class OrderEmitter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        auth: SessionAuth,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._auth = auth
        self._engine = engine or session_factory.kw.get("bind")

    async def _write_primary(self, values: dict[str, Any]) -> int:
        async with self._session_factory() as session:
            order = AdminOrder(**values)
            session.add(order)
            await session.commit()
            return order.id

    async def _write_direct(self, values: dict[str, Any]) -> int:
        if self._engine is None:
            raise OrderEmissionError("No engine bound for direct order write")
        async with self._engine.begin() as conn:
            result = await conn.execute(insert(AdminOrder.__table__).values(**values))
            return int(result.inserted_primary_key[0])

    async def create_order(self, order: OrderCreate) -> OrderReceipt:
        self._auth.require()
        values = strip_absent(order.model_dump())
        start = perf_counter()
        try:
            order_id = await self._write_primary(values)
        except (SQLAlchemyError, OSError) as primary_exc:
            logger.warning(
                "Order primary write failed, trying direct path gift=%s recipient_id=%s error=%s",
                order.gift_title,
                order.recipient_id,
                primary_exc,
            )
            try:
                order_id = await self._write_direct(values)
            except (SQLAlchemyError, OSError, OrderEmissionError) as fallback_exc:
                selection_metrics.record_order((perf_counter() - start) * 1000.0, True, True)
                logger.error(
                    "Order direct write failed gift=%s recipient_id=%s error=%s",
                    order.gift_title,
                    order.recipient_id,
                    fallback_exc,
                )
                raise OrderEmissionError(
                    f"Order for {order.gift_title!r} could not be written",
                    primary_error=primary_exc,
                    fallback_error=fallback_exc,
                ) from fallback_exc
            selection_metrics.record_order((perf_counter() - start) * 1000.0, True, False)
            logger.warning("Order created via fallback id=%s gift=%s", order_id, order.gift_title)
            return OrderReceipt(order_id=order_id, via_fallback=True)

        selection_metrics.record_order((perf_counter() - start) * 1000.0, False, False)
        logger.info("Order created id=%s gift=%s gift_id=%s", order_id, order.gift_title, order.gift_id)
        return OrderReceipt(order_id=order_id)

    async def delete_orders_for_gift(self, *gift_refs: int | str | None) -> int:
        """Delete orders linked to any of ``gift_refs`` by foreign key or note."""
        refs = [ref for ref in gift_refs if ref is not None]
        if not refs:
            return 0
        clauses = []
        for ref in refs:
            if isinstance(ref, int):
                clauses.append(AdminOrder.gift_id == ref)
            clauses.append(AdminOrder.notes.startswith(f"Gift ID: {ref} |", autoescape=True))
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AdminOrder).where(or_(*clauses)).execution_options(synchronize_session=False)
            )
            await session.commit()
        deleted = int(result.rowcount or 0)
        if deleted:
            logger.info("Deleted orders refs=%s count=%s", refs, deleted)
        return deleted

    async def delete_orders_for_occasion(self, user_id: int, occasion: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AdminOrder).where(AdminOrder.user_id == user_id, AdminOrder.occasion == occasion)
            )
            await session.commit()
        deleted = int(result.rowcount or 0)
        logger.info("Deleted orders user_id=%s occasion=%s count=%s", user_id, occasion, deleted)
        return deleted
