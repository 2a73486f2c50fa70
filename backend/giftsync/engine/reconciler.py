"""
Selection reconciliation between the local cache and the remote gift store.

The two stores assign independent IDs, so a selection is identified by
(recipient, occasion, normalized gift name). The unified view puts remote
records first and only adds local records whose name is not already present,
which makes the remote store win every conflict without comparing timestamps.

Writes are ordered local -> remote -> order. The local write never waits on
the network. The pair of writes is not atomic: a crash between them leaves a
local-only record, and ``sync_selections`` uploads it later.
"""

import logging
from datetime import date
from decimal import Decimal
from time import perf_counter
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftsync.core.auth import SessionAuth
from giftsync.core.config import settings
from giftsync.core.errors import (
    AuthenticationError,
    InvalidSelectionError,
    OrderEmissionError,
    RemoteStoreError,
)
from giftsync.core.money import from_cents, to_cents
from giftsync.core.selection_metrics import selection_metrics
from giftsync.integrations.recommendations import (
    BudgetRange,
    RecommendationClient,
    RecommendationRequest,
    RecommendationResult,
)
from giftsync.orders.emitter import OrderEmitter, build_note
from giftsync.schemas.selection import (
    Actor,
    Candidate,
    GiftRecord,
    OccasionSnapshot,
    OrderCreate,
    RecipientSnapshot,
    RemoteGiftCreate,
    SelectionMetadata,
    SelectionOutcome,
    SelectionSummary,
    SelectionView,
    StoredGift,
    SyncReport,
    normalize_name,
    utcnow,
)
from giftsync.stores.local_cache import LocalSelectionCache, StateBackend, build_backend
from giftsync.stores.remote_store import Directory, GiftStore, SqlDirectory, SqlGiftStore

logger = logging.getLogger("giftsync.engine")

_REMOTE_DISABLED = "remote backend disabled"


def _coerce_candidate(candidate: Candidate | dict[str, Any]) -> Candidate:
    if isinstance(candidate, Candidate):
        parsed = candidate
    else:
        try:
            parsed = Candidate.model_validate(candidate)
        except ValueError as exc:
            raise InvalidSelectionError(f"Malformed gift candidate: {exc}") from exc
    if not parsed.name:
        raise InvalidSelectionError("Gift candidate has no name")
    if parsed.price is None:
        raise InvalidSelectionError(f"Gift candidate {parsed.name!r} has no price")
    if parsed.price < 0:
        raise InvalidSelectionError(f"Gift candidate {parsed.name!r} has a negative price")
    return parsed


def _age_from_birthdate(birthdate: str | None, today: date | None = None) -> int | None:
    if not birthdate:
        return None
    try:
        born = date.fromisoformat(birthdate)
    except ValueError:
        return None
    today = today or date.today()
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def _is_remote_selection(record: GiftRecord, occasion_id: str) -> bool:
    return record.occasion_id == occasion_id and record.is_ai_generated and record.status == "idea"


def _view_from_remote(record: GiftRecord) -> SelectionView:
    metadata = None
    if record.ai_metadata:
        metadata = SelectionMetadata.model_validate(record.ai_metadata)
    return SelectionView(
        name=record.name,
        price=from_cents(record.price),
        category=record.category,
        description=record.description,
        # remote "idea" + AI-generated is what the local cache calls "selected"
        status="selected" if record.status == "idea" else record.status,
        origin="remote",
        remote_id=record.id,
        selected_at=record.created_at,
        image_url=record.image_url,
        metadata=metadata,
    )


def _view_from_local(record: StoredGift) -> SelectionView:
    return SelectionView(
        name=record.name,
        price=record.price,
        category=record.category,
        description=record.description,
        status=record.status,
        origin="local",
        local_id=record.id,
        remote_id=record.remote_id,
        selected_at=record.selected_at,
        image_url=record.image_url,
        metadata=record.metadata,
    )


class SelectionEngine:
    def __init__(
        self,
        local_cache: LocalSelectionCache,
        gift_store: GiftStore,
        order_emitter: OrderEmitter,
        directory: Directory,
        auth: SessionAuth,
        *,
        recommendations: RecommendationClient | None = None,
        remote_enabled: bool | None = None,
    ) -> None:
        self.local_cache = local_cache
        self._gift_store = gift_store
        self._orders = order_emitter
        self._directory = directory
        self._auth = auth
        self._recommendations = recommendations or RecommendationClient()
        self._remote_enabled = settings.remote_backend_enabled if remote_enabled is None else remote_enabled
        self._remote_records: dict[str, list[GiftRecord]] = {}
        self._remote_revision = 0
        self._stale_remote: set[str] = set()
        self._views: dict[tuple[str, str], tuple[int, int, dict[str, SelectionView]]] = {}
        self._in_flight: set[tuple[str, str, str]] = set()
        self._syncing: set[tuple[str, str]] = set()

    @property
    def remote_enabled(self) -> bool:
        return self._remote_enabled

    def is_syncing(self, recipient_id: str, occasion_id: str) -> bool:
        if (recipient_id, occasion_id) in self._syncing:
            return True
        return any(key[:2] == (recipient_id, occasion_id) for key in self._in_flight)

    def for_occasion(self, recipient_id: str, occasion_id: str) -> "OccasionSelections":
        return OccasionSelections(self, recipient_id, occasion_id)

    # remote record cache

    def _set_remote(self, recipient_id: str, records: list[GiftRecord], *, fresh: bool = True) -> None:
        self._remote_records[recipient_id] = records
        if fresh:
            self._stale_remote.discard(recipient_id)
        self._remote_revision += 1

    def _remember_remote(self, record: GiftRecord) -> None:
        # only extend a list that was fetched; a partial list would hide records
        if record.recipient_id in self._remote_records:
            self._set_remote(record.recipient_id, [record, *self._remote_records[record.recipient_id]], fresh=False)

    def _forget_remote(self, recipient_id: str, gift_id: int) -> None:
        if recipient_id in self._remote_records:
            self._set_remote(
                recipient_id,
                [record for record in self._remote_records[recipient_id] if record.id != gift_id],
                fresh=False,
            )

    def mark_remote_stale(self) -> None:
        """Re-read every recipient's remote gifts on next access; stale lists stay as a fallback."""
        self._stale_remote.update(self._remote_records)

    def _remote_matches(self, recipient_id: str, occasion_id: str, name_key: str) -> list[GiftRecord]:
        return [
            record
            for record in self._remote_records.get(recipient_id, [])
            if _is_remote_selection(record, occasion_id) and normalize_name(record.name) == name_key
        ]

    async def refresh_remote(self, recipient_id: str) -> list[GiftRecord]:
        if not self._remote_enabled:
            return []
        records = await self._gift_store.query_by_recipient(recipient_id)
        self._set_remote(recipient_id, records)
        logger.debug("Remote gifts refreshed recipient_id=%s count=%s", recipient_id, len(records))
        return records

    async def _remote_for(self, recipient_id: str, refresh: bool = False) -> list[GiftRecord]:
        if not self._remote_enabled:
            return []
        if not refresh and recipient_id in self._remote_records and recipient_id not in self._stale_remote:
            return self._remote_records[recipient_id]
        try:
            return await self.refresh_remote(recipient_id)
        except RemoteStoreError as exc:
            logger.warning("Remote gifts unavailable recipient_id=%s error=%s", recipient_id, exc)
            return self._remote_records.get(recipient_id, [])

    # unified view

    def _build_view(self, recipient_id: str, occasion_id: str) -> dict[str, SelectionView]:
        key = (recipient_id, occasion_id)
        memo = self._views.get(key)
        if memo and memo[0] == self.local_cache.revision and memo[1] == self._remote_revision:
            return memo[2]
        unified: dict[str, SelectionView] = {}
        for record in self._remote_records.get(recipient_id, []):
            if _is_remote_selection(record, occasion_id):
                unified.setdefault(normalize_name(record.name), _view_from_remote(record))
        for stored in self.local_cache.query_by_recipient_occasion(recipient_id, occasion_id):
            unified.setdefault(normalize_name(stored.name), _view_from_local(stored))
        self._views[key] = (self.local_cache.revision, self._remote_revision, unified)
        return unified

    async def get_unified_selections(
        self,
        recipient_id: str,
        occasion_id: str,
        *,
        refresh: bool = False,
    ) -> list[SelectionView]:
        await self._remote_for(recipient_id, refresh=refresh)
        return list(self._build_view(recipient_id, occasion_id).values())

    async def is_gift_selected(self, gift_name: str, recipient_id: str, occasion_id: str) -> bool:
        await self._remote_for(recipient_id)
        return normalize_name(gift_name) in self._build_view(recipient_id, occasion_id)

    # select

    def _remote_payload_from_candidate(
        self,
        candidate: Candidate,
        recipient_id: str,
        occasion_id: str,
    ) -> RemoteGiftCreate:
        return RemoteGiftCreate(
            recipient_id=recipient_id,
            occasion_id=occasion_id,
            name=candidate.name,
            description=candidate.description,
            price=to_cents(candidate.price),
            category=candidate.category or "AI Recommended",
            status="idea",
            is_ai_generated=True,
            image_url=candidate.image_url,
            purchase_url=candidate.purchase_url,
            asin=candidate.asin,
            notes=f"AI-recommended gift. {candidate.reasoning or ''}".strip(),
            ai_metadata={
                "model": candidate.model or settings.default_ai_model,
                "source": "recommendation",
                "confidence": candidate.confidence,
                "reasoning": candidate.reasoning,
                "tags": candidate.tags,
                "generated_at": utcnow().isoformat(),
                "original_id": candidate.id,
            },
        )

    def _remote_payload_from_stored(self, stored: StoredGift) -> RemoteGiftCreate:
        metadata = stored.metadata or SelectionMetadata()
        return RemoteGiftCreate(
            recipient_id=stored.recipient_id,
            occasion_id=stored.occasion_id,
            name=stored.name,
            description=stored.description or "AI-recommended gift",
            price=to_cents(stored.price),
            category=stored.category or "AI Recommended",
            status="idea",
            is_ai_generated=True,
            image_url=stored.image_url,
            purchase_url=stored.purchase_url,
            asin=stored.asin,
            notes="Restored from local selection.",
            ai_metadata={
                "model": settings.restored_model_tag,
                "source": "restored_from_local",
                "confidence": metadata.confidence if metadata.confidence is not None else 0.8,
                "reasoning": metadata.reasoning or "Previously selected gift",
                "tags": metadata.tags or ["restored"],
                "generated_at": stored.selected_at.isoformat(),
                "original_id": stored.id,
            },
        )

    async def _order_context(
        self,
        recipient_id: str,
        occasion_id: str,
    ) -> tuple[RecipientSnapshot, OccasionSnapshot]:
        recipient = await self._directory.get_recipient(recipient_id)
        occasion = await self._directory.get_occasion(occasion_id)
        if recipient is None:
            logger.warning("Recipient missing for order, using placeholder recipient_id=%s", recipient_id)
            recipient = RecipientSnapshot(id=recipient_id, name=f"Recipient {recipient_id}", relationship="unknown")
        if occasion is None:
            logger.warning("Occasion missing for order, using placeholder occasion_id=%s", occasion_id)
            occasion = OccasionSnapshot(
                id=occasion_id,
                recipient_id=recipient_id,
                name=f"Occasion {occasion_id}",
                date=date.today().isoformat(),
            )
        return recipient, occasion

    async def _emit_order(
        self,
        candidate: Candidate,
        recipient_id: str,
        occasion_id: str,
        gift_ref: int | str,
        remote_id: int | None,
    ) -> tuple[int, bool]:
        actor = self._auth.require()
        recipient, occasion = await self._order_context(recipient_id, occasion_id)
        price_cents = to_cents(candidate.price)
        order = OrderCreate(
            gift_id=remote_id,
            user_id=actor.user_id,
            user_email=str(actor.email),
            user_name=actor.display_name or str(actor.email).split("@")[0],
            user_plan=actor.plan,
            recipient_id=recipient.id,
            recipient_name=recipient.name,
            recipient_relationship=recipient.relationship,
            recipient_address=recipient.format_address(),
            shipping_address=recipient.shipping_address(),
            occasion=occasion.name,
            occasion_id=occasion.id,
            occasion_date=occasion.date,
            gift_title=candidate.name,
            gift_description=candidate.description or "",
            gift_price=price_cents,
            gift_image_url=candidate.image_url or "",
            gift_url=candidate.purchase_url,
            asin=candidate.asin,
            notes=build_note(gift_ref, f"User selected gift: {candidate.reasoning or 'No reasoning provided'}"),
            charge_amount=price_cents,
            gift_wrap=occasion.gift_wrap,
            personal_note=occasion.note_text,
        )
        receipt = await self._orders.create_order(order)
        return receipt.order_id, receipt.via_fallback

    async def select_gift(
        self,
        candidate: Candidate | dict[str, Any],
        recipient_id: str,
        occasion_id: str,
    ) -> SelectionOutcome:
        gift = _coerce_candidate(candidate)
        key = (recipient_id, occasion_id, normalize_name(gift.name))
        outcome = SelectionOutcome(gift_name=gift.name)

        # no await before the local write: membership is checked against what
        # is already known, remote records are re-checked after the local write
        if key in self._in_flight or key[2] in self._build_view(recipient_id, occasion_id):
            logger.info(
                "Gift already selected recipient_id=%s occasion_id=%s name=%s",
                recipient_id,
                occasion_id,
                gift.name,
            )
            outcome.local_ok = True
            outcome.already_selected = True
            return outcome

        self._in_flight.add(key)
        start = perf_counter()
        try:
            stored = self.local_cache.select(gift, recipient_id, occasion_id)
            outcome.local_ok = True
            outcome.local_id = stored.id

            if not self._remote_enabled:
                outcome.remote_error = _REMOTE_DISABLED
                outcome.order_error = _REMOTE_DISABLED
                return outcome

            await self._remote_for(recipient_id)
            existing = self._remote_matches(recipient_id, occasion_id, key[2])
            if existing:
                # selected elsewhere; link the local record instead of writing a second one
                self.local_cache.attach_remote_id(stored.id, existing[0].id)
                outcome.already_selected = True
                outcome.remote_ok = True
                outcome.remote_id = existing[0].id
                logger.info(
                    "Gift already selected remotely recipient_id=%s occasion_id=%s name=%s remote_id=%s",
                    recipient_id,
                    occasion_id,
                    gift.name,
                    existing[0].id,
                )
                return outcome

            try:
                record = await self._gift_store.create(
                    self._remote_payload_from_candidate(gift, recipient_id, occasion_id)
                )
            except RemoteStoreError as exc:
                outcome.remote_error = str(exc)
                logger.warning(
                    "Remote write failed, selection kept locally recipient_id=%s occasion_id=%s name=%s error=%s",
                    recipient_id,
                    occasion_id,
                    gift.name,
                    exc,
                )
            else:
                outcome.remote_ok = True
                outcome.remote_id = record.id
                self._remember_remote(record)
                self.local_cache.attach_remote_id(stored.id, record.id)

            try:
                order_id, via_fallback = await self._emit_order(
                    gift,
                    recipient_id,
                    occasion_id,
                    outcome.remote_id if outcome.remote_id is not None else stored.id,
                    outcome.remote_id,
                )
            except (OrderEmissionError, RemoteStoreError) as exc:
                outcome.order_error = str(exc)
                logger.error(
                    "Order not created recipient_id=%s occasion_id=%s name=%s error=%s",
                    recipient_id,
                    occasion_id,
                    gift.name,
                    exc,
                )
            else:
                outcome.order_ok = True
                outcome.order_id = order_id
                outcome.order_via_fallback = via_fallback
            return outcome
        except AuthenticationError:
            logger.warning(
                "Selection kept locally, no authenticated user recipient_id=%s occasion_id=%s name=%s",
                recipient_id,
                occasion_id,
                gift.name,
            )
            raise
        finally:
            self._in_flight.discard(key)
            selection_metrics.record_select(
                (perf_counter() - start) * 1000.0,
                degraded=not outcome.remote_ok or outcome.order_via_fallback,
                error=not outcome.order_ok and not outcome.already_selected,
            )

    # unselect

    async def unselect_gift(self, gift_name: str, recipient_id: str, occasion_id: str) -> bool:
        """Remove a gift from the selection. Removing a non-member is a no-op."""
        name_key = normalize_name(gift_name)
        key = (recipient_id, occasion_id, name_key)
        if key in self._in_flight:
            return False

        self._in_flight.add(key)
        start = perf_counter()
        error = False
        try:
            await self._remote_for(recipient_id)
            entry = self._build_view(recipient_id, occasion_id).get(name_key)
            local_matches = [
                stored
                for stored in self.local_cache.query_by_recipient_occasion(recipient_id, occasion_id)
                if normalize_name(stored.name) == name_key
            ]
            if entry is None and not local_matches:
                logger.info(
                    "Gift not selected, nothing to remove recipient_id=%s occasion_id=%s name=%s",
                    recipient_id,
                    occasion_id,
                    gift_name,
                )
                return False

            remote_ids = [record.id for record in self._remote_matches(recipient_id, occasion_id, name_key)]
            for stored in local_matches:
                if stored.remote_id is not None and stored.remote_id not in remote_ids:
                    remote_ids.append(stored.remote_id)

            if self._remote_enabled:
                for remote_id in remote_ids:
                    await self._gift_store.remove(remote_id)
                    self._forget_remote(recipient_id, remote_id)

            for stored in local_matches:
                self.local_cache.remove(stored.id, "selected")

            if self._remote_enabled:
                await self._cascade_orders(remote_ids, [stored.id for stored in local_matches])
            logger.info(
                "Gift unselected recipient_id=%s occasion_id=%s name=%s remote=%s local=%s",
                recipient_id,
                occasion_id,
                gift_name,
                len(remote_ids),
                len(local_matches),
            )
            return True
        except (RemoteStoreError, AuthenticationError):
            error = True
            raise
        finally:
            self._in_flight.discard(key)
            selection_metrics.record_unselect((perf_counter() - start) * 1000.0, False, error)

    async def _cascade_orders(self, remote_ids: list[int], local_ids: list[str]) -> None:
        try:
            await self._orders.delete_orders_for_gift(*remote_ids, *local_ids)
        except Exception:
            # an orphan order stays visible to admins; the unselect itself succeeded
            logger.exception("Order cascade delete failed remote_ids=%s local_ids=%s", remote_ids, local_ids)

    # sync

    async def sync_selections(self, recipient_id: str, occasion_id: str) -> SyncReport:
        key = (recipient_id, occasion_id)
        report = SyncReport(recipient_id=recipient_id, occasion_id=occasion_id)
        if key in self._syncing:
            report.skipped = True
            return report

        self._syncing.add(key)
        start = perf_counter()
        try:
            if not self._remote_enabled:
                report.error = _REMOTE_DISABLED
                return report
            if not self._auth.is_authenticated:
                report.error = "User not authenticated"
                logger.warning("Sync skipped, no authenticated user recipient_id=%s", recipient_id)
                return report
            try:
                records = await self.refresh_remote(recipient_id)
            except RemoteStoreError as exc:
                report.error = str(exc)
                logger.warning("Sync aborted, remote unavailable recipient_id=%s error=%s", recipient_id, exc)
                return report

            remote_by_name = {
                normalize_name(record.name): record
                for record in records
                if record.occasion_id == occasion_id and record.is_ai_generated
            }
            for stored in self.local_cache.query_by_recipient_occasion(recipient_id, occasion_id):
                name_key = normalize_name(stored.name)
                existing = remote_by_name.get(name_key)
                if existing is not None:
                    if stored.remote_id is None:
                        self.local_cache.attach_remote_id(stored.id, existing.id)
                    continue
                try:
                    record = await self._gift_store.create(self._remote_payload_from_stored(stored))
                except (RemoteStoreError, AuthenticationError):
                    logger.exception(
                        "Sync upload failed recipient_id=%s occasion_id=%s name=%s",
                        recipient_id,
                        occasion_id,
                        stored.name,
                    )
                    report.failed.append(stored.name)
                    continue
                remote_by_name[name_key] = record
                self._remember_remote(record)
                self.local_cache.attach_remote_id(stored.id, record.id)
                report.uploaded.append(stored.name)

            logger.info(
                "Sync finished recipient_id=%s occasion_id=%s uploaded=%s failed=%s",
                recipient_id,
                occasion_id,
                len(report.uploaded),
                len(report.failed),
            )
            return report
        finally:
            self._syncing.discard(key)
            selection_metrics.record_sync(
                (perf_counter() - start) * 1000.0,
                repaired=len(report.uploaded),
                error=report.error is not None or bool(report.failed),
            )

    # recommendations

    async def recommend(
        self,
        recipient_id: str,
        occasion_id: str,
        *,
        budget_min: Decimal | int | float = 0,
        budget_max: Decimal | int | float | None = None,
        exclude_categories: list[str] | None = None,
        preferred_categories: list[str] | None = None,
    ) -> RecommendationResult:
        recipient_context: dict[str, Any] = {"id": recipient_id}
        occasion_context: dict[str, Any] = {"id": occasion_id}
        occasion_budget: Decimal | None = None
        try:
            recipient = await self._directory.get_recipient(recipient_id)
            occasion = await self._directory.get_occasion(occasion_id)
        except (RemoteStoreError, AuthenticationError) as exc:
            logger.warning("Recommendation context unavailable recipient_id=%s error=%s", recipient_id, exc)
        else:
            if recipient is not None:
                recipient_context = recipient.model_dump(
                    include={"id", "name", "relationship", "interests", "birthdate"}
                )
                recipient_context["age"] = _age_from_birthdate(recipient.birthdate)
            if occasion is not None:
                occasion_context = occasion.model_dump(include={"id", "name", "date"})
                if occasion.budget_cents is not None:
                    occasion_budget = from_cents(occasion.budget_cents)

        maximum = Decimal(str(budget_max)) if budget_max is not None else (occasion_budget or Decimal("100"))
        selections = await self.get_unified_selections(recipient_id, occasion_id)
        request = RecommendationRequest(
            recipient=recipient_context,
            occasion=occasion_context,
            budget=BudgetRange(min=Decimal(str(budget_min)), max=maximum),
            exclude_categories=exclude_categories or [],
            preferred_categories=preferred_categories or [],
            previous_gift_names=[view.name for view in selections],
        )
        result = await self._recommendations.get_recommendations(request)
        self.local_cache.save_recommendations(result.recommendations, recipient_id, occasion_id)
        return result


class OccasionSelections:
    """Selection operations bound to one (recipient, occasion) pair."""

    def __init__(self, engine: SelectionEngine, recipient_id: str, occasion_id: str) -> None:
        self.engine = engine
        self.recipient_id = recipient_id
        self.occasion_id = occasion_id

    @property
    def is_syncing(self) -> bool:
        return self.engine.is_syncing(self.recipient_id, self.occasion_id)

    async def selected_gifts(self) -> list[SelectionView]:
        return await self.engine.get_unified_selections(self.recipient_id, self.occasion_id)

    async def is_gift_selected(self, gift_name: str) -> bool:
        return await self.engine.is_gift_selected(gift_name, self.recipient_id, self.occasion_id)

    async def select_gift(self, candidate: Candidate | dict[str, Any]) -> SelectionOutcome:
        return await self.engine.select_gift(candidate, self.recipient_id, self.occasion_id)

    async def unselect_gift(self, gift_name: str) -> bool:
        return await self.engine.unselect_gift(gift_name, self.recipient_id, self.occasion_id)

    async def sync(self) -> SyncReport:
        return await self.engine.sync_selections(self.recipient_id, self.occasion_id)

    async def summary(self) -> SelectionSummary:
        selections = await self.selected_gifts()
        return SelectionSummary(
            recipient_id=self.recipient_id,
            occasion_id=self.occasion_id,
            selections=selections,
            selected_count=len(selections),
            total_budget_used=sum((view.price for view in selections), Decimal("0.00")),
            is_syncing=self.is_syncing,
        )


def build_selection_engine(
    actor: Actor | None,
    session_factory: async_sessionmaker[AsyncSession],
    backend: StateBackend | None = None,
) -> SelectionEngine:
    """Wire an engine for one user session; the local cache is namespaced by user id."""
    auth = SessionAuth(actor)
    namespace = actor.user_id if actor is not None else None
    return SelectionEngine(
        LocalSelectionCache(backend or build_backend(namespace)),
        SqlGiftStore(session_factory, auth),
        OrderEmitter(session_factory, auth),
        SqlDirectory(session_factory, auth),
        auth,
    )
