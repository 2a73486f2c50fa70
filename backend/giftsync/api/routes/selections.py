import logging
from decimal import Decimal

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from giftsync.api.deps import SelectionEngineDep
from giftsync.schemas.selection import Candidate, SelectionOutcome, SelectionView, SyncReport

logger = logging.getLogger("giftsync.selections")

router = APIRouter(prefix="/recipients/{recipient_id}/occasions/{occasion_id}/selections", tags=["selections"])


class SelectionListPublic(BaseModel):
    recipient_id: str
    occasion_id: str
    selections: list[SelectionView]
    selected_count: int
    total_budget_used: Decimal
    is_syncing: bool


@router.get("", response_model=SelectionListPublic)
async def list_selections(
    recipient_id: str,
    occasion_id: str,
    engine: SelectionEngineDep,
) -> SelectionListPublic:
    summary = await engine.for_occasion(recipient_id, occasion_id).summary()
    return SelectionListPublic(**summary.model_dump())


@router.post("", response_model=SelectionOutcome, status_code=status.HTTP_201_CREATED)
async def select_gift(
    recipient_id: str,
    occasion_id: str,
    candidate: Candidate,
    engine: SelectionEngineDep,
    response: Response,
) -> SelectionOutcome:
    outcome = await engine.select_gift(candidate, recipient_id, occasion_id)
    if outcome.already_selected:
        response.status_code = status.HTTP_200_OK
    elif not outcome.complete:
        logger.info(
            "Partial selection recipient_id=%s occasion_id=%s name=%s failed_step=%s",
            recipient_id,
            occasion_id,
            outcome.gift_name,
            outcome.failed_step(),
        )
        response.status_code = status.HTTP_207_MULTI_STATUS
    return outcome


@router.delete("/{gift_name}", status_code=status.HTTP_204_NO_CONTENT)
async def unselect_gift(
    recipient_id: str,
    occasion_id: str,
    gift_name: str,
    engine: SelectionEngineDep,
) -> Response:
    await engine.unselect_gift(gift_name, recipient_id, occasion_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sync", response_model=SyncReport)
async def sync_selections(
    recipient_id: str,
    occasion_id: str,
    engine: SelectionEngineDep,
) -> SyncReport:
    return await engine.sync_selections(recipient_id, occasion_id)
