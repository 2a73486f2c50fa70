"""
Client for the external gift recommendation service.

Whatever the service returns is untrusted: entries without a name or a usable
price are dropped, and any transport or format failure yields an empty result.
"""

import logging
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx
from pydantic import BaseModel, Field, ValidationError

from giftsync.core.config import settings
from giftsync.schemas.selection import Candidate, normalize_name

logger = logging.getLogger("giftsync.recommendations")


class BudgetRange(BaseModel):
    min: Decimal = Decimal("0")
    max: Decimal


class RecommendationRequest(BaseModel):
    recipient: dict[str, Any]
    occasion: dict[str, Any]
    budget: BudgetRange
    exclude_categories: list[str] = Field(default_factory=list)
    preferred_categories: list[str] = Field(default_factory=list)
    previous_gift_names: list[str] = Field(default_factory=list)


class RecommendationResult(BaseModel):
    recommendations: list[Candidate] = Field(default_factory=list)
    search_metadata: dict[str, Any] = Field(default_factory=dict)


def normalize_candidates(raw_items: Any, request: RecommendationRequest) -> list[Candidate]:
    if not isinstance(raw_items, list):
        return []
    previous = {normalize_name(name) for name in request.previous_gift_names if name}
    excluded = {category.lower() for category in request.exclude_categories}
    seen: set[str] = set()
    candidates: list[Candidate] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        try:
            candidate = Candidate.model_validate(item)
        except ValidationError as exc:
            logger.debug("Dropping malformed candidate error=%s", exc)
            continue
        if not candidate.name or candidate.price is None or candidate.price < 0:
            logger.debug("Dropping candidate without name/price item=%s", item)
            continue
        key = normalize_name(candidate.name)
        if key in previous or key in seen:
            continue
        if candidate.price > request.budget.max:
            continue
        if candidate.category and candidate.category.lower() in excluded:
            continue
        seen.add(key)
        if not candidate.id:
            candidate = candidate.model_copy(update={"id": f"ai-{uuid4().hex[:12]}"})
        candidates.append(candidate)
    preferred = {category.lower() for category in request.preferred_categories}
    if preferred:
        # stable: preferred categories first, oracle ranking kept otherwise
        candidates.sort(key=lambda c: (c.category or "").lower() not in preferred)
    return candidates


class RecommendationClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = base_url if base_url is not None else settings.recommendations_url
        self._timeout_s = timeout_s or settings.recommendations_timeout_s
        self._transport = transport

    async def get_recommendations(self, request: RecommendationRequest) -> RecommendationResult:
        if not self._url:
            logger.info("Recommendation service not configured, returning no candidates")
            return RecommendationResult()
        payload = request.model_dump(mode="json")
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(
                    self._url,
                    json=payload,
                    headers={"Cache-Control": "no-cache", "X-Request-ID": f"req-{uuid4().hex}"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Recommendation request failed url=%s error=%s", self._url, exc)
            return RecommendationResult()
        except ValueError as exc:
            logger.warning("Recommendation response not JSON url=%s error=%s", self._url, exc)
            return RecommendationResult()

        if not isinstance(data, dict):
            logger.warning("Recommendation response has unexpected shape type=%s", type(data).__name__)
            return RecommendationResult()
        raw_items = data.get("recommendations", data.get("suggestions"))
        candidates = normalize_candidates(raw_items, request)
        metadata = data.get("searchMetadata") or data.get("metadata") or {}
        logger.info(
            "Recommendations received raw=%s kept=%s",
            len(raw_items) if isinstance(raw_items, list) else 0,
            len(candidates),
        )
        return RecommendationResult(
            recommendations=candidates,
            search_metadata=metadata if isinstance(metadata, dict) else {},
        )
