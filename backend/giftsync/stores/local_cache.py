"""
Persistent local cache of selected and saved gifts.

The whole state is one JSON document (see ``CacheState``). Every mutation
rewrites it immediately; there is no batching. The cache is a UX optimisation,
not a system of record, so unreadable state is replaced with an empty one.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Protocol
from uuid import uuid4

import redis
from pydantic import ValidationError

from giftsync.core.config import settings
from giftsync.schemas.selection import (
    CACHE_STATE_VERSION,
    Bucket,
    CacheState,
    Candidate,
    SelectionMetadata,
    StoredGift,
    normalize_name,
    utcnow,
)

logger = logging.getLogger("giftsync.local_cache")


class StateBackend(Protocol):
    def read(self) -> str | None: ...

    def write(self, payload: str) -> None: ...

    def clear(self) -> None: ...


class MemoryStateBackend:
    def __init__(self, payload: str | None = None) -> None:
        self.payload = payload

    def read(self) -> str | None:
        return self.payload

    def write(self, payload: str) -> None:
        self.payload = payload

    def clear(self) -> None:
        self.payload = None


class FileStateBackend:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> str | None:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")

    def write(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class RedisStateBackend:
    """Keeps the state document under one redis key.

    While redis is unreachable the document lives in process memory and a
    reconnect is attempted after an exponential cooldown.
    """

    def __init__(self, redis_dsn: str | None = None, key: str | None = None) -> None:
        self._redis_dsn = redis_dsn or settings.redis_dsn
        self._key = key or settings.local_cache_key
        self._redis: redis.Redis | None = None
        self._cooldown_until_monotonic = 0.0
        self._connect_failures = 0
        self._memory_payload: str | None = None

    def _in_cooldown(self) -> bool:
        return time.monotonic() < self._cooldown_until_monotonic

    def _mark_redis_failed(self, exc: Exception) -> None:
        self._redis = None
        self._connect_failures += 1
        cooldown = min(60.0, 1.0 * (2 ** min(self._connect_failures, 6)))
        self._cooldown_until_monotonic = time.monotonic() + cooldown
        logger.warning(
            "RedisStateBackend redis unavailable failures=%s cooldown_s=%.0f error=%s",
            self._connect_failures,
            cooldown,
            exc,
        )

    def _get_redis(self) -> redis.Redis | None:
        if self._redis is not None:
            return self._redis
        if not self._redis_dsn or self._in_cooldown():
            return None
        try:
            client = redis.Redis.from_url(
                self._redis_dsn,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
            client.ping()
        except redis.RedisError as exc:
            self._mark_redis_failed(exc)
            return None
        self._redis = client
        self._connect_failures = 0
        self._cooldown_until_monotonic = 0.0
        logger.info("RedisStateBackend connected redis=%s key=%s", self._redis_dsn, self._key)
        return client

    def read(self) -> str | None:
        client = self._get_redis()
        if client is None:
            return self._memory_payload
        try:
            payload = client.get(self._key)
        except redis.RedisError as exc:
            self._mark_redis_failed(exc)
            return self._memory_payload
        return payload if payload is not None else self._memory_payload

    def write(self, payload: str) -> None:
        self._memory_payload = payload
        client = self._get_redis()
        if client is None:
            return
        try:
            client.set(self._key, payload)
        except redis.RedisError as exc:
            self._mark_redis_failed(exc)

    def clear(self) -> None:
        self._memory_payload = None
        client = self._get_redis()
        if client is None:
            return
        try:
            client.delete(self._key)
        except redis.RedisError as exc:
            self._mark_redis_failed(exc)


def build_backend(namespace: int | str | None = None) -> StateBackend:
    kind = (settings.local_cache_backend or "file").lower()
    if kind == "memory":
        return MemoryStateBackend()
    if kind == "redis":
        key = settings.local_cache_key if namespace is None else f"{settings.local_cache_key}:{namespace}"
        return RedisStateBackend(key=key)
    if namespace is None:
        return FileStateBackend(settings.local_cache_path)
    return FileStateBackend(settings.local_cache_path_for(namespace))


def recommendations_key(recipient_id: str, occasion_id: str) -> str:
    return f"{recipient_id}-{occasion_id}"


class LocalSelectionCache:
    def __init__(self, backend: StateBackend | None = None) -> None:
        self._backend = backend or build_backend()
        self._state: CacheState | None = None
        self.revision = 0

    @property
    def state(self) -> CacheState:
        if self._state is None:
            return self.load()
        return self._state

    def load(self) -> CacheState:
        try:
            raw = self._backend.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Local cache unreadable, starting empty error=%s", exc)
            raw = None
        state = CacheState()
        if raw:
            try:
                parsed = CacheState.model_validate_json(raw)
            except (ValidationError, ValueError) as exc:
                logger.warning("Local cache corrupt, starting empty error=%s", exc)
            else:
                if parsed.version == CACHE_STATE_VERSION:
                    state = parsed
                else:
                    logger.warning(
                        "Local cache version mismatch found=%s expected=%s, starting empty",
                        parsed.version,
                        CACHE_STATE_VERSION,
                    )
        self._state = state
        self.revision += 1
        logger.debug(
            "Local cache loaded selected=%s saved=%s recommendations=%s",
            len(state.selected_gifts),
            len(state.saved_gifts),
            len(state.recent_recommendations),
        )
        return state

    def _persist(self) -> None:
        self.revision += 1
        payload = self.state.model_dump_json(by_alias=True)
        try:
            self._backend.write(payload)
        except OSError:
            logger.exception("Local cache persist failed size=%s", len(payload))

    def _bucket(self, bucket: Bucket) -> list[StoredGift]:
        if bucket == "saved_for_later":
            return self.state.saved_gifts
        return self.state.selected_gifts

    def put(self, record: StoredGift) -> StoredGift:
        bucket = self._bucket("saved_for_later" if record.status == "saved_for_later" else "selected")
        for index, item in enumerate(bucket):
            if item.id == record.id:
                bucket[index] = record
                break
        else:
            bucket.append(record)
        self._persist()
        return record

    def _store_candidate(
        self,
        candidate: Candidate,
        recipient_id: str,
        occasion_id: str,
        status: str,
    ) -> StoredGift:
        record = StoredGift(
            id=f"local-{uuid4().hex}",
            name=candidate.name or "",
            description=candidate.description,
            price=candidate.price,
            category=candidate.category or "AI Recommended",
            recipient_id=recipient_id,
            occasion_id=occasion_id,
            selected_at=utcnow(),
            status=status,
            metadata=SelectionMetadata(
                model=candidate.model,
                confidence=candidate.confidence,
                reasoning=candidate.reasoning,
                tags=candidate.tags,
            ),
            image_url=candidate.image_url,
            purchase_url=candidate.purchase_url,
            asin=candidate.asin,
        )
        return self.put(record)

    def select(self, candidate: Candidate, recipient_id: str, occasion_id: str) -> StoredGift:
        return self._store_candidate(candidate, recipient_id, occasion_id, "selected")

    def save_for_later(self, candidate: Candidate, recipient_id: str, occasion_id: str) -> StoredGift:
        return self._store_candidate(candidate, recipient_id, occasion_id, "saved_for_later")

    def remove(self, local_id: str, bucket: Bucket = "selected") -> bool:
        items = self._bucket(bucket)
        remaining = [item for item in items if item.id != local_id]
        if len(remaining) == len(items):
            return False
        items[:] = remaining
        self._persist()
        return True

    def get(self, local_id: str) -> StoredGift | None:
        for item in self.state.selected_gifts:
            if item.id == local_id:
                return item
        return None

    def query_by_recipient_occasion(self, recipient_id: str, occasion_id: str) -> list[StoredGift]:
        return [
            gift
            for gift in self.state.selected_gifts
            if gift.recipient_id == recipient_id and gift.occasion_id == occasion_id
        ]

    def find_by_name(self, recipient_id: str, occasion_id: str, name: str) -> StoredGift | None:
        key = normalize_name(name)
        for gift in self.query_by_recipient_occasion(recipient_id, occasion_id):
            if normalize_name(gift.name) == key:
                return gift
        return None

    def saved_for_recipient(self, recipient_id: str) -> list[StoredGift]:
        return [gift for gift in self.state.saved_gifts if gift.recipient_id == recipient_id]

    def attach_remote_id(self, local_id: str, remote_id: int) -> bool:
        record = self.get(local_id)
        if record is None:
            return False
        self.put(record.model_copy(update={"remote_id": remote_id}))
        return True

    def mark_purchased(self, local_id: str) -> bool:
        record = self.get(local_id)
        if record is None:
            return False
        self.put(record.model_copy(update={"status": "purchased"}))
        return True

    def save_recommendations(self, candidates: list[Candidate], recipient_id: str, occasion_id: str) -> None:
        self.state.recent_recommendations[recommendations_key(recipient_id, occasion_id)] = list(candidates)
        self._persist()

    def recommendations_for(self, recipient_id: str, occasion_id: str) -> list[Candidate]:
        return list(self.state.recent_recommendations.get(recommendations_key(recipient_id, occasion_id), []))

    def clear(self) -> None:
        self._state = CacheState()
        self.revision += 1
        try:
            self._backend.clear()
        except OSError:
            logger.exception("Local cache clear failed")
