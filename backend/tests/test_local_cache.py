import json
from decimal import Decimal
from unittest.mock import MagicMock

import redis

from giftsync.core.config import settings
from giftsync.schemas.selection import Candidate
from giftsync.stores.local_cache import (
    FileStateBackend,
    LocalSelectionCache,
    MemoryStateBackend,
    RedisStateBackend,
    build_backend,
)


def _speaker() -> Candidate:
    return Candidate(name="Bluetooth Speaker", price=45, category="Electronics", reasoning="Loves music")


def test_select_persists_immediately():
    backend = MemoryStateBackend()
    cache = LocalSelectionCache(backend)

    stored = cache.select(_speaker(), "r1", "o1")

    assert stored.id.startswith("local-")
    assert stored.price == Decimal("45.00")
    payload = json.loads(backend.payload)
    assert payload["version"] == 1
    assert payload["selectedGifts"][0]["name"] == "Bluetooth Speaker"
    assert payload["selectedGifts"][0]["recipientId"] == "r1"


def test_state_survives_new_instance(tmp_path):
    path = tmp_path / "selections.json"
    LocalSelectionCache(FileStateBackend(path)).select(_speaker(), "r1", "o1")

    reopened = LocalSelectionCache(FileStateBackend(path))

    records = reopened.query_by_recipient_occasion("r1", "o1")
    assert [record.name for record in records] == ["Bluetooth Speaker"]


def test_query_is_exact_on_recipient_and_occasion():
    cache = LocalSelectionCache(MemoryStateBackend())
    cache.select(_speaker(), "r1", "o1")

    assert cache.query_by_recipient_occasion("r1", "o2") == []
    assert cache.query_by_recipient_occasion("r2", "o1") == []


def test_corrupt_state_starts_empty():
    cache = LocalSelectionCache(MemoryStateBackend("{not json"))

    state = cache.load()

    assert state.selected_gifts == []
    assert state.recent_recommendations == {}


def test_undecodable_file_starts_empty(tmp_path):
    path = tmp_path / "selections.json"
    path.write_bytes(b"\xff\xfe\x00garbage")
    cache = LocalSelectionCache(FileStateBackend(path))

    state = cache.load()

    assert state.selected_gifts == []
    cache.select(_speaker(), "r1", "o1")
    assert len(LocalSelectionCache(FileStateBackend(path)).query_by_recipient_occasion("r1", "o1")) == 1


def test_unknown_version_starts_empty():
    payload = json.dumps(
        {
            "version": 99,
            "selectedGifts": [
                {"id": "local-1", "name": "Mug", "price": 10, "recipientId": "r1", "occasionId": "o1"}
            ],
        }
    )
    cache = LocalSelectionCache(MemoryStateBackend(payload))

    assert cache.query_by_recipient_occasion("r1", "o1") == []


def test_unreadable_file_starts_empty(tmp_path):
    backend = FileStateBackend(tmp_path / "selections.json")
    backend.read = MagicMock(side_effect=OSError("permission denied"))
    cache = LocalSelectionCache(backend)

    assert cache.state.selected_gifts == []


def test_write_failure_keeps_in_memory_state():
    backend = MemoryStateBackend()
    backend.write = MagicMock(side_effect=OSError("disk full"))
    cache = LocalSelectionCache(backend)

    cache.select(_speaker(), "r1", "o1")

    assert len(cache.query_by_recipient_occasion("r1", "o1")) == 1


def test_saved_for_later_bucket_is_separate():
    cache = LocalSelectionCache(MemoryStateBackend())
    saved = cache.save_for_later(_speaker(), "r1", "o1")

    assert cache.query_by_recipient_occasion("r1", "o1") == []
    assert [gift.id for gift in cache.saved_for_recipient("r1")] == [saved.id]
    assert cache.remove(saved.id, "selected") is False
    assert cache.remove(saved.id, "saved_for_later") is True
    assert cache.saved_for_recipient("r1") == []


def test_attach_remote_id_and_mark_purchased_keep_position():
    cache = LocalSelectionCache(MemoryStateBackend())
    first = cache.select(_speaker(), "r1", "o1")
    second = cache.select(Candidate(name="Mug", price=12), "r1", "o1")

    assert cache.attach_remote_id(first.id, 42) is True
    assert cache.mark_purchased(first.id) is True

    records = cache.query_by_recipient_occasion("r1", "o1")
    assert [record.id for record in records] == [first.id, second.id]
    assert records[0].remote_id == 42
    assert records[0].status == "purchased"
    assert cache.attach_remote_id("local-missing", 1) is False


def test_find_by_name_is_case_insensitive():
    cache = LocalSelectionCache(MemoryStateBackend())
    stored = cache.select(_speaker(), "r1", "o1")

    found = cache.find_by_name("r1", "o1", "  bluetooth   SPEAKER ")

    assert found is not None
    assert found.id == stored.id


def test_recent_recommendations_keyed_by_pair():
    backend = MemoryStateBackend()
    cache = LocalSelectionCache(backend)
    cache.save_recommendations([_speaker()], "r1", "o1")

    assert [c.name for c in cache.recommendations_for("r1", "o1")] == ["Bluetooth Speaker"]
    assert cache.recommendations_for("r1", "o2") == []
    assert "r1-o1" in json.loads(backend.payload)["recentRecommendations"]


def test_clear_resets_state():
    backend = MemoryStateBackend()
    cache = LocalSelectionCache(backend)
    cache.select(_speaker(), "r1", "o1")

    cache.clear()

    assert backend.payload is None
    assert cache.query_by_recipient_occasion("r1", "o1") == []


def test_revision_moves_on_every_mutation():
    cache = LocalSelectionCache(MemoryStateBackend())
    cache.load()
    before = cache.revision

    stored = cache.select(_speaker(), "r1", "o1")
    cache.remove(stored.id)

    assert cache.revision == before + 2


def test_build_backend_namespaces_file_per_user(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "local_cache_backend", "file")
    monkeypatch.setattr(settings, "local_cache_path", str(tmp_path / "selections.json"))

    backend = build_backend(7)

    assert isinstance(backend, FileStateBackend)
    assert backend.path == tmp_path / "selections-7.json"


def test_redis_backend_falls_back_to_memory_when_unavailable():
    backend = RedisStateBackend(redis_dsn="redis://nonexistent:6379", key="giftsync:test")

    backend.write('{"version": 1}')

    assert backend.read() == '{"version": 1}'


def test_redis_backend_roundtrip_with_client():
    backend = RedisStateBackend(key="giftsync:test")
    client = MagicMock()
    client.get.return_value = '{"version": 1}'
    backend._redis = client

    backend.write('{"version": 1}')

    client.set.assert_called_once_with("giftsync:test", '{"version": 1}')
    assert backend.read() == '{"version": 1}'


def test_redis_backend_error_enters_cooldown():
    backend = RedisStateBackend(key="giftsync:test")
    client = MagicMock()
    client.set.side_effect = redis.ConnectionError("gone")
    backend._redis = client

    backend.write('{"version": 1}')

    assert backend._redis is None
    assert backend._in_cooldown() is True
    assert backend.read() == '{"version": 1}'
