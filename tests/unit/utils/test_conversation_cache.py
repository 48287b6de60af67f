import json

import pytest

from src.schemas.models import ConversationSummary
from src.utils.conversation_cache import ConversationCacheStore


def _summary(conversation_id: str, **overrides) -> ConversationSummary:
    values = {
        "id": conversation_id,
        "patient_name": f"Patient {conversation_id}",
        "last_message": "hi",
        "updated_at": "2024-05-01T10:00:00Z",
    }
    values.update(overrides)
    return ConversationSummary(**values)


def test_missing_file_loads_empty(tmp_path):
    store = ConversationCacheStore(tmp_path / "conversations_cache.json")
    assert store.init() == []
    assert store.is_empty()


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "conversations_cache.json"
    path.write_text("{not json", encoding="utf-8")
    store = ConversationCacheStore(path)
    assert store.load_all() == []


def test_legacy_snake_case_records_load_and_invalid_records_are_skipped(tmp_path):
    path = tmp_path / "conversations_cache.json"
    path.write_text(
        json.dumps(
            [
                {"id": "a", "patient_name": "Ada", "last_message": "hello", "updated_at": "2024-01-01T00:00:00Z"},
                {"patientName": "missing id"},
                {"id": "b", "patientName": "Bo", "updatedAt": "2024-01-02T00:00:00Z", "unreadCount": 2},
            ]
        ),
        encoding="utf-8",
    )
    store = ConversationCacheStore(path)
    loaded = store.load_all()
    assert [record.id for record in loaded] == ["a", "b"]
    assert loaded[0].patient_name == "Ada"
    assert loaded[1].unread_count == 2
    assert loaded[1].last_message == "No messages"


def test_replace_all_persists_camel_case_in_order(tmp_path):
    path = tmp_path / "nested" / "conversations_cache.json"
    store = ConversationCacheStore(path)
    store.replace_all([_summary("a"), _summary("b"), _summary("a", last_message="later")])

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert [item["id"] for item in payload] == ["a", "b"]
    assert payload[0]["lastMessage"] == "later"
    assert set(payload[0]) == {"id", "patientName", "lastMessage", "updatedAt", "unreadCount", "archived"}

    reloaded = ConversationCacheStore(path)
    assert [record.id for record in reloaded.load_all()] == ["a", "b"]


def test_upsert_merges_existing_in_place_and_prepends_new(tmp_path):
    store = ConversationCacheStore(tmp_path / "cache.json")
    store.replace_all([_summary("a"), _summary("b")])

    merged = store.upsert_one(_summary("b", last_message="updated", unread_count=4))
    assert merged.last_message == "updated"
    store.upsert_one(_summary("c"))

    assert [record.id for record in store.all()] == ["c", "a", "b"]
    assert store.get("b").unread_count == 4


def test_upsert_many_keeps_order_of_new_records(tmp_path):
    store = ConversationCacheStore(tmp_path / "cache.json")
    store.replace_all([_summary("old")])
    stored = store.upsert_many([_summary("x"), _summary("y")])
    assert [record.id for record in stored] == ["x", "y"]
    assert [record.id for record in store.all()] == ["y", "x", "old"]


def test_patch_fields_updates_only_named_fields(tmp_path):
    store = ConversationCacheStore(tmp_path / "cache.json")
    store.replace_all([_summary("a", unread_count=3)])

    patched = store.patch_fields("a", {"archived": True, "last_message": "bye"})
    assert patched.archived is True
    assert patched.last_message == "bye"
    assert patched.unread_count == 3
    assert store.patch_fields("missing", {"archived": True}) is None
    with pytest.raises(ValueError):
        store.patch_fields("a", {"bogus": 1})


def test_search_matches_name_and_last_message(tmp_path):
    store = ConversationCacheStore(tmp_path / "cache.json")
    store.replace_all(
        [
            _summary("a", patient_name="Jane Doe", last_message="refill please"),
            _summary("b", patient_name="John Roe", last_message="Thanks!"),
        ]
    )
    assert [record.id for record in store.search("jane")] == ["a"]
    assert [record.id for record in store.search("THANKS")] == ["b"]
    assert len(store.search("  ")) == 2


def test_returned_records_are_copies(tmp_path):
    store = ConversationCacheStore(tmp_path / "cache.json")
    store.replace_all([_summary("a")])
    record = store.get("a")
    record.patient_name = "mutated"
    assert store.get("a").patient_name == "Patient a"
