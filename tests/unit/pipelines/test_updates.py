import asyncio

import pytest

from conftest import make_conversation
from src.pipelines.updates import IncrementalUpdater, parse_since
from src.schemas.models import ConversationSummary
from src.utils.observability import get_metrics


def _seed(store):
    store.replace_all(
        [
            ConversationSummary(id="conv-1", patient_name="Old name", updated_at="2024-04-01T00:00:00Z"),
            ConversationSummary(id="untouched", patient_name="Keep me", updated_at="2024-03-01T00:00:00Z"),
        ]
    )


def test_poll_keeps_only_records_newer_than_since(client, conversation_store, fake_spruce):
    _seed(conversation_store)
    fake_spruce.conversation_pages = [
        [
            make_conversation(1, lastActivity="2024-05-01T12:00:00Z"),
            make_conversation(2, lastActivity="2024-05-01T10:00:00Z"),
            make_conversation(3, lastActivity="2024-05-01T09:00:00Z"),
            make_conversation(4, lastActivity=None, updatedAt="2024-05-01T11:00:00Z"),
        ]
    ]
    updater = IncrementalUpdater(client, conversation_store)

    result = asyncio.run(updater.poll("2024-05-01T10:00:00Z"))

    assert [summary.id for summary in result.conversations] == ["conv-1", "conv-4"]
    assert result.count == 2
    request = fake_spruce.calls("/conversations")[0]
    assert request.url.params["limit"] == "20"
    assert "paginationToken" not in request.url.params

    ids = [record.id for record in conversation_store.all()]
    assert ids == ["conv-4", "conv-1", "untouched"]
    assert conversation_store.get("conv-1").patient_name == "Patient 1"
    assert conversation_store.get("untouched").patient_name == "Keep me"
    assert get_metrics().counter("updates::changed") == 2


def test_poll_without_since_merges_whole_first_page(client, conversation_store, fake_spruce):
    fake_spruce.conversation_pages = [[make_conversation(7), make_conversation(8)], [make_conversation(9)]]
    result = asyncio.run(IncrementalUpdater(client, conversation_store).poll())

    assert [summary.id for summary in result.conversations] == ["conv-7", "conv-8"]
    assert [record.id for record in conversation_store.all()] == ["conv-7", "conv-8"]
    assert len(fake_spruce.calls("/conversations")) == 1


def test_poll_with_no_changes_does_not_touch_cache(client, conversation_store, fake_spruce, settings):
    _seed(conversation_store)
    before = settings.conversations_path.read_bytes()
    fake_spruce.conversation_pages = [[make_conversation(1, lastActivity="2024-01-01T00:00:00Z")]]

    result = asyncio.run(IncrementalUpdater(client, conversation_store).poll("2024-05-01T00:00:00Z"))

    assert result.count == 0
    assert settings.conversations_path.read_bytes() == before


def test_parse_since_rejects_garbage():
    assert parse_since(None) is None
    assert parse_since("") is None
    assert parse_since("2024-05-01T10:00:00Z").year == 2024
    with pytest.raises(ValueError):
        parse_since("last tuesday")


def test_naive_since_is_read_as_utc(client, conversation_store, fake_spruce):
    fake_spruce.conversation_pages = [
        [
            make_conversation(1, lastActivity="2024-05-01T10:30:00Z"),
            make_conversation(2, lastActivity="2024-05-01T09:30:00Z"),
        ]
    ]

    result = asyncio.run(IncrementalUpdater(client, conversation_store).poll("2024-05-01T10:00:00"))

    assert [summary.id for summary in result.conversations] == ["conv-1"]
