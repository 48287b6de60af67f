import asyncio

import pytest

from conftest import make_conversation, make_settings
from src.pipelines.sync import ConversationSyncer
from src.utils.observability import get_metrics
from src.utils.spruce import SpruceAPIError, SpruceClient


def _pages(*sizes: int):
    pages = []
    start = 0
    for size in sizes:
        pages.append([make_conversation(index) for index in range(start, start + size)])
        start += size
    return pages


@pytest.mark.smoke
def test_sync_walks_every_page_in_order(client, conversation_store, fake_spruce):
    fake_spruce.conversation_pages = _pages(200, 200, 47)
    syncer = ConversationSyncer(client, conversation_store)

    result = asyncio.run(syncer.sync())

    calls = fake_spruce.calls("/conversations")
    assert len(calls) == 3
    assert [req.url.params.get("paginationToken") for req in calls] == [None, "page-1", "page-2"]
    assert all(req.url.params["limit"] == "200" for req in calls)
    assert result.count == 447
    assert result.pages == 3
    assert conversation_store.count() == 447
    assert conversation_store.all()[0].id == "conv-0"
    assert syncer.last_result is result
    counters = get_metrics().snapshot()["counters"]
    assert counters["sync::pages"] == 3
    assert counters["sync::completed"] == 1


def test_sync_twice_produces_identical_cache(client, conversation_store, fake_spruce, settings):
    fake_spruce.conversation_pages = _pages(3, 2)
    syncer = ConversationSyncer(client, conversation_store)

    asyncio.run(syncer.sync())
    first = conversation_store.all()
    first_bytes = settings.conversations_path.read_bytes()
    asyncio.run(syncer.sync())

    assert conversation_store.all() == first
    assert settings.conversations_path.read_bytes() == first_bytes


def test_failed_page_leaves_previous_cache_untouched(client, conversation_store, fake_spruce, settings):
    fake_spruce.conversation_pages = _pages(2)
    syncer = ConversationSyncer(client, conversation_store)
    asyncio.run(syncer.sync())
    before = settings.conversations_path.read_bytes()

    fake_spruce.conversation_pages = _pages(5, 5, 5, 5, 5)
    fake_spruce.conversation_failures = {2: 503}
    with pytest.raises(SpruceAPIError):
        asyncio.run(syncer.sync())

    assert conversation_store.count() == 2
    assert settings.conversations_path.read_bytes() == before
    assert get_metrics().counter("sync::failed") == 1


def test_page_ceiling_stops_pagination(client, conversation_store, fake_spruce):
    fake_spruce.conversation_pages = _pages(1, 1, 1, 1)
    syncer = ConversationSyncer(client, conversation_store, max_pages=2)

    result = asyncio.run(syncer.sync())

    assert len(fake_spruce.calls("/conversations")) == 2
    assert result.count == 2
    assert get_metrics().counter("sync::page_ceiling") == 1


def test_last_page_token_without_has_more_is_not_a_ceiling_hit(client, conversation_store, fake_spruce):
    fake_spruce.conversation_pages = _pages(1, 1)
    fake_spruce.trailing_token = True
    syncer = ConversationSyncer(client, conversation_store, max_pages=2)

    result = asyncio.run(syncer.sync())

    assert result.count == 2
    assert result.pages == 2
    assert get_metrics().counter("sync::page_ceiling") == 0


def test_records_without_id_are_skipped(client, conversation_store, fake_spruce):
    fake_spruce.conversation_pages = [[make_conversation(1), {"title": "orphan"}]]
    result = asyncio.run(ConversationSyncer(client, conversation_store).sync())
    assert [summary.id for summary in result.conversations] == ["conv-1"]


def test_concurrent_syncs_share_one_upstream_run(client, conversation_store, fake_spruce):
    fake_spruce.conversation_pages = _pages(2, 2)
    syncer = ConversationSyncer(client, conversation_store)

    async def scenario():
        return await asyncio.gather(syncer.sync(), syncer.sync(), syncer.sync())

    results = asyncio.run(scenario())

    assert len(fake_spruce.calls("/conversations")) == 2
    assert results[0] is results[1] is results[2]
    assert not syncer.in_progress


def test_transient_errors_are_retried(tmp_path, fake_spruce, conversation_store):
    fake_spruce.conversation_pages = _pages(3)
    fake_spruce.transient_failures = [503, 429]
    client = SpruceClient(make_settings(tmp_path, max_attempts=3), transport=fake_spruce.transport())

    result = asyncio.run(ConversationSyncer(client, conversation_store).sync())

    assert result.count == 3
    assert len(fake_spruce.calls("/conversations")) == 3
    assert get_metrics().counter("sync::retry") == 2


def test_retries_give_up_after_max_attempts(tmp_path, fake_spruce, conversation_store):
    fake_spruce.conversation_pages = _pages(3)
    fake_spruce.conversation_failures = {0: 502}
    client = SpruceClient(make_settings(tmp_path, max_attempts=3), transport=fake_spruce.transport())

    with pytest.raises(SpruceAPIError) as excinfo:
        asyncio.run(ConversationSyncer(client, conversation_store).sync())

    assert excinfo.value.status_code == 502
    assert len(fake_spruce.calls("/conversations")) == 3
    assert conversation_store.is_empty()


def test_client_errors_are_not_retried(tmp_path, fake_spruce, conversation_store):
    fake_spruce.conversation_pages = _pages(3)
    fake_spruce.conversation_failures = {0: 400}
    client = SpruceClient(make_settings(tmp_path, max_attempts=3), transport=fake_spruce.transport())

    with pytest.raises(SpruceAPIError):
        asyncio.run(ConversationSyncer(client, conversation_store).sync())

    assert len(fake_spruce.calls("/conversations")) == 1
