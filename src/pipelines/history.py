from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List

from src.pipelines.normalize import normalize_items
from src.pipelines.upstream import call_upstream
from src.schemas.models import Message, MessageCacheEntry
from src.utils.conversation_cache import ConversationCacheStore
from src.utils.logging import get_logger
from src.utils.message_cache import MessageCacheStore
from src.utils.observability import get_metrics, time_phase
from src.utils.singleflight import SingleFlight
from src.utils.spruce import SpruceAPIError, SpruceClient, SpruceConfigError

log = get_logger(__name__)

ITEMS_PAGE_SIZE = 100
MAX_ITEM_PAGES = 20
FALLBACK_MESSAGES_LIMIT = 200


class HistoryUnavailableError(RuntimeError):
    """Neither history endpoint answered and nothing is cached for the conversation."""

    def __init__(self, conversation_id: str, cause: Exception | None = None) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"History unavailable for conversation {conversation_id}{detail}")
        self.conversation_id = conversation_id


class HistoryFetcher:
    def __init__(
        self,
        client: SpruceClient,
        message_store: MessageCacheStore,
        conversation_store: ConversationCacheStore,
        *,
        items_page_size: int = ITEMS_PAGE_SIZE,
        max_item_pages: int = MAX_ITEM_PAGES,
        fallback_limit: int = FALLBACK_MESSAGES_LIMIT,
        single_flight: SingleFlight | None = None,
    ) -> None:
        self.client = client
        self.message_store = message_store
        self.conversation_store = conversation_store
        self.items_page_size = items_page_size
        self.max_item_pages = max_item_pages
        self.fallback_limit = fallback_limit
        self._flight = single_flight or SingleFlight()

    async def fetch(self, conversation_id: str, *, force_refresh: bool = False) -> List[Message]:
        """Return the conversation's history, ascending by timestamp.

        A fresh cache entry is served without touching the upstream unless
        ``force_refresh`` is set. Otherwise the items endpoint is paged, the
        messages endpoint is used when that yields nothing, and the result is
        written through to both caches.
        """

        metrics = get_metrics()
        cached = self.message_store.read(conversation_id)
        if cached is not None and not force_refresh and self.message_store.is_fresh(cached):
            metrics.increment_counter("history::cache_hit")
            return list(cached.messages)
        metrics.increment_counter("history::cache_miss")
        return await self._flight.run(
            f"history:{conversation_id}",
            lambda: self._fetch_upstream(conversation_id, cached),
        )

    async def _fetch_items(self, conversation_id: str) -> tuple[List[Dict[str, Any]], Exception | None]:
        items: List[Dict[str, Any]] = []
        pagination_token: str | None = None
        pages = 0
        try:
            while pages < self.max_item_pages:
                token = pagination_token
                page = await call_upstream(
                    "history_items",
                    self.client,
                    lambda scheme: self.client.list_conversation_items(
                        conversation_id,
                        token,
                        self.items_page_size,
                        scheme=scheme,
                    ),
                )
                items.extend(page.records)
                pages += 1
                pagination_token = page.pagination_token
                if not page.has_more or not pagination_token or not page.records:
                    break
        except (SpruceAPIError, SpruceConfigError) as exc:
            log.warning(
                "spruce_history_items_failed",
                conversation_id=conversation_id,
                pages=pages,
                kept=len(items),
                error=str(exc),
            )
            return items, exc
        return items, None

    async def _fetch_fallback(self, conversation_id: str) -> List[Dict[str, Any]]:
        get_metrics().increment_counter("history::fallback")
        log.info("spruce_history_fallback", conversation_id=conversation_id, scheme=self.client.alternate_scheme)
        return await call_upstream(
            "history_messages",
            self.client,
            lambda scheme: self.client.list_conversation_messages(
                conversation_id,
                self.fallback_limit,
                scheme=scheme,
            ),
            scheme=self.client.alternate_scheme,
        )

    async def _fetch_upstream(self, conversation_id: str, cached: MessageCacheEntry | None) -> List[Message]:
        metrics = get_metrics()
        with time_phase(metrics, "history"):
            raw_items, items_error = await self._fetch_items(conversation_id)
            if not raw_items:
                try:
                    raw_items = await self._fetch_fallback(conversation_id)
                except SpruceAPIError as exc:
                    log.warning("spruce_history_fallback_failed", conversation_id=conversation_id, error=str(exc))
                    if cached is not None:
                        metrics.increment_counter("history::stale_served")
                        log.warning("spruce_history_serving_stale", conversation_id=conversation_id)
                        return list(cached.messages)
                    if items_error is not None:
                        raise HistoryUnavailableError(conversation_id, exc) from exc
                    # items answered with nothing; an empty history is not worth caching
                    return []

        messages = normalize_items(raw_items, now=datetime.now(UTC))
        self.message_store.write(conversation_id, messages)
        if messages:
            latest = messages[-1]
            self.conversation_store.patch_fields(
                conversation_id,
                {"updated_at": latest.timestamp, "last_message": latest.content},
            )
        log.info("spruce_history_fetched", conversation_id=conversation_id, count=len(messages))
        return messages
