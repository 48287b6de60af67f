from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List

from src.pipelines.normalize import normalize_conversation
from src.pipelines.upstream import call_upstream
from src.schemas.models import ConversationSummary
from src.utils.conversation_cache import ConversationCacheStore
from src.utils.logging import get_logger
from src.utils.observability import get_metrics, time_phase
from src.utils.singleflight import SingleFlight
from src.utils.spruce import SpruceAPIError, SpruceClient, UpstreamPage

log = get_logger(__name__)

CONVERSATION_PAGE_SIZE = 200
# 100 pages of 200 is ~20k conversations
MAX_CONVERSATION_PAGES = 100


@dataclass
class SyncResult:
    conversations: List[ConversationSummary]
    pages: int
    synced_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def count(self) -> int:
        return len(self.conversations)


class ConversationSyncer:
    """Rebuilds the conversation cache from a full, paginated upstream read.

    Pages are fetched strictly in sequence and the store is only replaced
    once every page has arrived, so a failed sync leaves the previous cache
    untouched. Overlapping calls share one in-flight run.
    """

    def __init__(
        self,
        client: SpruceClient,
        store: ConversationCacheStore,
        *,
        page_size: int = CONVERSATION_PAGE_SIZE,
        max_pages: int = MAX_CONVERSATION_PAGES,
        single_flight: SingleFlight | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.page_size = page_size
        self.max_pages = max_pages
        self._flight = single_flight or SingleFlight()
        self.last_result: SyncResult | None = None

    @property
    def in_progress(self) -> bool:
        return self._flight.in_flight("sync")

    async def sync(self) -> SyncResult:
        return await self._flight.run("sync", self._sync_once)

    async def _fetch_page(self, pagination_token: str | None) -> UpstreamPage:
        return await call_upstream(
            "sync",
            self.client,
            lambda scheme: self.client.list_conversations(
                pagination_token,
                self.page_size,
                scheme=scheme,
            ),
        )

    async def fetch_all(self) -> tuple[List[Dict[str, Any]], int]:
        raw_conversations: List[Dict[str, Any]] = []
        pagination_token: str | None = None
        page_count = 0
        while True:
            page = await self._fetch_page(pagination_token)
            raw_conversations.extend(page.records)
            page_count += 1
            pagination_token = page.pagination_token
            log.info("spruce_sync_page", page=page_count, total=len(raw_conversations))
            if not (page.has_more and pagination_token and page_count < self.max_pages):
                break
        if page_count >= self.max_pages and page.has_more and pagination_token:
            get_metrics().increment_counter("sync::page_ceiling")
            log.warning("spruce_sync_page_ceiling_reached", pages=page_count, total=len(raw_conversations))
        return raw_conversations, page_count

    async def _sync_once(self) -> SyncResult:
        metrics = get_metrics()
        log.info("spruce_sync_start", scheme=self.client.primary_scheme)
        try:
            with time_phase(metrics, "sync"):
                raw_conversations, page_count = await self.fetch_all()
        except SpruceAPIError as exc:
            metrics.increment_counter("sync::failed")
            log.error("spruce_sync_failed", error=str(exc), status=exc.status_code)
            raise

        now = datetime.now(UTC)
        summaries: List[ConversationSummary] = []
        for raw in raw_conversations:
            if not raw.get("id"):
                log.warning("spruce_sync_record_without_id", keys=sorted(raw)[:10])
                continue
            summaries.append(normalize_conversation(raw, now=now))

        self.store.replace_all(summaries)
        metrics.increment_counter("sync::pages", page_count)
        metrics.increment_counter("sync::completed")
        result = SyncResult(conversations=self.store.all(), pages=page_count, synced_at=now)
        self.last_result = result
        log.info("spruce_sync_complete", count=result.count, pages=page_count)
        return result
