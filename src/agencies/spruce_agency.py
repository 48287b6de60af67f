from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import List

import httpx

from src.pipelines.history import HistoryFetcher
from src.pipelines.normalize import normalize_conversation
from src.pipelines.sync import ConversationSyncer, SyncResult
from src.pipelines.updates import IncrementalUpdater, UpdateResult
from src.pipelines.upstream import call_upstream
from src.schemas.models import CacheStatusResponse, ConversationSummary, Message, RateLimitStatus
from src.utils.conversation_cache import ConversationCacheStore
from src.utils.logging import get_logger
from src.utils.message_cache import MessageCacheStore
from src.utils.settings import SpruceSettings
from src.utils.singleflight import SingleFlight
from src.utils.spruce import SpruceAPIError, SpruceClient

log = get_logger(__name__)


@dataclass
class SpruceAgency:
    """Wires the Spruce client, both caches and the orchestrators together.

    Reads are served from the caches; a cold conversation cache triggers a
    full sync on first read.
    """

    settings: SpruceSettings
    transport: httpx.AsyncBaseTransport | None = None
    client: SpruceClient = field(init=False)
    conversations: ConversationCacheStore = field(init=False)
    messages: MessageCacheStore = field(init=False)
    syncer: ConversationSyncer = field(init=False)
    updater: IncrementalUpdater = field(init=False)
    history_fetcher: HistoryFetcher = field(init=False)

    def __post_init__(self) -> None:
        flight = SingleFlight()
        self.client = SpruceClient(self.settings, transport=self.transport)
        self.conversations = ConversationCacheStore(self.settings.conversations_path)
        self.messages = MessageCacheStore(self.settings.messages_dir, window_ms=self.settings.message_ttl_ms)
        self.syncer = ConversationSyncer(self.client, self.conversations, single_flight=flight)
        self.updater = IncrementalUpdater(self.client, self.conversations, single_flight=flight)
        self.history_fetcher = HistoryFetcher(
            self.client,
            self.messages,
            self.conversations,
            single_flight=flight,
        )

    @classmethod
    def from_env(cls) -> "SpruceAgency":
        return cls(settings=SpruceSettings.from_env())

    def init(self) -> None:
        self.messages.init()
        self.conversations.init()
        log.info(
            "spruce_agency_started",
            auth_scheme=self.settings.auth_scheme,
            cache_dir=str(self.settings.cache_dir),
            conversations=self.conversations.count(),
        )

    async def shutdown(self) -> None:
        self.conversations.shutdown()
        log.info("spruce_agency_stopped")

    async def list_conversations(self, query: str | None = None) -> List[ConversationSummary]:
        if self.conversations.is_empty():
            log.info("conversation_cache_cold_sync")
            await self.syncer.sync()
        if query:
            return self.conversations.search(query)
        return self.conversations.all()

    async def get_conversation(self, conversation_id: str, *, refresh: bool = False) -> ConversationSummary | None:
        """Return one conversation, looking it up upstream on a cache miss.

        The upstream record is normalized and upserted. A 404 yields ``None``;
        other upstream failures fall back to the cached summary when there is
        one.
        """

        cached = self.conversations.get(conversation_id)
        if cached is not None and not refresh:
            return cached
        try:
            raw = await call_upstream(
                "conversation",
                self.client,
                lambda scheme: self.client.get_conversation(conversation_id, scheme=scheme),
            )
        except SpruceAPIError as exc:
            if exc.status_code == 404:
                return None
            if cached is None:
                raise
            log.warning("spruce_conversation_lookup_failed", conversation_id=conversation_id, error=str(exc))
            return cached
        if not raw.get("id"):
            return cached
        return self.conversations.upsert_one(normalize_conversation(raw, now=datetime.now(UTC)))

    async def sync(self) -> SyncResult:
        return await self.syncer.sync()

    async def updates(self, since: str | datetime | None = None) -> UpdateResult:
        return await self.updater.poll(since)

    async def history(self, conversation_id: str, *, refresh: bool = False) -> List[Message]:
        return await self.history_fetcher.fetch(conversation_id, force_refresh=refresh)

    def invalidate_history(self, conversation_id: str) -> bool:
        return self.messages.invalidate(conversation_id)

    def clear_history(self) -> int:
        removed = self.messages.clear()
        log.info("message_cache_cleared", removed=removed)
        return removed

    async def archive(self, conversation_id: str) -> bool:
        success = await call_upstream(
            "archive",
            self.client,
            lambda scheme: self.client.archive_conversation(conversation_id, scheme=scheme),
        )
        if success:
            self.conversations.patch_fields(conversation_id, {"archived": True})
            log.info("spruce_conversation_archived", conversation_id=conversation_id)
        return success

    def status(self) -> CacheStatusResponse:
        last = self.syncer.last_result
        return CacheStatusResponse(
            conversation_count=self.conversations.count(),
            message_cache_count=self.messages.count(),
            auth_scheme=self.settings.auth_scheme,
            last_sync_at=last.synced_at if last else None,
            last_sync_pages=last.pages if last else None,
            rate_limit=RateLimitStatus(**self.client.rate_limit_status()),
        )
