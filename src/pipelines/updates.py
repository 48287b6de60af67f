from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import List

from src.pipelines.normalize import conversation_activity, normalize_conversation, parse_timestamp
from src.pipelines.upstream import call_upstream
from src.schemas.models import ConversationSummary
from src.utils.conversation_cache import ConversationCacheStore
from src.utils.logging import get_logger
from src.utils.observability import get_metrics
from src.utils.singleflight import SingleFlight
from src.utils.spruce import SpruceClient

log = get_logger(__name__)

UPDATE_PAGE_SIZE = 20


@dataclass
class UpdateResult:
    conversations: List[ConversationSummary] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.conversations)


def parse_since(since: str | datetime | None) -> datetime | None:
    if since is None or since == "":
        return None
    parsed = parse_timestamp(since)
    if parsed is None:
        raise ValueError(f"Invalid 'since' timestamp: {since!r}")
    return parsed


class IncrementalUpdater:
    """Polls the first page of the upstream feed and merges recent changes.

    Only the most recently active page is inspected; changes that fall off
    that page between polls are picked up by the next full sync.
    """

    def __init__(
        self,
        client: SpruceClient,
        store: ConversationCacheStore,
        *,
        page_size: int = UPDATE_PAGE_SIZE,
        single_flight: SingleFlight | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.page_size = page_size
        self._flight = single_flight or SingleFlight()

    async def poll(self, since: str | datetime | None = None) -> UpdateResult:
        watermark = parse_since(since)
        key = f"updates:{watermark.isoformat() if watermark else '*'}"
        return await self._flight.run(key, lambda: self._poll_once(watermark))

    async def _poll_once(self, watermark: datetime | None) -> UpdateResult:
        page = await call_upstream(
            "updates",
            self.client,
            lambda scheme: self.client.list_conversations(limit=self.page_size, scheme=scheme),
        )
        candidates = [raw for raw in page.records if raw.get("id")]
        if watermark is not None:
            changed = []
            for raw in candidates:
                activity = conversation_activity(raw)
                if activity is not None and activity > watermark:
                    changed.append(raw)
        else:
            changed = candidates

        now = datetime.now(UTC)
        summaries = [normalize_conversation(raw, now=now) for raw in changed]
        # prepend in reverse so new records keep the upstream (most recent first) order
        stored = self.store.upsert_many(reversed(summaries))
        stored.reverse()

        get_metrics().increment_counter("updates::changed", len(stored))
        log.info(
            "spruce_updates_polled",
            fetched=len(page.records),
            changed=len(stored),
            since=watermark.isoformat() if watermark else None,
        )
        return UpdateResult(conversations=stored)
