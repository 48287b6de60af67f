from __future__ import annotations

import hashlib
import json
import re
import time
from contextlib import suppress
from pathlib import Path
from typing import Callable, Iterable

from pydantic import ValidationError

from src.schemas.models import Message, MessageCacheEntry
from src.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_FRESHNESS_WINDOW_MS = 300_000

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def _cache_filename(conversation_id: str) -> str:
    if _SAFE_ID.match(conversation_id) and not conversation_id.startswith("."):
        return f"{conversation_id}.json"
    safe = re.sub(r"[^a-zA-Z0-9._-]", "_", conversation_id).lstrip(".")
    digest = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()[:8]
    return f"{safe[:40]}_{digest}.json"


class MessageCacheStore:
    """Per-conversation message history cache, one JSON file per conversation."""

    def __init__(
        self,
        directory: Path,
        *,
        window_ms: int = DEFAULT_FRESHNESS_WINDOW_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.window_ms = window_ms
        self._clock = clock

    def init(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def path_for(self, conversation_id: str) -> Path:
        return self.directory / _cache_filename(conversation_id)

    def read(self, conversation_id: str) -> MessageCacheEntry | None:
        path = self.path_for(conversation_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return MessageCacheEntry.model_validate(payload)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            log.warning("message_cache_read_failed", conversation_id=conversation_id, error=str(exc))
            return None

    def is_fresh(self, entry: MessageCacheEntry, now_ms: int | None = None, window_ms: int | None = None) -> bool:
        now = self.now_ms() if now_ms is None else now_ms
        window = self.window_ms if window_ms is None else window_ms
        return now - entry.last_fetched_at < window

    def write(self, conversation_id: str, messages: Iterable[Message]) -> MessageCacheEntry:
        entry = MessageCacheEntry(last_fetched_at=self.now_ms(), messages=list(messages))
        path = self.path_for(conversation_id)
        tmp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(entry.to_json_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            log.error("message_cache_persist_failed", conversation_id=conversation_id, path=str(path), error=str(exc))
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
        return entry

    def invalidate(self, conversation_id: str) -> bool:
        path = self.path_for(conversation_id)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        log.info("message_cache_invalidated", conversation_id=conversation_id)
        return True

    def count(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(1 for _ in self.directory.glob("*.json"))

    def clear(self) -> int:
        removed = 0
        if not self.directory.exists():
            return removed
        for path in self.directory.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed
