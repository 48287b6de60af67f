from __future__ import annotations

import json
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, List, Mapping

from pydantic import ValidationError

from src.schemas.models import ConversationSummary
from src.utils.logging import get_logger

log = get_logger(__name__)


class ConversationCacheStore:
    """Process-wide map of conversation id to summary, persisted as one JSON array.

    The in-memory map is the source of truth. Every mutation is applied under
    the lock and then written through to ``path``; the order of the map is
    the order of the persisted array.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._records: Dict[str, ConversationSummary] = {}
        self._lock = RLock()

    def init(self) -> List[ConversationSummary]:
        return self.load_all()

    def shutdown(self) -> None:
        self.flush()

    def load_all(self) -> List[ConversationSummary]:
        records: Dict[str, ConversationSummary] = {}
        if self.path.exists():
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                log.error("conversation_cache_load_failed", path=str(self.path), error=str(exc))
                payload = []
            if not isinstance(payload, list):
                log.error("conversation_cache_invalid_format", path=str(self.path))
                payload = []
            for item in payload:
                try:
                    summary = ConversationSummary.model_validate(item)
                except ValidationError:
                    log.warning("conversation_cache_record_skipped", record=str(item)[:120])
                    continue
                records.setdefault(summary.id, summary)
        with self._lock:
            self._records = records
        log.info("conversation_cache_loaded", count=len(records), path=str(self.path))
        return self.all()

    def all(self) -> List[ConversationSummary]:
        with self._lock:
            return [record.model_copy() for record in self._records.values()]

    def get(self, conversation_id: str) -> ConversationSummary | None:
        with self._lock:
            record = self._records.get(conversation_id)
            return record.model_copy() if record else None

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def is_empty(self) -> bool:
        return self.count() == 0

    def search(self, query: str) -> List[ConversationSummary]:
        needle = query.strip().lower()
        if not needle:
            return self.all()
        with self._lock:
            return [
                record.model_copy()
                for record in self._records.values()
                if needle in record.patient_name.lower() or needle in record.last_message.lower()
            ]

    def replace_all(self, summaries: Iterable[ConversationSummary]) -> None:
        records: Dict[str, ConversationSummary] = {}
        for summary in summaries:
            if summary.id in records:
                records[summary.id] = records[summary.id].model_copy(update=summary.model_dump())
            else:
                records[summary.id] = summary
        with self._lock:
            self._records = records
            self._persist_locked()

    def _upsert_locked(self, summary: ConversationSummary) -> ConversationSummary:
        existing = self._records.get(summary.id)
        if existing is not None:
            merged = existing.model_copy(update=summary.model_dump(exclude_unset=True))
            self._records[summary.id] = merged
            return merged
        self._records = {summary.id: summary, **self._records}
        return summary

    def upsert_one(self, summary: ConversationSummary) -> ConversationSummary:
        with self._lock:
            stored = self._upsert_locked(summary)
            self._persist_locked()
            return stored.model_copy()

    def upsert_many(self, summaries: Iterable[ConversationSummary]) -> List[ConversationSummary]:
        with self._lock:
            stored = [self._upsert_locked(summary) for summary in summaries]
            if stored:
                self._persist_locked()
            return [record.model_copy() for record in stored]

    def patch_fields(self, conversation_id: str, fields: Mapping[str, Any]) -> ConversationSummary | None:
        unknown = set(fields) - set(ConversationSummary.model_fields)
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        with self._lock:
            existing = self._records.get(conversation_id)
            if existing is None:
                return None
            patched = existing.model_copy(update=dict(fields))
            self._records[conversation_id] = patched
            self._persist_locked()
            return patched.model_copy()

    def flush(self) -> None:
        with self._lock:
            self._persist_locked()

    def _persist_locked(self) -> None:
        payload = [record.to_json_dict() for record in self._records.values()]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            log.error("conversation_cache_persist_failed", path=str(self.path), error=str(exc))
