from __future__ import annotations

from typing import Any, Dict, List

import httpx
import pytest

from src.utils.conversation_cache import ConversationCacheStore
from src.utils.message_cache import MessageCacheStore
from src.utils.observability import get_metrics
from src.utils.settings import SpruceSettings
from src.utils.spruce import SpruceClient

BASE_URL = "https://spruce.test/v1"


class FakeSpruce:
    """In-memory stand-in for the Spruce API, served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.conversation_pages: List[List[Dict[str, Any]]] = []
        self.conversation_failures: Dict[int, int] = {}
        self.transient_failures: List[int] = []
        self.items: Dict[str, List[List[Dict[str, Any]]]] = {}
        self.items_failures: Dict[str, int] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.messages_failures: Dict[str, int] = {}
        self.rejected_schemes: set[str] = set()
        self.archive_status = 200
        self.trailing_token = False
        self.conversation_details: Dict[str, Dict[str, Any]] = {}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, suffix: str, method: str = "GET") -> List[httpx.Request]:
        return [req for req in self.requests if req.method == method and req.url.path.endswith(suffix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scheme = request.headers.get("Authorization", "").split(" ", 1)[0]
        if scheme in self.rejected_schemes:
            return httpx.Response(401, json={"message": f"{scheme} not accepted"})
        segments = request.url.path.split("/")[2:]
        if segments == ["conversations"] and request.method == "GET":
            return self._conversations(request)
        if len(segments) == 2 and request.method == "PATCH":
            return httpx.Response(self.archive_status, json={"id": segments[1], "archived": True})
        if len(segments) == 2 and segments[1] in self.conversation_details:
            return httpx.Response(200, json={"conversation": self.conversation_details[segments[1]]})
        if len(segments) == 3 and segments[2] == "items":
            return self._items(segments[1], request)
        if len(segments) == 3 and segments[2] == "messages":
            return self._messages(segments[1])
        return httpx.Response(404, json={"message": "not found"})

    def _conversations(self, request: httpx.Request) -> httpx.Response:
        token = request.url.params.get("paginationToken")
        if self.transient_failures:
            return httpx.Response(self.transient_failures.pop(0), headers={"Retry-After": "0"}, json={"error": "try again"})
        index = int(token.split("-")[1]) if token else 0
        if index in self.conversation_failures:
            return httpx.Response(self.conversation_failures[index], json={"error": "upstream unavailable"})
        records = self.conversation_pages[index] if index < len(self.conversation_pages) else []
        has_more = index + 1 < len(self.conversation_pages)
        return httpx.Response(
            200,
            json={
                "conversations": records,
                "hasMore": has_more,
                "paginationToken": f"page-{index + 1}" if has_more or self.trailing_token else None,
            },
        )

    def _items(self, conversation_id: str, request: httpx.Request) -> httpx.Response:
        if conversation_id in self.items_failures:
            return httpx.Response(self.items_failures[conversation_id], json={"message": "items unavailable"})
        pages = self.items.get(conversation_id, [])
        token = request.url.params.get("paginationToken")
        index = int(token.split("-")[1]) if token else 0
        records = pages[index] if index < len(pages) else []
        has_more = index + 1 < len(pages)
        return httpx.Response(
            200,
            json={
                "conversationItems": records,
                "hasMore": has_more,
                "nextPageToken": f"items-{index + 1}" if has_more else None,
            },
        )

    def _messages(self, conversation_id: str) -> httpx.Response:
        if conversation_id in self.messages_failures:
            return httpx.Response(self.messages_failures[conversation_id], json={"message": "messages unavailable"})
        return httpx.Response(200, json={"messages": self.messages.get(conversation_id, [])})


def make_conversation(index: int, **overrides: Any) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "id": f"conv-{index}",
        "title": f"Conversation {index}",
        "externalParticipants": [{"displayName": f"Patient {index}", "contact": f"+1555000{index:04d}"}],
        "lastMessage": {"content": f"hello {index}", "sentAt": f"2024-05-01T10:{index % 60:02d}:00Z"},
        "lastActivity": f"2024-05-01T10:{index % 60:02d}:00Z",
        "unreadCount": index % 3,
    }
    record.update(overrides)
    return record


def make_settings(tmp_path, **overrides: Any) -> SpruceSettings:
    values: Dict[str, Any] = {
        "base_url": BASE_URL,
        "access_id": "aid_123",
        "api_key": "secret-key",
        "bearer_token": "bearer-token",
        "auth_scheme": "basic",
        "cache_dir": tmp_path / "spruce",
        "max_attempts": 1,
        "backoff_min_seconds": 0.0,
        "backoff_max_seconds": 0.0,
    }
    values.update(overrides)
    return SpruceSettings(**values)


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def fake_spruce() -> FakeSpruce:
    return FakeSpruce()


@pytest.fixture
def settings(tmp_path) -> SpruceSettings:
    return make_settings(tmp_path)


@pytest.fixture
def client(settings, fake_spruce) -> SpruceClient:
    return SpruceClient(settings, transport=fake_spruce.transport())


@pytest.fixture
def conversation_store(settings) -> ConversationCacheStore:
    store = ConversationCacheStore(settings.conversations_path)
    store.init()
    return store


@pytest.fixture
def message_clock():
    return {"now": 1_700_000_000.0}


@pytest.fixture
def message_store(settings, message_clock) -> MessageCacheStore:
    store = MessageCacheStore(settings.messages_dir, clock=lambda: message_clock["now"])
    store.init()
    return store
