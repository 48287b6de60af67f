from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Dict, List

import httpx

from src.utils.logging import get_logger
from src.utils.settings import AuthScheme, SpruceSettings, is_prebuilt_basic_token

log = get_logger(__name__)


class SpruceConfigError(RuntimeError):
    """Raised when Spruce credentials for the requested auth scheme are missing."""


class SpruceAPIError(RuntimeError):
    """An upstream call failed, either with an HTTP status or at the transport level."""

    def __init__(self, message: str, *, status_code: int | None = None, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def auth_rejected(self) -> bool:
        return self.status_code in (401, 403)


@dataclass
class UpstreamPage:
    records: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    pagination_token: str | None = None


def _pagination_token(data: Dict[str, Any]) -> str | None:
    token = data.get("paginationToken") or data.get("nextPageToken")
    return str(token) if token else None


def _record_list(data: Dict[str, Any], *keys: str) -> List[Dict[str, Any]]:
    for key in keys:
        value = data.get(key)
        if value:
            return [item for item in value if isinstance(item, dict)]
    return []


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or "Unknown error"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or "Unknown error")
    return "Unknown error"


class SpruceClient:
    """Thin async wrapper over the Spruce Health conversations API.

    Every call takes an optional ``scheme``; when omitted the settings' primary
    scheme is used. The client never retries: that policy belongs to callers.
    """

    def __init__(
        self,
        settings: SpruceSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._rate_limit_remaining: int | None = None
        self._rate_limit_reset: float | None = None

    @property
    def primary_scheme(self) -> AuthScheme:
        return self.settings.auth_scheme

    @property
    def alternate_scheme(self) -> AuthScheme:
        other: AuthScheme = "bearer" if self.primary_scheme == "basic" else "basic"
        return other if self.supports(other) else self.primary_scheme

    def supports(self, scheme: AuthScheme) -> bool:
        if scheme == "bearer":
            return bool(self.settings.bearer_token)
        api_key = self.settings.api_key
        return is_prebuilt_basic_token(api_key) or bool(self.settings.access_id and api_key)

    def auth_header(self, scheme: AuthScheme | None = None) -> str:
        scheme = scheme or self.primary_scheme
        if scheme == "bearer":
            token = self.settings.bearer_token
            if not token:
                raise SpruceConfigError("SPRUCE_BEARER_TOKEN (or SPRUCE_API_KEY) is not configured")
            return f"Bearer {token}"
        api_key = self.settings.api_key
        if is_prebuilt_basic_token(api_key):
            return f"Basic {api_key}"
        if not (self.settings.access_id and api_key):
            raise SpruceConfigError("SPRUCE_ACCESS_ID and SPRUCE_API_KEY are required for Basic auth")
        raw = f"{self.settings.access_id}:{api_key}".encode("utf-8")
        return f"Basic {base64.b64encode(raw).decode('ascii')}"

    def rate_limit_status(self) -> Dict[str, Any]:
        reset_at = None
        if self._rate_limit_reset is not None:
            reset_at = datetime.fromtimestamp(self._rate_limit_reset, UTC).isoformat()
        return {"remaining": self._rate_limit_remaining, "reset_at": reset_at}

    def _track_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("x-ratelimit-remaining")
        reset = response.headers.get("x-ratelimit-reset")
        try:
            if remaining is not None:
                self._rate_limit_remaining = int(remaining)
            if reset is not None:
                self._rate_limit_reset = float(reset)
        except ValueError:
            log.debug("spruce_rate_limit_header_invalid", remaining=remaining, reset=reset)

    async def _respect_rate_limit(self) -> None:
        if self._rate_limit_remaining is None or self._rate_limit_remaining > 1:
            return
        if self._rate_limit_reset is None:
            return
        wait_seconds = self._rate_limit_reset - self._clock()
        if wait_seconds <= 0:
            return
        wait_seconds = min(wait_seconds, self.settings.timeout_seconds)
        log.warning("spruce_rate_limit_wait", wait_seconds=wait_seconds)
        await self._sleep(wait_seconds)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        scheme: AuthScheme | None = None,
        params: Dict[str, Any] | None = None,
        json: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": self.auth_header(scheme),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        query = {key: value for key, value in (params or {}).items() if value is not None}
        await self._respect_rate_limit()
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=headers, params=query, json=json)
                self._track_rate_limit(response)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise SpruceAPIError(
                f"Spruce API error ({status}): {_error_detail(exc.response)}",
                status_code=status,
                retry_after=_retry_after_seconds(exc.response),
            ) from exc
        except httpx.RequestError as exc:
            raise SpruceAPIError(f"Network error: {exc}") from exc

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise SpruceAPIError(f"Spruce API returned invalid JSON for {path}", status_code=response.status_code) from exc
        return data if isinstance(data, dict) else {}

    async def list_conversations(
        self,
        pagination_token: str | None = None,
        limit: int = 200,
        *,
        order_by: str | None = "lastActivity",
        scheme: AuthScheme | None = None,
    ) -> UpstreamPage:
        data = await self._request(
            "GET",
            "/conversations",
            scheme=scheme,
            params={"orderBy": order_by, "limit": limit, "paginationToken": pagination_token},
        )
        return UpstreamPage(
            records=_record_list(data, "conversations"),
            has_more=bool(data.get("hasMore")),
            pagination_token=_pagination_token(data),
        )

    async def get_conversation(self, conversation_id: str, *, scheme: AuthScheme | None = None) -> Dict[str, Any]:
        data = await self._request("GET", f"/conversations/{conversation_id}", scheme=scheme)
        nested = data.get("conversation")
        return nested if isinstance(nested, dict) else data

    async def list_conversation_items(
        self,
        conversation_id: str,
        pagination_token: str | None = None,
        limit: int = 100,
        *,
        scheme: AuthScheme | None = None,
    ) -> UpstreamPage:
        data = await self._request(
            "GET",
            f"/conversations/{conversation_id}/items",
            scheme=scheme,
            params={"limit": limit, "paginationToken": pagination_token},
        )
        return UpstreamPage(
            records=_record_list(data, "conversationItems", "items"),
            has_more=bool(data.get("hasMore")),
            pagination_token=_pagination_token(data),
        )

    async def list_conversation_messages(
        self,
        conversation_id: str,
        limit: int = 200,
        *,
        scheme: AuthScheme | None = None,
    ) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/conversations/{conversation_id}/messages",
            scheme=scheme,
            params={"limit": limit},
        )
        return _record_list(data, "messages", "data")

    async def archive_conversation(self, conversation_id: str, *, scheme: AuthScheme | None = None) -> bool:
        await self._request(
            "PATCH",
            f"/conversations/{conversation_id}",
            scheme=scheme,
            json={"archived": True},
        )
        return True
