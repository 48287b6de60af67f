from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from src.utils.logging import get_logger
from src.utils.observability import get_metrics
from src.utils.settings import AuthScheme, SpruceSettings
from src.utils.spruce import SpruceAPIError, SpruceClient

log = get_logger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SpruceAPIError) and exc.retryable


class _BackoffWait:
    """Exponential backoff that never waits less than an upstream ``Retry-After``."""

    def __init__(self, settings: SpruceSettings) -> None:
        self._max = settings.backoff_max_seconds
        self._exponential = wait_exponential(
            multiplier=1,
            min=settings.backoff_min_seconds,
            max=settings.backoff_max_seconds,
        )

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._exponential(retry_state)
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, SpruceAPIError) and exc.retry_after is not None:
            delay = min(max(delay, exc.retry_after), self._max)
        return delay


async def _with_retries(
    operation: str,
    settings: SpruceSettings,
    request: Callable[[], Awaitable[T]],
) -> T:
    metrics = get_metrics()
    async for attempt in AsyncRetrying(
        wait=_BackoffWait(settings),
        stop=stop_after_attempt(settings.max_attempts),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    ):
        attempt_number = attempt.retry_state.attempt_number
        if attempt_number > 1:
            metrics.increment_counter(f"{operation}::retry")
            log.warning(
                "spruce_upstream_retry",
                operation=operation,
                attempt=attempt_number,
                idle_for=attempt.retry_state.idle_for,
                max_attempts=settings.max_attempts,
            )
        with attempt:
            result = await request()
    return result


def _other_scheme(scheme: AuthScheme) -> AuthScheme:
    return "bearer" if scheme == "basic" else "basic"


async def call_upstream(
    operation: str,
    client: SpruceClient,
    request: Callable[[AuthScheme], Awaitable[T]],
    *,
    scheme: AuthScheme | None = None,
) -> T:
    """Run one upstream request with bounded retries.

    A scheme with no configured credentials is swapped for the other one up
    front. If the upstream rejects the credentials of ``scheme`` and the client
    has a different usable scheme, the request is repeated once with that
    scheme.
    """

    settings = client.settings
    scheme = scheme or client.primary_scheme
    alternate = _other_scheme(scheme)
    if not client.supports(scheme) and client.supports(alternate):
        log.warning("spruce_auth_scheme_unconfigured", operation=operation, missing=scheme, using=alternate)
        get_metrics().increment_counter(f"{operation}::auth_unconfigured")
        scheme, alternate = alternate, scheme
    try:
        return await _with_retries(operation, settings, lambda: request(scheme))
    except SpruceAPIError as exc:
        if not exc.auth_rejected or not client.supports(alternate):
            raise
        log.warning(
            "spruce_auth_scheme_fallback",
            operation=operation,
            rejected=scheme,
            fallback=alternate,
            status=exc.status_code,
        )
        get_metrics().increment_counter(f"{operation}::auth_fallback")
        return await _with_retries(operation, settings, lambda: request(alternate))
