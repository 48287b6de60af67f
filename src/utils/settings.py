from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from src.utils.env import read_str_env
from src.utils.logging import get_logger

log = get_logger(__name__)

AuthScheme = Literal["basic", "bearer"]

DEFAULT_BASE = "https://api.sprucehealth.com/v1"
DEFAULT_CACHE_DIR = Path("assets/data/spruce")
# base64("aid_...") always starts with this prefix
BASIC_TOKEN_PREFIX = "YWlk"
AUTH_SCHEMES: tuple[AuthScheme, ...] = ("basic", "bearer")


def _get_float_env(name: str, default: float, *, allow_zero: bool = False) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        log.warning("spruce_invalid_float_env", name=name, value=value)
        return default
    if parsed > 0 or (allow_zero and parsed == 0):
        return parsed
    return default


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        log.warning("spruce_invalid_int_env", name=name, value=value)
        return default
    return parsed if parsed > 0 else default


def is_prebuilt_basic_token(api_key: str | None) -> bool:
    return bool(api_key) and api_key.startswith(BASIC_TOKEN_PREFIX)


def resolve_auth_scheme(
    access_id: str | None,
    api_key: str | None,
    bearer_token: str | None,
    override: str | None = None,
) -> AuthScheme:
    """Pick the primary auth scheme once, from the shape of the configured credentials.

    An explicit override always wins. Otherwise a usable Basic credential (an
    access id + api key pair, or an api key that is already a base64 Basic
    token) selects ``basic``; a lone bearer token selects ``bearer``.
    """

    if override:
        candidate = override.strip().lower()
        if candidate in AUTH_SCHEMES:
            return candidate  # type: ignore[return-value]
        log.warning("spruce_auth_scheme_invalid", value=override)
    if is_prebuilt_basic_token(api_key) or (access_id and api_key):
        return "basic"
    if bearer_token:
        return "bearer"
    return "basic"


@dataclass(frozen=True)
class SpruceSettings:
    base_url: str = DEFAULT_BASE
    access_id: str | None = None
    api_key: str | None = None
    bearer_token: str | None = None
    auth_scheme: AuthScheme = "basic"
    timeout_seconds: float = 30.0
    cache_dir: Path = field(default=DEFAULT_CACHE_DIR)
    message_ttl_seconds: float = 300.0
    max_attempts: int = 3
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 8.0

    @property
    def conversations_path(self) -> Path:
        return self.cache_dir / "conversations_cache.json"

    @property
    def messages_dir(self) -> Path:
        return self.cache_dir / "messages_cache"

    @property
    def message_ttl_ms(self) -> int:
        return int(self.message_ttl_seconds * 1000)

    @classmethod
    def from_env(cls) -> "SpruceSettings":
        access_id = read_str_env("SPRUCE_ACCESS_ID")
        api_key = read_str_env("SPRUCE_API_KEY")
        bearer_token = read_str_env("SPRUCE_BEARER_TOKEN") or api_key
        scheme = resolve_auth_scheme(
            access_id,
            api_key,
            bearer_token,
            override=read_str_env("SPRUCE_AUTH_SCHEME"),
        )
        return cls(
            base_url=(read_str_env("SPRUCE_BASE") or DEFAULT_BASE).rstrip("/"),
            access_id=access_id,
            api_key=api_key,
            bearer_token=bearer_token,
            auth_scheme=scheme,
            timeout_seconds=_get_float_env("SPRUCE_TIMEOUT_SECONDS", 30.0),
            cache_dir=Path(read_str_env("SPRUCE_CACHE_DIR") or DEFAULT_CACHE_DIR),
            message_ttl_seconds=_get_float_env("MESSAGE_CACHE_TTL_SECONDS", 300.0),
            max_attempts=_get_int_env("SPRUCE_SYNC_MAX_ATTEMPTS", 3),
            backoff_min_seconds=_get_float_env("SPRUCE_SYNC_BACKOFF_MIN_SECONDS", 1.0, allow_zero=True),
            backoff_max_seconds=_get_float_env("SPRUCE_SYNC_BACKOFF_MAX_SECONDS", 8.0, allow_zero=True),
        )
