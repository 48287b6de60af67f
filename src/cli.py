from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict

import yaml
import uvicorn

from src.agencies.spruce_agency import SpruceAgency
from src.utils.env import load_env_file
from src.utils.logging import get_logger

load_env_file()
log = get_logger(__name__)

_SPRUCE_ENV_MAP = {
    "base": "SPRUCE_BASE",
    "access_id": "SPRUCE_ACCESS_ID",
    "api_key": "SPRUCE_API_KEY",
    "bearer_token": "SPRUCE_BEARER_TOKEN",
    "auth_scheme": "SPRUCE_AUTH_SCHEME",
    "timeout_seconds": "SPRUCE_TIMEOUT_SECONDS",
    "cache_dir": "SPRUCE_CACHE_DIR",
    "max_attempts": "SPRUCE_SYNC_MAX_ATTEMPTS",
    "backoff_min_seconds": "SPRUCE_SYNC_BACKOFF_MIN_SECONDS",
    "backoff_max_seconds": "SPRUCE_SYNC_BACKOFF_MAX_SECONDS",
}


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    spruce_cfg = config.get("spruce", {}) or {}
    for key, env_var in _SPRUCE_ENV_MAP.items():
        value = spruce_cfg.get(key)
        if value is None or value == "":
            continue
        if key in {"api_key", "bearer_token"}:
            log.warning("config_secret_in_yaml", key=key, msg="Prefer .env for Spruce credentials")
        os.environ[env_var] = str(value)

    cache_cfg = config.get("cache", {}) or {}
    if ttl := cache_cfg.get("message_ttl_seconds"):
        os.environ["MESSAGE_CACHE_TTL_SECONDS"] = str(ttl)


def _build_agency() -> SpruceAgency:
    agency = SpruceAgency.from_env()
    agency.init()
    return agency


def cmd_sync(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    agency = _build_agency()

    async def run() -> None:
        try:
            result = await agency.sync()
        finally:
            await agency.shutdown()
        log.info("sync_complete", count=result.count, pages=result.pages)
        print(f"Synced {result.count} conversations in {result.pages} page(s).")

    asyncio.run(run())


def cmd_updates(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    agency = _build_agency()

    async def run() -> None:
        try:
            result = await agency.updates(args.since)
        finally:
            await agency.shutdown()
        print(f"{result.count} changed conversation(s)")
        for summary in result.conversations:
            print(f" - {summary.id} | {summary.patient_name} | {summary.updated_at} | {summary.last_message}")

    asyncio.run(run())


def cmd_history(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    agency = _build_agency()

    async def run() -> None:
        try:
            messages = await agency.history(args.conversation_id, refresh=args.refresh)
        finally:
            await agency.shutdown()
        if args.json:
            print(json.dumps([message.to_json_dict() for message in messages], ensure_ascii=False, indent=2))
            return
        if not messages:
            print("No messages.")
            return
        for message in messages:
            marker = " (internal)" if message.is_internal_note else ""
            print(f"[{message.timestamp}] {message.sender_name}{marker}: {message.content}")
            for url in message.media or []:
                print(f"    media: {url}")

    asyncio.run(run())


def cmd_clear_history(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    agency = _build_agency()
    removed = agency.clear_history()
    print(f"Removed {removed} cached message history file(s).")


def cmd_status(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    agency = _build_agency()
    status = agency.status()
    print("Conversations cached:", status.conversation_count)
    print("Message histories cached:", status.message_cache_count)
    print("Auth scheme:", status.auth_scheme)


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Spruce conversation sync CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_sync = sub.add_parser("sync", help="Rebuild the conversation cache from Spruce")
    p_sync.set_defaults(func=cmd_sync)

    p_updates = sub.add_parser("updates", help="Poll the most recent conversations and merge changes")
    p_updates.add_argument("--since", help="Only keep conversations active after this ISO timestamp")
    p_updates.set_defaults(func=cmd_updates)

    p_history = sub.add_parser("history", help="Print the message history of one conversation")
    p_history.add_argument("conversation_id")
    p_history.add_argument("--refresh", action="store_true", help="Ignore the freshness window")
    p_history.add_argument("--json", action="store_true", help="Print raw JSON records")
    p_history.set_defaults(func=cmd_history)

    p_clear = sub.add_parser("clear-history", help="Delete every cached message history")
    p_clear.set_defaults(func=cmd_clear_history)

    p_status = sub.add_parser("status", help="Show cache sizes and auth scheme")
    p_status.set_defaults(func=cmd_status)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="src.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=3001)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    config = _load_config(args.config)
    _apply_config(config)
    args.func(args, config)


if __name__ == "__main__":
    main()
