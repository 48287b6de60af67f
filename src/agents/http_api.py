from __future__ import annotations

import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware import Middleware

from src.agencies.spruce_agency import SpruceAgency
from src.pipelines.history import HistoryUnavailableError
from src.schemas.models import (
    ArchiveResponse,
    CacheStatusResponse,
    ConversationSummary,
    HistoryClearResponse,
    HistoryInvalidateResponse,
    Message,
    SyncResponse,
    UpdatesResponse,
)
from src.utils.env import load_env_file
from src.utils.logging import get_logger
from src.utils.observability import get_metrics
from src.utils.spruce import SpruceAPIError, SpruceConfigError

load_env_file()

raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
raw_credentials = os.getenv("CORS_ALLOW_CREDENTIALS", "true")

if raw_origins.strip() == "*":
    cors_origins = ["*"]
else:
    cors_origins = [entry.strip() for entry in raw_origins.split(",") if entry.strip()]

cors_allow_credentials = raw_credentials.strip().lower() in {"1", "true", "yes"}

if cors_origins == ["*"] and cors_allow_credentials:
    cors_allow_credentials = False

cors_middleware = Middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

log = get_logger(__name__)

AgencyFactory = Callable[[], SpruceAgency]

router = APIRouter(prefix="/api")


def get_agency(request: Request) -> SpruceAgency:
    agency = getattr(request.app.state, "agency", None)
    if agency is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return agency


def _upstream_failure(error: str, exc: Exception) -> HTTPException:
    status_code = 500 if isinstance(exc, SpruceConfigError) else 502
    return HTTPException(status_code=status_code, detail={"error": error, "details": str(exc)})


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    q: str | None = Query(default=None, description="Filter by patient name or last message"),
    agency: SpruceAgency = Depends(get_agency),
) -> List[ConversationSummary]:
    try:
        return await agency.list_conversations(q)
    except (SpruceAPIError, SpruceConfigError) as exc:
        raise _upstream_failure("Failed to fetch conversations", exc) from exc


@router.get("/conversations/{conversation_id}", response_model=ConversationSummary)
async def conversation_detail(
    conversation_id: str,
    refresh: bool = Query(default=False, description="Re-read the conversation from Spruce"),
    agency: SpruceAgency = Depends(get_agency),
) -> ConversationSummary:
    try:
        summary = await agency.get_conversation(conversation_id, refresh=refresh)
    except (SpruceAPIError, SpruceConfigError) as exc:
        raise _upstream_failure("Failed to fetch conversation", exc) from exc
    if summary is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return summary


@router.post("/sync", response_model=SyncResponse)
async def sync_conversations(agency: SpruceAgency = Depends(get_agency)) -> SyncResponse:
    try:
        result = await agency.sync()
    except (SpruceAPIError, SpruceConfigError) as exc:
        raise _upstream_failure("Sync failed", exc) from exc
    return SyncResponse(success=True, count=result.count, pages=result.pages, synced_at=result.synced_at)


@router.get("/updates", response_model=UpdatesResponse)
async def recent_updates(
    since: str | None = Query(default=None, description="ISO timestamp watermark"),
    agency: SpruceAgency = Depends(get_agency),
) -> UpdatesResponse:
    try:
        result = await agency.updates(since)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (SpruceAPIError, SpruceConfigError) as exc:
        raise _upstream_failure("Update failed", exc) from exc
    return UpdatesResponse(count=result.count, conversations=result.conversations)


@router.get("/history/{conversation_id}", response_model=List[Message])
async def conversation_history(
    conversation_id: str,
    refresh: bool = Query(default=False),
    agency: SpruceAgency = Depends(get_agency),
) -> List[Message]:
    try:
        return await agency.history(conversation_id, refresh=refresh)
    except (HistoryUnavailableError, SpruceConfigError) as exc:
        raise _upstream_failure("Failed to fetch history", exc) from exc


@router.delete("/history", response_model=HistoryClearResponse)
def clear_history(agency: SpruceAgency = Depends(get_agency)) -> HistoryClearResponse:
    return HistoryClearResponse(removed=agency.clear_history())


@router.delete("/history/{conversation_id}", response_model=HistoryInvalidateResponse)
def invalidate_history(
    conversation_id: str,
    agency: SpruceAgency = Depends(get_agency),
) -> HistoryInvalidateResponse:
    removed = agency.invalidate_history(conversation_id)
    return HistoryInvalidateResponse(conversation_id=conversation_id, removed=removed)


@router.post("/archive/{conversation_id}", response_model=ArchiveResponse)
async def archive_conversation(
    conversation_id: str,
    agency: SpruceAgency = Depends(get_agency),
) -> ArchiveResponse:
    try:
        success = await agency.archive(conversation_id)
    except (SpruceAPIError, SpruceConfigError) as exc:
        raise _upstream_failure("Archive failed", exc) from exc
    return ArchiveResponse(success=success)


@router.get("/status", response_model=CacheStatusResponse)
def cache_status(agency: SpruceAgency = Depends(get_agency)) -> CacheStatusResponse:
    return agency.status()


@router.get("/metrics")
def metrics_snapshot():
    return get_metrics().snapshot()


def create_app(agency_factory: AgencyFactory | None = None) -> FastAPI:
    factory = agency_factory or SpruceAgency.from_env

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        agency = factory()
        agency.init()
        app.state.agency = agency
        try:
            yield
        finally:
            await agency.shutdown()
            app.state.agency = None

    app = FastAPI(title="Spruce Sync API", version="0.1.0", middleware=[cors_middleware], lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        metrics = get_metrics()
        request_id = uuid.uuid4().hex
        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            metrics.record(request.url.path, duration_ms)
            log.error(
                "api_request_failed",
                path=request.url.path,
                duration_ms=duration_ms,
                request_id=request_id,
                error=str(exc),
            )
            raise
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record(request.url.path, duration_ms)
        log.info(
            "api_request",
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(router)
    return app


app = create_app()
