"""FastAPI application for triggering feed syncs and reading sync state."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import SyncSettings
from app.ingest.sync import FeedSyncService, build_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = build_service(SyncSettings.from_env())
    app.state.sync_service = service
    try:
        yield
    finally:
        await service.close()


app = FastAPI(title="Feed Sync API", lifespan=lifespan)


class CacheResponse(BaseModel):
    tenant_id: str
    checksum: str
    updated_at: datetime
    payload: dict[str, Any]


def get_service(request: Request) -> FeedSyncService:
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync service not ready")
    return service


def _result_response(data: dict[str, Any], ok: bool) -> JSONResponse:
    return JSONResponse(data, status_code=200 if ok else 422)


@app.post("/sync/due")
async def sync_due(service: FeedSyncService = Depends(get_service)) -> JSONResponse:
    summary = await service.sync_all_due()
    return JSONResponse(summary.as_dict())


@app.post("/sync/all")
async def sync_all(service: FeedSyncService = Depends(get_service)) -> JSONResponse:
    summary = await service.sync_all()
    return JSONResponse(summary.as_dict())


@app.post("/sync/feeds/{feed_id}")
async def sync_feed(feed_id: str, service: FeedSyncService = Depends(get_service)) -> JSONResponse:
    result = await service.sync_by_feed_id(feed_id)
    if result.not_found:
        raise HTTPException(status_code=404, detail=result.error)
    return _result_response(result.as_dict(), result.success)


@app.post("/sync/tenants/{slug}")
async def sync_tenant(slug: str, service: FeedSyncService = Depends(get_service)) -> JSONResponse:
    result = await service.sync_by_tenant_slug(slug)
    if result.not_found:
        raise HTTPException(status_code=404, detail=result.error)
    return _result_response(result.as_dict(), result.success)


@app.get("/stats")
async def stats(service: FeedSyncService = Depends(get_service)) -> JSONResponse:
    return JSONResponse(await service.get_stats())


@app.get("/tenants/{slug}/cache", response_model=CacheResponse)
async def tenant_cache(slug: str, service: FeedSyncService = Depends(get_service)) -> CacheResponse:
    cache = await service.get_tenant_cache(slug)
    if cache is None:
        raise HTTPException(status_code=404, detail="No cache for tenant")
    return CacheResponse(
        tenant_id=cache.tenant_id,
        checksum=cache.checksum,
        updated_at=cache.updated_at,
        payload=cache.payload,
    )
