from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from sref_proxy.services.sref_proxy import SrefProxyService

from .dependencies import get_proxy_service

router = APIRouter(tags=["meta"])


@router.get("/health")
async def health(request: Request, service: SrefProxyService = Depends(get_proxy_service)) -> Dict[str, Any]:
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    return {
        "status": "ok",
        "version": request.app.state.settings.app_version,
        "cacheSize": len(service.cache),
        "uptime": round(time.monotonic() - started_at, 3),
    }


@router.get("/api/cache-stats")
async def cache_stats(service: SrefProxyService = Depends(get_proxy_service)) -> Dict[str, Any]:
    payload = service.cache.inventory_payload()
    payload["stats"] = dict(service.cache.stats)
    payload["rateLimitDenied"] = service.admission.denied
    payload["inflight"] = service.inflight
    return payload
