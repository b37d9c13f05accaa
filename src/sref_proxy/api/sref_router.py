from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from sref_proxy.config import Settings
from sref_proxy.services.errors import AdmissionDenied, UpstreamError, ValidationError
from sref_proxy.services.sref_proxy import ProxyResult, SrefProxyService, normalize_request

from .dependencies import get_client_id, get_proxy_service, get_settings

router = APIRouter(prefix="/api", tags=["sref"])
logger = logging.getLogger("sref_proxy.api.sref")

EXPOSED_HEADERS = ("X-Cache", "X-Cache-TTL", "X-Members")


def build_series_headers(result: ProxyResult) -> dict[str, str]:
    headers = {
        "X-Cache": result.cache_status,
        "X-Members": str(result.members),
        "Access-Control-Expose-Headers": ", ".join(EXPOSED_HEADERS),
    }
    if result.ttl_seconds is not None:
        headers["X-Cache-TTL"] = str(int(result.ttl_seconds))
    return headers


@router.get("/sref/{station}/{run}/{parameter}")
async def get_sref_series(
    station: str,
    run: str,
    parameter: str,
    date: Optional[str] = Query(default=None, description="Model run date (YYYY-MM-DD); defaults to today (UTC)"),
    service: SrefProxyService = Depends(get_proxy_service),
    config: Settings = Depends(get_settings),
    client_id: str = Depends(get_client_id),
) -> JSONResponse:
    try:
        request = normalize_request(
            station,
            run,
            parameter,
            date,
            run_codes=config.run_codes,
            parameters=config.parameters,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        result = await service.get_series(request, client_id)
    except AdmissionDenied as exc:
        retry_after = max(1, math.ceil(exc.retry_after))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(retry_after)},
        ) from exc
    except UpstreamError as exc:
        logger.error("%s: %s (attempts=%s)", request.cache_key, exc, exc.attempts)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to fetch from upstream", "details": str(exc)},
        ) from exc

    return JSONResponse(content=result.data, headers=build_series_headers(result))
