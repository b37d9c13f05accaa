from __future__ import annotations

from fastapi import HTTPException, Request, status

from sref_proxy.config import Settings
from sref_proxy.services.sref_proxy import SrefProxyService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_proxy_service(request: Request) -> SrefProxyService:
    service = getattr(request.app.state, "sref_proxy", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Proxy not initialised")
    return service


def get_client_id(request: Request) -> str:
    """Identity used for admission control: the peer address, or the first forwarded hop if trusted."""
    config: Settings = request.app.state.settings
    if config.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
