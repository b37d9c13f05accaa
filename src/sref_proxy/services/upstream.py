from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import httpx

from sref_proxy.config import settings
from sref_proxy.services.errors import (
    UpstreamParseError,
    UpstreamStatusError,
    UpstreamTimeout,
    UpstreamTransportError,
)

logger = logging.getLogger("sref_proxy.upstream")

# Connection-level faults worth another attempt; protocol misuse and bad URLs are not.
_TRANSIENT_TRANSPORT_ERRORS = (httpx.NetworkError, httpx.RemoteProtocolError)


def decode_payload(body: str) -> Any:
    """Decode an upstream body that is sometimes JSON-encoded twice.

    The plume service occasionally wraps its JSON document in a JSON string.
    The body is decoded once; if that yields a string, the string is decoded
    again.
    """
    try:
        decoded = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise UpstreamParseError("Failed to parse upstream response") from exc
    if isinstance(decoded, str):
        try:
            decoded = json.loads(decoded)
        except ValueError as exc:
            raise UpstreamParseError("Failed to parse upstream response") from exc
    return decoded


class UpstreamClient:
    """Single-shot fetcher for one (station, run, parameter, date) plume document."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        path: str | None = None,
        user_agent: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.upstream_base_url).rstrip("/")
        self._path = path or settings.upstream_path
        self._user_agent = user_agent or settings.upstream_user_agent
        self._timeout = timeout if timeout is not None else settings.upstream_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeout(self) -> float:
        return self._timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": self._user_agent,
                "Accept": "application/json",
            }
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def build_params(station: str, run: str, parameter: str, date: str) -> dict[str, str]:
        station = station.upper()
        ymd = date.replace("-", "")
        return {
            "search": f"{station}-{run}-{parameter}",
            "file": f"json_sid/{ymd}_{run}/{station}",
            "mem": ":",
            "means": "",
        }

    async def fetch(self, station: str, run: str, parameter: str, date: str) -> dict[str, Any]:
        client = await self._get_client()
        params = self.build_params(station, run, parameter, date)
        logger.debug("Fetching plume data with params %s", params)
        try:
            # httpx timeouts are per phase; wait_for bounds the whole exchange.
            response = await asyncio.wait_for(client.get(self._path, params=params), timeout=self._timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout("Request timeout") from exc
        except _TRANSIENT_TRANSPORT_ERRORS as exc:
            raise UpstreamTransportError(f"Upstream connection failed: {exc}") from exc
        except httpx.TransportError as exc:
            raise UpstreamTransportError(f"Upstream transport error: {exc}", transient=False) from exc

        if not response.is_success:
            raise UpstreamStatusError(response.status_code)

        payload = decode_payload(response.text)
        if not isinstance(payload, dict):
            raise UpstreamParseError(f"Unexpected upstream payload type {type(payload).__name__}")
        return payload


__all__ = ["UpstreamClient", "decode_payload"]
