import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from sref_proxy.config import Settings  # noqa: E402
from sref_proxy.main import create_app  # noqa: E402
from sref_proxy.services.sref_proxy import SrefProxyService  # noqa: E402
from sref_proxy.services.upstream import UpstreamClient  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_plume(members: int = 10, times: Iterable[int] = (0, 3, 6), base: float = 1.0) -> Dict[str, Any]:
    """Raw upstream payload with ``members`` labelled series sharing ``times``."""
    times = list(times)
    return {
        f"M{index:02d}": {"data": [[t, str(base + index)] for t in times]}
        for index in range(members)
    }


class UpstreamStub:
    """httpx handler replaying queued responses and recording requests."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[Any] = []
        self.default: Any = None

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        if item is None:
            return httpx.Response(200, json=make_plume())
        return httpx.Response(200, json=item)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream_stub() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_client(upstream_stub: UpstreamStub, sleeps: list[float]) -> Callable[..., TestClient]:
    clients: list[TestClient] = []

    def _build(**overrides: Any) -> TestClient:
        overrides.setdefault("cache_snapshot_path", None)
        config = Settings(**overrides)

        async def _record_sleep(delay: float) -> None:
            sleeps.append(delay)

        upstream = UpstreamClient(
            base_url=config.upstream_base_url,
            path=config.upstream_path,
            user_agent=config.upstream_user_agent,
            timeout=config.upstream_timeout,
            transport=httpx.MockTransport(upstream_stub),
        )
        service = SrefProxyService.from_settings(config, upstream=upstream, sleep=_record_sleep)
        client = TestClient(create_app(config, service=service))
        client.__enter__()
        clients.append(client)
        return client

    yield _build

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client: Callable[..., TestClient]) -> TestClient:
    return make_client()
