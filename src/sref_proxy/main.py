from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging, time

from sref_proxy.config import Settings, settings
from sref_proxy.api.health_router import router as health_router
from sref_proxy.api.sref_router import router as sref_router
from sref_proxy.services.cache_snapshot import CacheSnapshot
from sref_proxy.services.sref_proxy import SrefProxyService

logger = logging.getLogger("sref_proxy")
if not logger.handlers:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(config: Settings | None = None, *, service: SrefProxyService | None = None) -> FastAPI:
    cfg = config or settings
    app = FastAPI(title=cfg.app_name, version=cfg.app_version)

    proxy = service or SrefProxyService.from_settings(cfg)
    snapshot: CacheSnapshot | None = None
    if cfg.cache_snapshot_path:
        snapshot = CacheSnapshot(
            proxy.cache,
            cfg.cache_snapshot_path,
            debounce_seconds=cfg.cache_snapshot_debounce_seconds,
        )
        snapshot.attach()

    app.state.settings = cfg
    app.state.sref_proxy = proxy
    app.state.cache_snapshot = snapshot
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["X-Cache", "X-Cache-TTL", "X-Members"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": cfg.app_name, "version": cfg.app_version}

    app.include_router(health_router)
    app.include_router(sref_router)

    @app.on_event("startup")
    async def _startup():
        if snapshot is not None:
            snapshot.load()
        else:
            logger.info("Cache snapshot disabled (set CACHE_SNAPSHOT_PATH to enable).")
        logger.info(
            "SREF proxy ready: ttl=%s max_entries=%s rate_limit=%s/%s per s",
            proxy.ttl_policy.name,
            proxy.cache.max_entries,
            cfg.rate_limit_capacity,
            cfg.rate_limit_refill_per_second,
        )

    @app.on_event("shutdown")
    async def _shutdown():
        await proxy.close()
        if snapshot is not None:
            await snapshot.flush()

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
