from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .adapters.synology import ProxyError
from .adapters.synology.catalog import DEFAULT_PROXY_ROUTE
from .adapters.synology.proxy import DEFAULT_CONTENT_TYPE
from .domain.models import RefreshOutcome
from .pipeline import PhotoPipeline
from .scheduler import RefreshScheduler
from .settings import AppSettings, load_settings

LOGGER = logging.getLogger(__name__)


def _get_pipeline(request: Request) -> PhotoPipeline:
    return request.app.state.pipeline


def _get_scheduler(request: Request) -> RefreshScheduler:
    return request.app.state.scheduler


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _log_outcome(outcome: RefreshOutcome) -> None:
    if outcome.catalog is not None:
        LOGGER.info("Published photo catalog with %d photos", outcome.catalog.count)
    else:
        LOGGER.warning("Photo refresh error published: %s", outcome.error)


def _photos_payload(pipeline: PhotoPipeline) -> dict[str, Any]:
    catalog = pipeline.catalog
    return {
        "photos": [photo.model_dump(mode="json") for photo in catalog.photos],
        "count": catalog.count,
        "error": pipeline.last_error,
        "refreshed_at_utc": _isoformat(catalog.refreshed_at),
    }


def create_app(
    *,
    settings_loader: Callable[[], AppSettings] = load_settings,
    pipeline_factory: Callable[[AppSettings], PhotoPipeline] = PhotoPipeline.from_settings,
    refresh_on_startup: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        settings = settings_loader()
        pipeline = pipeline_factory(settings)
        pipeline.subscribe(_log_outcome)
        scheduler = RefreshScheduler.from_settings(pipeline, settings)
        scheduler.start()
        if refresh_on_startup:
            scheduler.schedule_now()

        application.state.settings = settings
        application.state.pipeline = pipeline
        application.state.scheduler = scheduler
        application.state.started_at_utc = datetime.now(timezone.utc)

        try:
            yield
        finally:
            scheduler.shutdown()
            await pipeline.aclose()

    application = FastAPI(title="Synology Photos Slideshow", version="0.1.0", lifespan=lifespan)

    @application.get("/health", response_class=JSONResponse)
    async def health(request: Request) -> JSONResponse:
        pipeline = _get_pipeline(request)
        scheduler = _get_scheduler(request)
        candidate = pipeline.candidate
        return JSONResponse(
            {
                "status": "ok",
                "service": "synology-photos-slideshow",
                "environment": request.app.state.settings.env.slideshow_env,
                "scheduler_running": scheduler.running,
                "next_refresh_utc": _isoformat(scheduler.next_run_time),
                "fetching": pipeline.is_fetching,
                "candidate": candidate.label if candidate is not None else None,
                "session_active": pipeline.sessions.current is not None,
                "photo_count": pipeline.catalog.count,
                "last_error": pipeline.last_error,
                "timestamp_utc": datetime.now(timezone.utc).isoformat(),
            }
        )

    @application.get("/api/photos", response_class=JSONResponse)
    async def photos(request: Request) -> JSONResponse:
        return JSONResponse(_photos_payload(_get_pipeline(request)))

    @application.post("/api/photos/refresh", response_class=JSONResponse)
    async def refresh_photos(request: Request) -> JSONResponse:
        outcome = await _get_scheduler(request).trigger()
        payload = _photos_payload(_get_pipeline(request))
        payload["ran"] = outcome is not None
        return JSONResponse(payload)

    @application.get(DEFAULT_PROXY_ROUTE)
    async def proxy_thumbnail(request: Request, url: str | None = Query(default=None)) -> StreamingResponse:
        pipeline = _get_pipeline(request)
        try:
            upstream = await pipeline.proxy.open(url)
        except ProxyError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
        except Exception as exc:  # pragma: no cover - defensive fallback
            LOGGER.exception("Thumbnail proxy failed")
            raise HTTPException(status_code=502, detail="Proxy error") from exc

        return StreamingResponse(
            upstream.aiter_bytes(),
            media_type=upstream.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
            headers={"Cache-Control": pipeline.proxy.cache_control},
            background=BackgroundTask(upstream.aclose),
        )

    return application


app = create_app()
