"""
Radarloop Main Application
==========================

FastAPI entry point exposing the radar frame pipeline to renderers.

Endpoints:
    GET  /                        - Service information
    GET  /health                  - Liveness probe (is process alive?)
    GET  /ready                   - Readiness probe (at least one frame loaded?)
    GET  /status                  - Renderer snapshot
    GET  /frames/current          - Current image bytes
    GET  /frames/{index}          - Image at a Loaded View index
    POST /frames/select/{index}   - Scrub to a Loaded View index
    POST /frames/next             - Step toward the newest frame
    POST /frames/previous         - Step toward older frames
    POST /refresh                 - Start a new round (?force=true cancels in-flight work)
    POST /interval/{minutes}      - Change the observed frame interval
    POST /animation/start         - Start forward playback
    POST /animation/stop          - Stop playback
    GET  /metrics                 - Pipeline, fetch and cache metrics
    WS   /ws/status               - Real-time snapshot stream
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from radarloop.cache import CacheStore
from radarloop.config import Settings, settings
from radarloop.fetch import FetchClient, RadarUrlBuilder
from radarloop.pipeline import AsyncioScheduler, PipelineOrchestrator, Scheduler
from radarloop.sequence import FrameRecord, FrameSequence


logger = logging.getLogger(__name__)

SERVICE_VERSION = "0.1.0"

# Idle interval between pushed snapshots on /ws/status
STATUS_HEARTBEAT_SECONDS = 15.0


# =============================================================================
# Global State
# =============================================================================

_cache: Optional[CacheStore] = None
_client: Optional[FetchClient] = None
_orchestrator: Optional[PipelineOrchestrator] = None
_startup_time: float = time.time()


# =============================================================================
# Getters
# =============================================================================

def get_orchestrator() -> Optional[PipelineOrchestrator]:
    return _orchestrator

def get_fetch_client() -> Optional[FetchClient]:
    return _client

def get_cache() -> Optional[CacheStore]:
    return _cache


def _require_orchestrator() -> PipelineOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return _orchestrator


# =============================================================================
# Pipeline Factory
# =============================================================================

def create_cache(config: Settings) -> Optional[CacheStore]:
    """Create the image cache, or None when disabled."""
    if not config.cache.enabled:
        logger.info("Image cache disabled")
        return None
    return CacheStore(
        Path(config.cache.directory),
        max_size_bytes=config.cache.max_size_bytes,
        max_age=timedelta(days=config.cache.max_age_days),
    )


def create_orchestrator(
    config: Settings,
    cache: Optional[CacheStore] = None,
    scheduler: Optional[Scheduler] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> PipelineOrchestrator:
    """
    Wire Fetch Client, Frame Sequence and Orchestrator from settings.

    Args:
        config: Loaded settings
        cache: Cache Store (None to always hit the network)
        scheduler: Clock and timers (event loop scheduler if None)
        http_client: Shared httpx client (created by the Fetch Client if None)
    """
    urls = RadarUrlBuilder(
        base_url=config.radar.base_url,
        forecast_base_url=config.radar.forecast_base_url,
        quality=config.radar.image_quality,
    )
    client = FetchClient(
        urls,
        cache=cache,
        http_client=http_client,
        timeout=config.radar.request_timeout_seconds,
    )
    sequence = FrameSequence(
        observed_max_attempts=config.retry.observed_max_attempts,
        forecast_max_attempts=config.retry.forecast_max_attempts,
    )
    return PipelineOrchestrator(
        sequence,
        client,
        scheduler or AsyncioScheduler(),
        options=config.pipeline_options(),
    )


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager with graceful shutdown."""
    global _cache, _client, _orchestrator, _startup_time

    _startup_time = time.time()
    logger.info(f"Starting radarloop {SERVICE_VERSION}")
    logger.info(f"Radar server: {settings.radar.base_url} (quality={settings.radar.image_quality.value})")

    _cache = create_cache(settings)
    _orchestrator = create_orchestrator(settings, cache=_cache)
    _client = _orchestrator.client
    _orchestrator.start()

    yield

    logger.info("Shutting down gracefully...")

    await _orchestrator.aclose()
    await _client.aclose()
    if _cache is not None:
        await _cache.aclose()

    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="radarloop",
    description="Radar frame acquisition and sequencing pipeline",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# =============================================================================
# HTTP Endpoints
# =============================================================================

@app.get("/")
async def root() -> JSONResponse:
    """Service information endpoint."""
    return JSONResponse({
        "service": "radarloop",
        "version": SERVICE_VERSION,
        "status": "running",
        "radar_base_url": settings.radar.base_url,
        "image_quality": settings.radar.image_quality.value,
        "forecast_enabled": settings.sequence.forecast_enabled,
    })


@app.get("/health")
async def health() -> JSONResponse:
    """
    Liveness probe - is the process alive?

    Always returns 200 if the service is running.
    """
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": round(time.time() - _startup_time, 1),
    })


@app.get("/ready")
async def ready() -> JSONResponse:
    """
    Readiness probe - can renderers show something?

    Returns 200 once at least one frame is loaded, 503 otherwise.
    """
    orchestrator = get_orchestrator()
    loaded = orchestrator.sequence.loaded_count if orchestrator else 0

    if loaded > 0:
        return JSONResponse({"status": "ready", "loaded_count": loaded})
    return JSONResponse(
        {
            "status": "not_ready",
            "loaded_count": loaded,
            "is_loading": orchestrator.is_loading if orchestrator else False,
            "error_message": orchestrator.error_message if orchestrator else None,
        },
        status_code=503,
    )


@app.get("/status")
async def status() -> JSONResponse:
    """Renderer snapshot."""
    orchestrator = _require_orchestrator()
    return JSONResponse(orchestrator.snapshot().model_dump(mode="json"))


def _image_response(record: Optional[FrameRecord]) -> Response:
    if record is None or record.image is None:
        raise HTTPException(status_code=404, detail="No radar image available")
    return Response(
        content=record.image,
        media_type="image/png",
        headers={
            "X-Radar-Timestamp": record.timestamp.isoformat(),
            "X-Radar-Forecast": "true" if record.is_forecast else "false",
            "X-Radar-Key": record.key.cache_key,
        },
    )


@app.get("/frames/current")
async def current_frame() -> Response:
    """Image bytes of the current frame."""
    orchestrator = _require_orchestrator()
    return _image_response(orchestrator.sequence.current_record)


@app.get("/frames/{index}")
async def frame_at(index: int) -> Response:
    """Image bytes at a Loaded View index."""
    orchestrator = _require_orchestrator()
    view = orchestrator.sequence.loaded_view
    if not 0 <= index < len(view):
        raise HTTPException(status_code=404, detail=f"No loaded frame at index {index}")
    return _image_response(view[index])


@app.post("/frames/select/{index}")
async def select_frame(index: int) -> JSONResponse:
    """Scrub to a Loaded View index."""
    orchestrator = _require_orchestrator()
    if not orchestrator.select(index):
        raise HTTPException(status_code=404, detail=f"No loaded frame at index {index}")
    return JSONResponse(orchestrator.snapshot().model_dump(mode="json"))


@app.post("/frames/next")
async def next_frame() -> JSONResponse:
    orchestrator = _require_orchestrator()
    orchestrator.next_frame()
    return JSONResponse(orchestrator.snapshot().model_dump(mode="json"))


@app.post("/frames/previous")
async def previous_frame() -> JSONResponse:
    orchestrator = _require_orchestrator()
    orchestrator.previous_frame()
    return JSONResponse(orchestrator.snapshot().model_dump(mode="json"))


@app.post("/refresh")
async def refresh(force: bool = False) -> JSONResponse:
    """Start a new round."""
    orchestrator = _require_orchestrator()
    started = orchestrator.refresh(force=force)
    return JSONResponse({"started": started, "force": force})


@app.post("/interval/{minutes}")
async def set_interval(minutes: int) -> JSONResponse:
    """Change the observed frame interval and restart the round."""
    orchestrator = _require_orchestrator()
    try:
        orchestrator.set_interval(minutes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return JSONResponse({"interval_minutes": orchestrator.interval_minutes})


@app.post("/animation/start")
async def start_animation() -> JSONResponse:
    orchestrator = _require_orchestrator()
    started = orchestrator.start_animation()
    if not started:
        return JSONResponse(
            {"animating": False, "reason": "At least 2 loaded frames are required"},
            status_code=409,
        )
    return JSONResponse({"animating": True, "current_index": orchestrator.sequence.current_index})


@app.post("/animation/stop")
async def stop_animation() -> JSONResponse:
    orchestrator = _require_orchestrator()
    orchestrator.stop_animation()
    return JSONResponse({"animating": False, "current_index": orchestrator.sequence.current_index})


@app.get("/metrics")
async def metrics() -> JSONResponse:
    """Detailed metrics for observability."""
    orchestrator = get_orchestrator()
    client = get_fetch_client()
    cache = get_cache()

    pipeline_metrics = orchestrator.metrics.to_dict() if orchestrator else {}
    fetch_metrics = client.metrics.to_dict() if client else {}
    if client:
        fetch_metrics["in_flight"] = client.in_flight_count

    cache_metrics = {}
    if cache is not None:
        try:
            cache_metrics = {"size_bytes": await cache.size_bytes()}
        except (OSError, RuntimeError) as e:
            logger.warning(f"Failed to read cache size: {e}")

    return JSONResponse({
        "uptime_seconds": round(time.time() - _startup_time, 1),
        "loaded_count": orchestrator.sequence.loaded_count if orchestrator else 0,
        "pipeline": pipeline_metrics,
        "fetch": fetch_metrics,
        "cache": cache_metrics,
    })


# =============================================================================
# WebSocket Endpoints
# =============================================================================

@app.websocket("/ws/status")
async def status_stream(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for renderer snapshots.

    A snapshot is pushed on connect and after every sequence change, with a
    heartbeat snapshot when nothing changes for STATUS_HEARTBEAT_SECONDS.
    Listeners run on the event loop, the same thread that mutates the
    sequence.
    """
    await websocket.accept()
    orchestrator = get_orchestrator()
    if orchestrator is None:
        await websocket.close(code=1013, reason="Pipeline not running")
        return

    logger.info("Client connected to /ws/status")
    changed = asyncio.Event()
    unsubscribe = orchestrator.sequence.subscribe(lambda _: changed.set())
    receiver = asyncio.create_task(websocket.receive())

    try:
        while True:
            changed.clear()
            await websocket.send_json(orchestrator.snapshot().model_dump(mode="json"))

            waiter = asyncio.create_task(changed.wait())
            done, _ = await asyncio.wait(
                {waiter, receiver},
                timeout=STATUS_HEARTBEAT_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            waiter.cancel()

            if receiver in done:
                if receiver.result()["type"] == "websocket.disconnect":
                    break
                # Client messages are ignored
                receiver = asyncio.create_task(websocket.receive())
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"WebSocket error: {e}")
    finally:
        unsubscribe()
        receiver.cancel()
        logger.info("Client disconnected from /ws/status")


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    # Cloud Run uses PORT env var
    port = int(os.environ.get("PORT", settings.server.port))

    uvicorn.run(
        "radarloop.main:app",
        host=settings.server.host,
        port=port,
        reload=False,
    )
