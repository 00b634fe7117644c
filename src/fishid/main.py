"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fishid.api.middleware import fishid_error_handler
from fishid.api.routes import router
from fishid.capture.backend import OpenCvCameraBackend
from fishid.capture.controller import CaptureController
from fishid.config import Settings, get_settings
from fishid.errors import FishIdError, ModelLoadError
from fishid.media.ingest import ImageIngestPipeline
from fishid.ml.inference import InferencePool
from fishid.ml.model_manager import OnnxModelManager
from fishid.ml.orchestrator import InferenceOrchestrator
from fishid.ml.translation import TranslationTable
from fishid.offline.cache_agent import OfflineCacheAgent, OfflineCacheTransport

logger = logging.getLogger(__name__)


def build_http_client(settings: Settings) -> tuple[httpx.AsyncClient, OfflineCacheAgent | None]:
    """Create the shared HTTP client, behind the offline cache when enabled."""
    network = httpx.AsyncHTTPTransport()
    if not settings.offline_cache_enabled:
        return httpx.AsyncClient(transport=network), None
    agent = OfflineCacheAgent(settings, network, log=logging.getLogger("fishid.offline"))
    return httpx.AsyncClient(transport=OfflineCacheTransport(agent)), agent


def load_translations(settings: Settings) -> TranslationTable:
    if settings.translations_path:
        return TranslationTable.from_file(settings.translations_path)
    return TranslationTable()


async def _load_model(manager: OnnxModelManager) -> None:
    try:
        await manager.load()
    except ModelLoadError:
        logger.warning("Model unavailable until reloaded via /api/v1/model/reload")


async def _start_cache_agent(agent: OfflineCacheAgent) -> None:
    if await agent.start():
        logger.info("Offline cache %s active", agent.cache_name)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FishID (device=%s, assets=%s, camera=%s, offline_cache=%s)",
        settings.device,
        settings.asset_base_url,
        settings.camera_enabled,
        settings.offline_cache_enabled,
    )

    inference_pool = InferencePool(settings)
    client, cache_agent = build_http_client(settings)
    model_manager = OnnxModelManager(settings, client, inference_pool)
    pipeline = ImageIngestPipeline(settings, inference_pool)
    capture_controller = CaptureController(settings, inference_pool, pipeline, OpenCvCameraBackend(settings))
    orchestrator = InferenceOrchestrator(settings, model_manager, load_translations(settings))

    app.state.inference_pool = inference_pool
    app.state.http_client = client
    app.state.cache_agent = cache_agent
    app.state.model_manager = model_manager
    app.state.ingest_pipeline = pipeline
    app.state.capture_controller = capture_controller
    app.state.orchestrator = orchestrator

    background = [asyncio.create_task(_load_model(model_manager), name="model-load")]
    if cache_agent is not None:
        background.append(asyncio.create_task(_start_cache_agent(cache_agent), name="offline-cache"))
    app.state.background_tasks = background

    logger.info("FishID ready (camera supported: %s)", capture_controller.camera_supported)
    yield

    logger.info("Shutting down FishID")
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    capture_controller.stop_capture()
    model_manager.shutdown()
    await client.aclose()
    inference_pool.shutdown()
    logger.info("FishID shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FishID",
        description="On-device fish species identification from photos and camera snapshots",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(FishIdError, fishid_error_handler)  # type: ignore[arg-type]
    application.include_router(router)
    return application


app = create_app()
