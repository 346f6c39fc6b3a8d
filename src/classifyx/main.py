"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classifyx.api.routes import router
from classifyx.config import get_settings
from classifyx.ml.inference import InferencePool
from classifyx.ml.model_manager import TFLiteModelManager

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0


async def _evict_idle_models(manager: TFLiteModelManager) -> None:
    while True:
        await asyncio.sleep(EVICTION_INTERVAL_SECONDS)
        manager.unload_idle_models()


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
        "Starting ClassifyX (model=%s, max_concurrent=%s, top_k=%s, threshold=%s)",
        settings.model_name,
        settings.max_concurrent,
        settings.top_k,
        settings.confidence_threshold,
    )

    inference_pool = InferencePool(settings)
    model_manager = TFLiteModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    eviction = asyncio.create_task(_evict_idle_models(model_manager))

    logger.info("ClassifyX ready")
    yield

    logger.info("Shutting down ClassifyX")
    eviction.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("ClassifyX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ClassifyX",
        description="Image classification inference API for TFLite models",
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

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("classifyx.main:app", host=settings.host, port=settings.port)
