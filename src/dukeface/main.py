"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import Request

    from dukeface.config import Settings
    from dukeface.ml.face_detector import FaceDetector

import uvicorn
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dukeface.api.routes import root_router, router
from dukeface.config import get_settings
from dukeface.errors import (
    DecodeError,
    DetectorUnavailable,
    DukeFaceError,
    EncodeError,
    InvalidInput,
    QueueFullError,
    UnknownDestinationError,
)
from dukeface.messaging.broker import MessageBroker
from dukeface.messaging.listeners import register_listeners
from dukeface.ml.face_detector import CascadeFaceDetector, UnavailableFaceDetector
from dukeface.ml.inference import InferencePool
from dukeface.ml.pipeline import ImagePipeline
from dukeface.ml.preprocessing import ImageCodec

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[DukeFaceError], int] = {
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    DecodeError: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    DetectorUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    EncodeError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    QueueFullError: status.HTTP_503_SERVICE_UNAVAILABLE,
    UnknownDestinationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def load_detector(settings: Settings) -> FaceDetector:
    """Load the configured cascade, or a detector that reports why it could not be loaded."""
    try:
        return CascadeFaceDetector.from_file(
            settings.classifier_file,
            scale_factor=settings.scale_factor,
            min_neighbors=settings.min_neighbors,
            min_face_size=settings.min_face_size,
        )
    except DetectorUnavailable as exc:
        logger.error("Face classifier unavailable: %s", exc)
        return UnavailableFaceDetector(str(exc))


def build_pipeline(settings: Settings, detector: FaceDetector) -> ImagePipeline:
    codec = ImageCodec(
        output_format=settings.output_format,
        jpeg_quality=settings.jpeg_quality,
        max_image_pixels=settings.max_image_pixels,
    )
    return ImagePipeline(detector, codec)


def build_broker(settings: Settings, pipeline: ImagePipeline) -> MessageBroker:
    broker = MessageBroker(
        settings.broker_url,
        queue_prefix=settings.queue_prefix,
        queue_max_size=settings.queue_max_size,
        polling_interval=settings.broker_polling_interval,
    )
    register_listeners(broker, pipeline, concurrency=settings.listener_concurrency)
    return broker


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
        "Starting DukeFace (classifier=%s, max_concurrent=%s, listener_concurrency=%s, output=%s)",
        settings.classifier_file,
        settings.max_concurrent,
        settings.listener_concurrency,
        settings.output_format,
    )

    pipeline = build_pipeline(settings, load_detector(settings))
    inference_pool = InferencePool(settings.max_concurrent)
    broker = build_broker(settings, pipeline)

    app.state.pipeline = pipeline
    app.state.inference_pool = inference_pool
    app.state.broker = broker
    broker.start()

    logger.info("DukeFace ready")
    yield

    logger.info("Shutting down DukeFace")
    await asyncio.to_thread(broker.close)
    inference_pool.shutdown()
    logger.info("DukeFace shutdown complete")


async def _handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="DukeFace",
        description="Draws the Duke mask over faces found in uploaded images",
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

    application.add_exception_handler(DukeFaceError, _handle_domain_error)
    application.include_router(root_router)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using DUKEFACE_HOST / DUKEFACE_PORT."""
    settings = get_settings()
    uvicorn.run("dukeface.main:app", host=settings.host, port=settings.port)
