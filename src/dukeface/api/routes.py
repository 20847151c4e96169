"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.responses import PlainTextResponse, Response

from dukeface.api.middleware import verify_api_key
from dukeface.api.schemas import AcceptedResponse, ErrorResponse, HealthResponse
from dukeface.messaging.listeners import FACE_CONVERTER_DESTINATION, HELLO_DESTINATION

if TYPE_CHECKING:
    from dukeface.config import Settings
    from dukeface.messaging.broker import MessageBroker
    from dukeface.ml.inference import InferencePool
    from dukeface.ml.pipeline import ImagePipeline

root_router = APIRouter()
router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> ImagePipeline:
    pipeline: ImagePipeline = request.app.state.pipeline
    return pipeline


def _get_broker(request: Request) -> MessageBroker:
    broker: MessageBroker = request.app.state.broker
    return broker


async def _read_upload(file: UploadFile, max_size: int) -> bytes:
    data = await file.read(max_size + 1)
    if len(data) > max_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {max_size} bytes",
        )
    return data


@root_router.get("/", response_class=PlainTextResponse, summary="Hello")
async def hello() -> str:
    return "Hello World!"


@router.post(
    "/duker",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/png": {}, "image/jpeg": {}}},
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Mask every face in an image",
)
async def duker(request: Request, file: UploadFile) -> Response:
    """Draw the Duke mask over each detected face and return the image."""
    settings = _get_settings(request)
    data = await _read_upload(file, settings.max_file_size)

    try:
        result = await _get_inference_pool(request).run(_get_pipeline(request).render, data)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server busy, try again later",
        ) from None

    return Response(
        content=result.data,
        media_type=result.media_type,
        headers={"X-Faces-Detected": str(result.faces)},
    )


@router.get(
    "/send",
    response_model=AcceptedResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Send a text message to the hello listener",
)
async def send(request: Request, msg: str) -> AcceptedResponse:
    message_id = _get_broker(request).send(HELLO_DESTINATION, msg)
    return AcceptedResponse(destination=HELLO_DESTINATION, message_id=message_id)


@router.post(
    "/queue",
    response_model=AcceptedResponse,
    responses={
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Queue an image for background masking",
)
async def queue(request: Request, file: UploadFile) -> AcceptedResponse:
    """Hand the image to the faceConverter listener and return immediately."""
    settings = _get_settings(request)
    data = await _read_upload(file, settings.max_file_size)

    message_id = _get_broker(request).send(
        FACE_CONVERTER_DESTINATION,
        data,
        headers={"filename": file.filename or ""},
    )
    return AcceptedResponse(destination=FACE_CONVERTER_DESTINATION, message_id=message_id)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_inference_pool(request)
    detector_loaded = _get_pipeline(request).detector.is_loaded
    return HealthResponse(
        status="ok" if detector_loaded else "degraded",
        detector_loaded=detector_loaded,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        pending_messages=_get_broker(request).pending(),
    )
