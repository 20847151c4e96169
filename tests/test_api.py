"""Tests for the DukeFace HTTP API."""

from __future__ import annotations

import io
import os
import uuid
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import cv2
import httpx
import numpy as np
import pytest
from fastapi import FastAPI, status

from dukeface.config import get_settings
from dukeface.main import build_broker, build_pipeline, create_app, load_detector
from dukeface.messaging.broker import MessageBroker
from dukeface.messaging.listeners import FACE_CONVERTER_DESTINATION, HELLO_DESTINATION
from dukeface.ml.face_detector import FaceDetector, Rectangle, UnavailableFaceDetector
from dukeface.ml.inference import InferencePool
from dukeface.ml.overlay import BLACK, WHITE


class FakeDetector:
    def __init__(self, faces: list[Rectangle]) -> None:
        self._faces = faces

    @property
    def is_loaded(self) -> bool:
        return True

    def detect(self, image: np.ndarray) -> list[Rectangle]:
        return list(self._faces)


def _init_app_state(app: FastAPI, detector: FaceDetector | None = None, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env_overrides.setdefault("DUKEFACE_QUEUE_PREFIX", f"test-{uuid.uuid4().hex}")
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    if detector is None:
        detector = FakeDetector([Rectangle(10, 10, 20, 20)])
    app.state.settings = settings
    app.state.pipeline = build_pipeline(settings, detector)
    app.state.inference_pool = InferencePool(settings.max_concurrent)
    app.state.broker = build_broker(settings, app.state.pipeline)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()
    broker: MessageBroker = app.state.broker
    broker.close()


def _png_upload(width: int = 100, height: int = 100) -> tuple[str, io.BytesIO, str]:
    ok, buffer = cv2.imencode(".png", np.full((height, width, 3), 128, dtype=np.uint8))
    assert ok
    return ("face.png", io.BytesIO(buffer.tobytes()), "image/png")


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHelloEndpoint:
    async def test_hello(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/")
        assert response.status_code == status.HTTP_200_OK
        assert response.text == "Hello World!"


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["detector_loaded"] is True
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0
        assert data["pending_messages"] == 0

    async def test_health_degraded_without_classifier(self) -> None:
        degraded_app = create_app()
        _init_app_state(degraded_app, detector=UnavailableFaceDetector("missing"))
        async for ac in _make_client(degraded_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["status"] == "degraded"
            assert response.json()["detector_loaded"] is False


class TestDukerEndpoint:
    async def test_masks_detected_face(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/duker", files={"file": _png_upload()})
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "image/png"
        assert response.headers["x-faces-detected"] == "1"

        image = cv2.imdecode(np.frombuffer(response.content, np.uint8), cv2.IMREAD_COLOR)
        assert image.shape == (100, 100, 3)
        assert tuple(image[14, 12]) == BLACK
        assert tuple(image[26, 12]) == WHITE
        assert tuple(image[60, 60]) == (128, 128, 128)

    async def test_no_faces(self) -> None:
        app = create_app()
        _init_app_state(app, detector=FakeDetector([]))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/duker", files={"file": _png_upload()})
            assert response.status_code == status.HTTP_200_OK
            assert response.headers["x-faces-detected"] == "0"

    async def test_malformed_image_returns_415(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/duker",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
        assert "detail" in response.json()

    async def test_detector_unavailable_returns_503(self) -> None:
        app = create_app()
        _init_app_state(app, detector=UnavailableFaceDetector("classifier missing"))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/duker", files={"file": _png_upload()})
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert response.json()["detail"] == "classifier missing"

    async def test_oversized_upload_returns_413(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/duker", files={"file": _png_upload()})
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE

    async def test_too_many_pixels_returns_400(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_MAX_IMAGE_PIXELS="100")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/duker", files={"file": _png_upload()})
            assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_configured_output_format(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_OUTPUT_FORMAT="jpeg")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/duker", files={"file": _png_upload()})
            assert response.status_code == status.HTTP_200_OK
            assert response.headers["content-type"] == "image/jpeg"


class TestMessagingEndpoints:
    async def test_send_enqueues_hello_message(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/send", params={"msg": "hello duke"})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "OK"
        assert data["destination"] == HELLO_DESTINATION
        assert app.state.broker.pending(HELLO_DESTINATION) == 1

    async def test_send_requires_msg(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/send")
        assert response.status_code == 422

    async def test_queue_enqueues_image(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/queue", files={"file": _png_upload()})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["destination"] == FACE_CONVERTER_DESTINATION
        assert app.state.broker.pending(FACE_CONVERTER_DESTINATION) == 1

    async def test_queue_full_returns_503(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_QUEUE_MAX_SIZE="1")
        async for ac in _make_client(app):
            first = await ac.post("/api/v1/queue", files={"file": _png_upload()})
            second = await ac.post("/api/v1/queue", files={"file": _png_upload()})
            assert first.status_code == status.HTTP_200_OK
            assert second.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_queued_image_is_processed_by_listener(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        broker: MessageBroker = app.state.broker
        broker.start()
        try:
            response = await client.post("/api/v1/queue", files={"file": _png_upload()})
            assert response.status_code == status.HTTP_200_OK
            assert broker.join(timeout=10)
        finally:
            broker.stop()
        assert broker.pending() == 0


class TestLoadDetector:
    def test_missing_classifier_gives_unavailable_detector(self) -> None:
        with patch.dict(os.environ, {"DUKEFACE_CLASSIFIER_FILE": "/nonexistent/cascade.xml"}):
            settings = get_settings()
        detector = load_detector(settings)
        assert detector.is_loaded is False

    def test_default_classifier_loads(self) -> None:
        detector = load_detector(get_settings())
        assert detector.is_loaded is True


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_hello_is_public_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/")
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/duker", files={"file": _png_upload()})
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, DUKEFACE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/send",
                params={"msg": "hi"},
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
