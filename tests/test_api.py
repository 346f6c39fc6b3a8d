"""Tests for the ClassifyX HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI, UploadFile, status
from PIL import Image

from classifyx.api import routes
from classifyx.api.dependencies import key_matches
from classifyx.config import get_settings
from classifyx.main import create_app
from classifyx.ml.inference import InferencePool
from classifyx.ml.model_manager import TFLiteModelManager
from tests.conftest import VALID_MODEL_BYTES, FakeEngine


def _init_app_state(app: FastAPI, models_dir: Path, engine: FakeEngine, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {
        "CLASSIFYX_MODELS_DIR": str(models_dir),
        "CLASSIFYX_MODEL_NAME": "mobilenet_test",
        "CLASSIFYX_MODEL_FILENAME": "mobilenet.tflite",
        "CLASSIFYX_LABELS_FILENAME": "labels.txt",
        **env_overrides,
    }
    with patch.dict(os.environ, env):
        settings = get_settings()
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = TFLiteModelManager(settings, engine_factory=lambda: engine)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png(size: tuple[int, int] = (32, 24), mode: str = "RGB") -> io.BytesIO:
    buf = io.BytesIO()
    Image.new(mode, size, color=120 if mode == "L" else (120, 60, 30)).save(buf, format="PNG")
    buf.seek(0)
    return buf


@pytest.fixture()
def models_dir(tmp_path: Path) -> Path:
    (tmp_path / "mobilenet.tflite").write_bytes(VALID_MODEL_BYTES)
    (tmp_path / "labels.txt").write_text("background\ncat\ndog\n\nbird", encoding="utf-8")
    return tmp_path


@pytest.fixture()
def fake_engine() -> FakeEngine:
    return FakeEngine(input_shape=(1, 32, 32, 3), output_values=[0.02, 0.8, 0.15, 0.5, 0.0005])


@pytest.fixture()
def app(models_dir: Path, fake_engine: FakeEngine) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, models_dir, fake_engine)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["models_loaded"] == []
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_lists_loaded_model(self, client: httpx.AsyncClient) -> None:
        await client.post("/api/v1/classify-image", files={"file": ("a.png", _png(), "image/png")})
        response = await client.get("/api/v1/health")
        assert response.json()["models_loaded"] == ["mobilenet_test"]


class TestClassifyImageEndpoint:
    async def test_returns_ranked_tags(self, client: httpx.AsyncClient, fake_engine: FakeEngine) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("photo.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["model"] == "mobilenet_test"
        # Index 3 has an empty label and index 4 is under the threshold.
        assert [t["label"] for t in data["tags"]] == ["cat", "dog", "background"]
        assert [t["index"] for t in data["tags"]] == [1, 2, 0]
        assert data["tags"][0]["confidence"] == pytest.approx(0.8)

        written = fake_engine.graphs[0].written
        assert written is not None
        # 32x24 source at width 32 keeps height 24.
        assert written[0, :24].min() > 0
        assert not written[0, 24:].any()

    async def test_grayscale_upload_converted(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("gray.png", _png(mode="L"), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK

    async def test_undecodable_upload_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert "cannot decode" in response.json()["detail"].lower()

    async def test_portrait_too_tall_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("tall.png", _png(size=(24, 48)), "image/png")},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["kind"] == "shape_mismatch"

    async def test_unknown_model_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            params={"model": "nope"},
            files={"file": ("photo.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_file_size_limit(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_MAX_FILE_SIZE="10")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("photo.png", _png(), "image/png")},
            )
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_pixel_limit(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_MAX_IMAGE_PIXELS="100")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("photo.png", _png(), "image/png")},
            )
            assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    async def test_corrupt_model_is_500(self, models_dir: Path) -> None:
        app = create_app()
        _init_app_state(app, models_dir, FakeEngine(fail_build=True))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("photo.png", _png(), "image/png")},
            )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert response.json()["kind"] == "graph_build_failed"

    async def test_missing_model_file_is_503(self, tmp_path: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, tmp_path / "empty", fake_engine)
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("photo.png", _png(), "image/png")},
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestReadLimited:
    async def test_declared_size_rejected_before_reading(self) -> None:
        upload = UploadFile(file=io.BytesIO(b"x" * 100), size=100)
        assert await routes.read_limited(upload, 10) is None
        assert upload.file.tell() == 0

    async def test_unknown_size_stops_at_limit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(routes, "UPLOAD_CHUNK_SIZE", 4)
        upload = UploadFile(file=io.BytesIO(b"0123456789"), size=None)
        assert await routes.read_limited(upload, 6) is None
        assert upload.file.tell() == 8

    async def test_reads_upload_within_limit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(routes, "UPLOAD_CHUNK_SIZE", 4)
        upload = UploadFile(file=io.BytesIO(b"0123456789"), size=None)
        assert await routes.read_limited(upload, 10) == b"0123456789"


class TestModelsEndpoint:
    async def test_models_returns_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert models == [
            {"name": "mobilenet_test", "source": "local", "status": "available", "default": True},
        ]

    async def test_model_marked_loaded_after_use(self, client: httpx.AsyncClient) -> None:
        await client.post("/api/v1/classify-image", files={"file": ("a.png", _png(), "image/png")})
        response = await client.get("/api/v1/models")
        assert response.json()["models"][0]["status"] == "loaded"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                headers={"Authorization": "Bearer wrong-key"},
                files={"file": ("photo.png", _png(), "image/png")},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_api_key_header(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health", headers={"X-API-Key": "test-secret-key"})
            assert response.status_code == status.HTTP_200_OK

    async def test_wrong_api_key_header_rejected(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health", headers={"X-API-Key": "nope"})
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
            assert response.json()["detail"] == "Invalid API key"

    async def test_missing_key_reported(self, models_dir: Path, fake_engine: FakeEngine) -> None:
        app = create_app()
        _init_app_state(app, models_dir, fake_engine, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
            assert response.json()["detail"] == "Missing API key"

    def test_key_matches(self) -> None:
        assert key_matches("s3cret", "s3cret")
        assert not key_matches("s3cret", "s3cret ")
