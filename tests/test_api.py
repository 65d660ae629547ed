"""Tests for the localvr HTTP API."""

from __future__ import annotations

import asyncio
import io
import os
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from localvr.client import LocalVisualRecognition
from localvr.config import get_settings
from localvr.main import _sweep_idle_sessions, create_app, run
from localvr.ml.fetcher import ModelFetcher
from localvr.ml.model_store import OnnxModelStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _StubClassifier:
    def classify(self, model: object, image: Image.Image) -> list[tuple[str, float]]:
        return [("cat", 0.92), ("dog", 0.004)]


class _CopyCompiler:
    def compile(self, source: Path, destination: Path) -> Path:
        destination.write_bytes(source.read_bytes())
        return destination


def _remote(request: httpx.Request) -> httpx.Response:
    if "missing" in request.url.path:
        return httpx.Response(404, json={"error": "not found"})
    if "corrupt" in request.url.path:
        return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")
    return httpx.Response(200, content=b"downloaded-model")


def _png() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (16, 16), "green").save(buf, format="PNG")
    return buf.getvalue()


def _mock_session_factory(path: str, **_kwargs: object) -> MagicMock:
    session = MagicMock()
    cid = Path(path).stem
    session.get_modelmeta.return_value.custom_metadata_map = {
        "name": f"{cid.title()} classifier",
        "classifier_id": cid,
        "labels": "cat,dog",
    }
    return session


def _init_app_state(app: FastAPI, tmp_path: Path, **env_overrides: str) -> LocalVisualRecognition:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {
        "LOCALVR_MODELS_DIR": str(tmp_path / "models"),
        "LOCALVR_SCRATCH_DIR": str(tmp_path / "scratch"),
        "LOCALVR_SERVICE_URL": "http://models.test/api/v1.0",
        **env_overrides,
    }
    with patch.dict(os.environ, env):
        settings = get_settings()
    store = OnnxModelStore(settings)
    fetcher = ModelFetcher(
        settings,
        store,
        compiler=_CopyCompiler(),
        client=httpx.Client(transport=httpx.MockTransport(_remote)),
    )
    client = LocalVisualRecognition(settings, store=store, fetcher=fetcher, classifier=_StubClassifier())
    app.state.settings = settings
    app.state.client = client
    return client


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    vr: LocalVisualRecognition = app.state.client
    vr.shutdown()


def _install(vr: LocalVisualRecognition, *classifier_ids: str) -> None:
    for cid in classifier_ids:
        vr.store.model_path(cid).write_bytes(b"compiled")


@pytest.fixture(autouse=True)
def _mock_onnx_sessions() -> Iterator[None]:
    with patch("localvr.ml.model_store.InferenceSession", side_effect=_mock_session_factory):
        yield


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, tmp_path)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert isinstance(data["models_loaded"], list)
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_gpu_true_when_cuda(self, tmp_path: Path) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, tmp_path, LOCALVR_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyEndpoint:
    async def test_classify_merges_installed_classifiers(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        _install(app.state.client, "pets", "animals")
        response = await client.post(
            "/api/v1/classify",
            files={"file": ("test.png", io.BytesIO(_png()), "image/png")},
            data={"classifier_ids": ["pets", "not_installed", "animals"]},
        )

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["warning"] == []
        image = body["images"][0]
        assert image["error"] == ""
        assert [c["classifier_id"] for c in image["classifiers"]] == ["pets", "animals"]
        assert image["classifiers"][0]["name"] == "Pets classifier"
        assert image["classifiers"][0]["classes"] == [{"class": "cat", "score": 0.92}]

    async def test_threshold_applied(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        _install(app.state.client, "pets")
        response = await client.post(
            "/api/v1/classify",
            files={"file": ("test.png", io.BytesIO(_png()), "image/png")},
            data={"classifier_ids": ["pets"], "threshold": "0.95"},
        )
        assert response.json()["images"][0]["classifiers"][0]["classes"] == []

    async def test_undecodable_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_no_classifiers_returns_empty_envelope(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify",
            files={"file": ("test.png", io.BytesIO(_png()), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["images"][0]["classifiers"] == []

    async def test_no_classifiers_returns_404_when_strict(self, tmp_path: Path) -> None:
        strict_app = create_app()
        _init_app_state(strict_app, tmp_path, LOCALVR_FAIL_ON_EMPTY="true")
        async for ac in _make_client(strict_app):
            response = await ac.post(
                "/api/v1/classify",
                files={"file": ("test.png", io.BytesIO(_png()), "image/png")},
            )
            assert response.status_code == status.HTTP_404_NOT_FOUND


class TestClassifierEndpoints:
    async def test_list_installed(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        _install(app.state.client, "b", "a")
        response = await client.get("/api/v1/classifiers")
        assert response.json() == {"classifiers": ["a", "b"]}

    async def test_get_classifier(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        _install(app.state.client, "pets")
        response = await client.get("/api/v1/classifiers/pets")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["name"] == "Pets classifier"
        assert data["labels"] == ["cat", "dog"]
        assert data["stale"] is False

    async def test_get_missing_classifier_returns_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/classifiers/nothing")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_get_broken_classifier_returns_409(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        _install(app.state.client, "broken")
        with patch("localvr.ml.model_store.InferenceSession", side_effect=RuntimeError("INVALID_PROTOBUF")):
            response = await client.get("/api/v1/classifiers/broken")
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_delete_classifier(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        _install(app.state.client, "pets")
        response = await client.delete("/api/v1/classifiers/pets")
        assert response.status_code == status.HTTP_204_NO_CONTENT
        response = await client.delete("/api/v1/classifiers/pets")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_update_model_installs(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classifiers/flowers/model", json={"api_key": "svc"})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["classifier_id"] == "flowers"
        assert Path(response.json()["path"]).read_bytes() == b"downloaded-model"

        listed = await client.get("/api/v1/classifiers")
        assert listed.json()["classifiers"] == ["flowers"]

    async def test_update_model_remote_error_returns_502(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classifiers/missing/model", json={"api_key": "svc"})
        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert "404" in response.json()["detail"]

    async def test_update_model_unreadable_body_returns_502(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classifiers/corrupt/model", json={"api_key": "svc"})
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

    async def test_update_model_requires_api_key(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classifiers/flowers/model")
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, LOCALVR_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_bearer_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, LOCALVR_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_passes_with_api_key_header(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, LOCALVR_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health", headers={"X-API-Key": "test-secret-key"})
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, LOCALVR_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestIdleSweep:
    async def test_sweeper_unloads_idle_sessions(self) -> None:
        vr = MagicMock(spec=LocalVisualRecognition)
        task = asyncio.create_task(_sweep_idle_sessions(vr, 0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert vr.unload_idle_models.call_count >= 1


class TestEntryPoint:
    def test_run_serves_app_on_configured_address(self) -> None:
        env = {"LOCALVR_HOST": "127.0.0.1", "LOCALVR_PORT": "9123"}
        with patch.dict(os.environ, env), patch("localvr.main.uvicorn.run") as mock_run:
            run()

        mock_run.assert_called_once_with("localvr.main:app", host="127.0.0.1", port=9123, log_level="info")
