"""Model fetcher: download, compile, and install classifier models.

Downloads land in a private scratch directory created per fetch and removed
when the fetch ends, whichever way it ends. Only the store's install step
touches the models directory.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx

from localvr.errors import DownloadError, RemoteError, TransportError
from localvr.ml.compiler import ModelCompiler, OnnxModelCompiler
from localvr.ml.model_store import COMPILED_MODEL_EXT, RAW_MODEL_EXT

if TYPE_CHECKING:
    from localvr.config import Settings
    from localvr.ml.model_store import ModelStore

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


class ModelFetcher:
    """Pulls the latest model for a classifier from the remote service."""

    def __init__(
        self,
        settings: Settings,
        store: ModelStore,
        compiler: ModelCompiler | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._compiler = compiler or OnnxModelCompiler()
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=settings.request_timeout, follow_redirects=True)
        self._scratch_dir = Path(settings.scratch_dir)

    def model_url(self, classifier_id: str) -> str:
        """Return the remote endpoint serving the latest model for ``classifier_id``."""
        base = self._settings.service_url.rstrip("/")
        return f"{base}/classifiers/{quote(classifier_id, safe='')}/model"

    def fetch(self, classifier_id: str, api_key: str) -> Path:
        """Download, compile, and install the model for ``classifier_id``.

        Returns the final installed path. Calling it again replaces the
        previously installed artifact.

        Raises:
            TransportError: If the service could not be reached.
            DownloadError: If the response body could not be read or written to disk.
            RemoteError: If the service answered with a non-2xx status.
            CompileError: If the downloaded artifact could not be compiled.
            InstallError: If the compiled model could not be installed.
        """
        self._store.model_path(classifier_id)
        try:
            self._scratch_dir.mkdir(parents=True, exist_ok=True)
            workspace = tempfile.TemporaryDirectory(prefix="fetch_", dir=self._scratch_dir)
        except OSError as exc:
            raise DownloadError(f"Could not create scratch space in {self._scratch_dir}: {exc}") from exc

        with workspace as scratch:
            scratch_path = Path(scratch)
            raw_path = scratch_path / f"temp_{uuid.uuid4().hex}{RAW_MODEL_EXT}"
            self._download(classifier_id, api_key, raw_path)
            logger.info("New model spec for %s was saved to %s", classifier_id, raw_path)

            compiled_path = self._compiler.compile(raw_path, scratch_path / f"{classifier_id}{COMPILED_MODEL_EXT}")
            installed = self._store.install(classifier_id, compiled_path)

        return installed

    def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            self._client.close()

    # -- Internal -----------------------------------------------------------

    def _download(self, classifier_id: str, api_key: str, destination: Path) -> None:
        params = {"version": self._settings.service_version} if self._settings.service_version else None
        try:
            with self._client.stream(
                "GET",
                self.model_url(classifier_id),
                params=params,
                headers={API_KEY_HEADER: api_key},
            ) as response:
                if not response.is_success:
                    raise RemoteError(response.status_code, classifier_id)
                with destination.open("wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
        except httpx.TransportError as exc:
            raise TransportError(f"Did not receive response for classifier '{classifier_id}': {exc}") from exc
        except httpx.HTTPError as exc:
            raise DownloadError(f"Could not read model for classifier '{classifier_id}': {exc}") from exc
        except OSError as exc:
            raise DownloadError(f"Could not save model for classifier '{classifier_id}': {exc}") from exc
