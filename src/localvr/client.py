"""Public entry point for local visual recognition."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from localvr.config import get_settings
from localvr.errors import ModelNotFound
from localvr.ml.engine import ClassificationEngine
from localvr.ml.fetcher import ModelFetcher
from localvr.ml.inference import InferencePool
from localvr.ml.model_store import OnnxModelStore

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from localvr.config import Settings
    from localvr.ml.image_classifier import ImageClassifier
    from localvr.ml.model_store import LoadedModel, ModelStore
    from localvr.ml.results import MergedClassification

logger = logging.getLogger(__name__)


class LocalVisualRecognition:
    """Classify images with locally installed models and keep those models current.

    Example::

        vr = LocalVisualRecognition()
        vr.download_and_install_model("flowers_1234", api_key="...")
        result = await vr.classify_locally(image_bytes, ["flowers_1234"])
        payload = result.to_envelope()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: ModelStore | None = None,
        fetcher: ModelFetcher | None = None,
        pool: InferencePool | None = None,
        classifier: ImageClassifier | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or OnnxModelStore(self._settings)
        self._fetcher = fetcher or ModelFetcher(self._settings, self._store)
        self._pool = pool or InferencePool(self._settings)
        self._engine = ClassificationEngine(
            self._settings,
            self._store,
            self._pool,
            classifier=classifier,
            fetcher=self._fetcher,
        )

    @property
    def settings(self) -> Settings:
        """Settings this instance was built with."""
        return self._settings

    @property
    def store(self) -> ModelStore:
        """Model store backing classification and updates."""
        return self._store

    @property
    def pool(self) -> InferencePool:
        """Inference pool shared by all classification requests."""
        return self._pool

    async def classify_locally(
        self,
        image: bytes,
        classifier_ids: Sequence[str] | None = None,
        confidence_floor: float | None = None,
    ) -> MergedClassification:
        """Classify an image with the locally installed classifiers.

        Missing or broken classifiers are skipped. See
        :meth:`ClassificationEngine.classify` for the failure modes.
        """
        return await self._engine.classify(image, classifier_ids, confidence_floor)

    async def update_model(self, classifier_id: str, api_key: str | None = None) -> None:
        """Pull the latest model for ``classifier_id`` without blocking the event loop."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.download_and_install_model, classifier_id, api_key)

    def resolve_model(self, classifier_id: str) -> LoadedModel | None:
        """Return the installed model for ``classifier_id``, or None.

        Raises:
            ModelLoadFailed: If the installed artifact cannot be loaded.
        """
        return self._store.resolve(classifier_id)

    def get_model(self, classifier_id: str) -> LoadedModel:
        """Like :meth:`resolve_model`, but a missing model is an error.

        Raises:
            ModelNotFound: If nothing is installed for ``classifier_id``.
            ModelLoadFailed: If the installed artifact cannot be loaded.
        """
        model = self._store.resolve(classifier_id)
        if model is None:
            raise ModelNotFound(classifier_id)
        return model

    def download_and_install_model(self, classifier_id: str, api_key: str | None = None) -> Path:
        """Download, compile, and install a model. Returns the installed path.

        Raises:
            ValueError: If no API key is given or configured.
            FetchError: If downloading, compiling, or installing fails.
        """
        key = api_key or self._settings.service_api_key
        if not key:
            raise ValueError("An API key is required to download models (set LOCALVR_SERVICE_API_KEY)")
        path = self._fetcher.fetch(classifier_id, key)
        logger.info("Installed classifier %s at %s", classifier_id, path)
        return path

    def evict_model(self, classifier_id: str) -> bool:
        """Remove the installed model for ``classifier_id``. Returns False if none was installed."""
        return self._store.evict(classifier_id)

    def list_installed(self) -> list[str]:
        """Return the ids of all locally installed classifiers."""
        return self._store.list_installed()

    def unload_idle_models(self) -> None:
        """Release cached sessions that have been idle longer than ``model_ttl``."""
        self._store.unload_idle_models()

    def shutdown(self) -> None:
        """Release the thread pool, cached sessions, and HTTP client."""
        self._pool.shutdown()
        self._store.shutdown()
        self._fetcher.close()
