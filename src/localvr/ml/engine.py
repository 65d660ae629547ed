"""Classification fan-out engine.

One request decodes the image once, resolves every requested classifier
against the model store, runs each resolved classifier as an independent task
on the inference pool, and waits for all of them before merging.

Classification is best-effort: a classifier that is missing, fails to load,
or fails during inference is logged and left out of the result. Only an
undecodable image (or, when configured, an empty result) fails the request.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING

from localvr.errors import FetchError, ModelLoadFailed, NoClassifiersAvailable
from localvr.ml.image_classifier import ImageClassifier, OnnxImageClassifier
from localvr.ml.model_store import DEFAULT_CLASSIFIER_ID
from localvr.ml.preprocessing import CropAndScale, decode_image
from localvr.ml.results import ClassifierResult, MergedClassification, merge, normalize

if TYPE_CHECKING:
    from collections.abc import Sequence

    from PIL import Image

    from localvr.config import Settings
    from localvr.ml.fetcher import ModelFetcher
    from localvr.ml.inference import InferencePool
    from localvr.ml.model_store import LoadedModel, ModelStore

logger = logging.getLogger(__name__)


class ClassificationEngine:
    """Runs several local classifiers concurrently on one image."""

    def __init__(
        self,
        settings: Settings,
        store: ModelStore,
        pool: InferencePool,
        classifier: ImageClassifier | None = None,
        fetcher: ModelFetcher | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._pool = pool
        self._classifier = classifier or OnnxImageClassifier(CropAndScale(settings.image_crop_and_scale))
        self._fetcher = fetcher

    async def classify(
        self,
        image: bytes,
        classifier_ids: Sequence[str] | None = None,
        confidence_floor: float | None = None,
    ) -> MergedClassification:
        """Classify ``image`` with every requested classifier that is available locally.

        Args:
            image: Raw encoded image bytes.
            classifier_ids: Classifier ids in request order. Defaults to the
                built-in classifier. Duplicates are run independently.
            confidence_floor: Scores must be strictly greater than this to be
                reported. Defaults to ``settings.confidence_floor``.

        Raises:
            ImageDecodeError: If ``image`` cannot be decoded. No classifier runs.
            NoClassifiersAvailable: If nothing produced a result and
                ``settings.fail_on_empty`` is set.
        """
        ids = list(classifier_ids) if classifier_ids else [DEFAULT_CLASSIFIER_ID]
        floor = self._settings.confidence_floor if confidence_floor is None else confidence_floor

        loop = asyncio.get_running_loop()
        decoded = await loop.run_in_executor(
            None,
            partial(
                decode_image,
                image,
                max_file_size=self._settings.max_file_size,
                max_pixels=self._settings.max_image_pixels,
            ),
        )

        resolved: list[tuple[int, LoadedModel]] = []
        for index, classifier_id in enumerate(ids):
            model = await loop.run_in_executor(None, self._resolve, classifier_id)
            if model is not None:
                resolved.append((index, model))

        tasks = [asyncio.ensure_future(self._run_one(index, model, decoded, floor)) for index, model in resolved]
        collected: list[tuple[int, ClassifierResult]] = []
        for finished in asyncio.as_completed(tasks):
            outcome = await finished
            if outcome is not None:
                collected.append(outcome)

        merged = merge(collected, preserve_request_order=self._settings.preserve_request_order)
        logger.info(
            "Classified image with %d of %d requested classifiers",
            len(merged.classifier_results),
            len(ids),
        )
        if not merged.classifier_results and self._settings.fail_on_empty:
            raise NoClassifiersAvailable(ids)
        return merged

    # -- Internal -----------------------------------------------------------

    def _resolve(self, classifier_id: str) -> LoadedModel | None:
        """Resolve one id, fetching it first when auto-fetch is enabled."""
        fetched = False
        try:
            if self._should_fetch(classifier_id):
                fetched = self._fetch(classifier_id)
            return self._store.resolve(classifier_id)
        except ModelLoadFailed as exc:
            logger.warning("%s", exc)
        except ValueError as exc:
            logger.warning("Skipping classifier %r: %s", classifier_id, exc)
            return None
        except OSError as exc:
            logger.warning("Could not read model for classifier %s: %s", classifier_id, exc)
            return None

        if fetched or self._fetcher is None or not self._settings.auto_fetch_missing:
            return None
        # The installed artifact is unusable: replace it and try once more.
        if not self._fetch(classifier_id):
            return None
        try:
            return self._store.resolve(classifier_id)
        except (ModelLoadFailed, OSError) as exc:
            logger.warning("%s", exc)
            return None

    def _should_fetch(self, classifier_id: str) -> bool:
        if self._fetcher is None or not self._settings.auto_fetch_missing:
            return False
        if not self._store.model_path(classifier_id).exists():
            return True
        return self._store.is_stale(classifier_id)

    def _fetch(self, classifier_id: str) -> bool:
        api_key = self._settings.service_api_key
        if self._fetcher is None or api_key is None:
            logger.warning("Cannot fetch classifier %s: no service API key configured", classifier_id)
            return False
        try:
            self._fetcher.fetch(classifier_id, api_key)
        except FetchError as exc:
            logger.warning("Could not fetch model for classifier %s: %s", classifier_id, exc)
            return False
        return True

    async def _run_one(
        self,
        index: int,
        model: LoadedModel,
        image: Image.Image,
        confidence_floor: float,
    ) -> tuple[int, ClassifierResult] | None:
        try:
            raw = await self._pool.run(self._classifier.classify, model, image)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to perform classification with %s", model.classifier_id)
            return None
        return index, normalize(raw, model.metadata, confidence_floor)
