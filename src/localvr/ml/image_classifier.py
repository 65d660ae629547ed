"""Image classification with a loaded ONNX classifier."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

from localvr.errors import InferenceFailed
from localvr.ml.preprocessing import CropAndScale, resize_for_model, to_tensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from PIL import Image

    from localvr.ml.model_store import LoadedModel

DEFAULT_INPUT_SIZE = 224


class ImageClassifier(Protocol):
    """Protocol for running one classifier on one image."""

    def classify(self, model: LoadedModel, image: Image.Image) -> list[tuple[str, float]]:
        """Classify an image and return (label, score) pairs.

        Args:
            model: Loaded classifier borrowed from the model store.
            image: Decoded RGB image.

        Returns:
            Raw (label, score) pairs sorted by score (descending).
        """
        ...


def _dim(value: object) -> int:
    # Dynamic dimensions come back as strings or None.
    return value if isinstance(value, int) and value > 0 else DEFAULT_INPUT_SIZE


def _input_layout(shape: Sequence[object]) -> tuple[int, int, bool]:
    """Return (height, width, channels_last) for a 4-D image input shape."""
    if len(shape) != 4:
        return DEFAULT_INPUT_SIZE, DEFAULT_INPUT_SIZE, False
    if shape[1] != 3 and shape[3] == 3:
        return _dim(shape[1]), _dim(shape[2]), True
    return _dim(shape[2]), _dim(shape[3]), False


def _softmax(scores: NDArray[np.float64]) -> NDArray[np.float64]:
    shifted = np.exp(scores - np.max(scores))
    return shifted / shifted.sum()


class OnnxImageClassifier:
    """Runs a compiled classifier's first output as a per-class score vector."""

    def __init__(self, crop_and_scale: CropAndScale = CropAndScale.SCALE_FILL) -> None:
        self._crop_and_scale = crop_and_scale

    def classify(self, model: LoadedModel, image: Image.Image) -> list[tuple[str, float]]:
        session = model.session
        metadata = model.metadata
        model_input = session.get_inputs()[0]
        height, width, channels_last = _input_layout(model_input.shape)

        resized = resize_for_model(image, (width, height), self._crop_and_scale)
        tensor = to_tensor(resized, metadata.image_mean, metadata.image_std, channels_last=channels_last)

        try:
            outputs = session.run(None, {model_input.name: tensor})
        except Exception as exc:  # noqa: BLE001
            raise InferenceFailed(model.classifier_id, str(exc)) from exc
        scores = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if metadata.apply_softmax and scores.size:
            scores = _softmax(scores)

        labels = metadata.labels
        pairs = [
            (labels[index] if index < len(labels) else f"class_{index}", float(score))
            for index, score in enumerate(scores)
        ]
        pairs.sort(key=lambda pair: pair[1], reverse=True)
        return pairs
