"""Normalize per-classifier inference output and merge it into one response.

The merged envelope has the same shape as the remote service's
``ClassifiedImages`` response, so callers cannot tell local results from
cloud results.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

    from localvr.ml.model_store import ModelMetadata

DEFAULT_CONFIDENCE_FLOOR = 0.01


@dataclass(frozen=True)
class ClassificationRecord:
    """A single (label, confidence) prediction."""

    label: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {"class": self.label, "score": self.confidence}


@dataclass(frozen=True)
class ClassifierResult:
    """Filtered predictions of one classifier."""

    classifier_id: str
    display_name: str
    classes: tuple[ClassificationRecord, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.display_name,
            "classifier_id": self.classifier_id,
            "classes": [record.to_dict() for record in self.classes],
        }


@dataclass(frozen=True)
class MergedClassification:
    """All classifier results for one image."""

    classifier_results: tuple[ClassifierResult, ...] = ()

    def to_envelope(self) -> dict[str, Any]:
        """Wrap the results in the remote service's response envelope."""
        image = {
            "source_url": "",
            "resolved_url": "",
            "image": "",
            "error": "",
            "classifiers": [result.to_dict() for result in self.classifier_results],
        }
        return {"images": [image], "warning": []}


def normalize(
    raw: Iterable[tuple[str, float]],
    metadata: ModelMetadata | None,
    confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
) -> ClassifierResult:
    """Turn raw (label, score) pairs into a ClassifierResult.

    A score passes only if it is finite, within [0, 1], and strictly greater
    than ``confidence_floor``. Order is preserved.
    """
    classes = tuple(
        ClassificationRecord(label=str(label), confidence=float(score))
        for label, score in raw
        if math.isfinite(score) and 0.0 <= score <= 1.0 and score > confidence_floor
    )
    return ClassifierResult(
        classifier_id=metadata.classifier_id if metadata is not None else "",
        display_name=metadata.display_name if metadata is not None else "",
        classes=classes,
    )


def merge(
    indexed_results: Iterable[tuple[int, ClassifierResult]],
    *,
    preserve_request_order: bool = True,
) -> MergedClassification:
    """Merge results collected in completion order.

    Each result carries the position of its classifier id in the request.
    With ``preserve_request_order`` the results are re-sorted by that position;
    otherwise completion order is kept.
    """
    collected = list(indexed_results)
    if preserve_request_order:
        collected.sort(key=lambda item: item[0])
    return MergedClassification(classifier_results=tuple(result for _, result in collected))
