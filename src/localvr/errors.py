"""Exception taxonomy for local classification and model management.

Per-classifier failures (``ModelNotFound``, ``ModelLoadFailed``,
``InferenceFailed``) are absorbed by the classification engine. Request-level
failures (``ImageDecodeError``, ``NoClassifiersAvailable``) and every
``FetchError`` reach the caller.
"""

from __future__ import annotations


class LocalVRError(Exception):
    """Base class for all localvr errors."""


class ImageDecodeError(LocalVRError, ValueError):
    """The input bytes could not be decoded into an image."""


class NoClassifiersAvailable(LocalVRError):
    """None of the requested classifiers could be resolved locally."""

    def __init__(self, classifier_ids: list[str]) -> None:
        self.classifier_ids = classifier_ids
        super().__init__(f"No local classifiers available for: {', '.join(classifier_ids) or '<none>'}")


class ModelNotFound(LocalVRError):
    """No installed artifact exists for a classifier id."""

    def __init__(self, classifier_id: str) -> None:
        self.classifier_id = classifier_id
        super().__init__(f"No model installed for classifier '{classifier_id}'")


class ModelLoadFailed(LocalVRError):
    """An installed artifact exists but the inference engine rejected it."""

    def __init__(self, classifier_id: str, reason: str) -> None:
        self.classifier_id = classifier_id
        self.reason = reason
        super().__init__(f"Could not load model for classifier '{classifier_id}': {reason}")


class InferenceFailed(LocalVRError):
    """Running a loaded model on an image failed."""

    def __init__(self, classifier_id: str, reason: str) -> None:
        self.classifier_id = classifier_id
        self.reason = reason
        super().__init__(f"Inference failed for classifier '{classifier_id}': {reason}")


class FetchError(LocalVRError):
    """Base class for failures while downloading or installing a model."""


class TransportError(FetchError):
    """The remote service could not be reached (no response)."""


class DownloadError(FetchError):
    """A response arrived but its body could not be read or saved to scratch space."""


class RemoteError(FetchError):
    """The remote service answered with a non-2xx status."""

    def __init__(self, status_code: int, classifier_id: str = "") -> None:
        self.status_code = status_code
        self.classifier_id = classifier_id
        super().__init__(f"Status code was not acceptable: {status_code} (classifier '{classifier_id}')")


class CompileError(FetchError):
    """A downloaded model artifact could not be compiled."""


class InstallError(FetchError):
    """A compiled model could not be moved into its final location."""


class BackupExclusionFailed(LocalVRError):
    """The installed artifact could not be flagged as excluded from backups.

    Never raised out of a fetch; only logged.
    """
