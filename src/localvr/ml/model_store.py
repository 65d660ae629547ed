"""Model store: resolve, load, cache, install, and evict compiled classifiers.

Every classifier id maps to exactly one compiled artifact,
``<models_dir>/<classifier_id>.ort``. Installation copies the compiled model
next to its final path and renames it into place, so readers either see the
previous artifact or the new one and never a missing or half-written file.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from localvr.errors import BackupExclusionFailed, InstallError, ModelLoadFailed

if TYPE_CHECKING:
    from localvr.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_CLASSIFIER_ID = "default"
COMPILED_MODEL_EXT = ".ort"
RAW_MODEL_EXT = ".onnx"

_BACKUP_EXCLUDE_VALUE = b"com.apple.backupd"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelStore(Protocol):
    """Protocol for local classifier model storage."""

    def model_path(self, classifier_id: str) -> Path:
        """Return the final on-disk path for a classifier's compiled model."""
        ...

    def resolve(self, classifier_id: str) -> LoadedModel | None:
        """Return the loaded model, or None if nothing is installed."""
        ...

    def install(self, classifier_id: str, compiled_path: Path) -> Path:
        """Atomically install a compiled model and return its final path."""
        ...

    def evict(self, classifier_id: str) -> bool:
        """Remove an installed model. Return True if one was removed."""
        ...

    def is_stale(self, classifier_id: str) -> bool:
        """Return True if the installed model is older than the configured max age."""
        ...

    def list_installed(self) -> list[str]:
        """Return ids of all installed classifiers."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return ids of classifiers with cached sessions."""
        ...

    def unload_idle_models(self) -> None:
        """Drop cached sessions unused for longer than the configured TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Loaded model handle
# ---------------------------------------------------------------------------


def _parse_floats(raw: str | None) -> tuple[float, ...] | None:
    if not raw:
        return None
    try:
        return tuple(float(part) for part in raw.split(","))
    except ValueError:
        logger.warning("Ignoring malformed normalization metadata: %r", raw)
        return None


def _parse_labels(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    if raw.lstrip().startswith("["):
        try:
            return tuple(str(label) for label in json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            logger.warning("Labels metadata is not valid JSON, falling back to comma splitting")
    return tuple(label.strip() for label in raw.split(","))


@dataclass(frozen=True)
class ModelMetadata:
    """Creator-defined metadata embedded in a compiled classifier."""

    display_name: str = ""
    classifier_id: str = ""
    labels: tuple[str, ...] = ()
    image_mean: tuple[float, ...] | None = None
    image_std: tuple[float, ...] | None = None
    apply_softmax: bool = False

    @classmethod
    def from_custom_map(cls, custom: Mapping[str, str] | None) -> ModelMetadata:
        """Build metadata from an ONNX custom metadata map, tolerating missing keys."""
        if not isinstance(custom, Mapping):
            return cls()
        return cls(
            display_name=custom.get("name", "") or "",
            classifier_id=custom.get("classifier_id", "") or "",
            labels=_parse_labels(custom.get("labels")),
            image_mean=_parse_floats(custom.get("image_mean")),
            image_std=_parse_floats(custom.get("image_std")),
            apply_softmax=str(custom.get("apply_softmax", "")).lower() in {"1", "true", "yes"},
        )


@dataclass(frozen=True)
class LoadedModel:
    """Read-only handle to a loaded classifier, owned by the store cache."""

    classifier_id: str
    path: Path
    session: InferenceSession
    metadata: ModelMetadata


# ---------------------------------------------------------------------------
# Backup exclusion
# ---------------------------------------------------------------------------


def exclude_from_backup(path: Path, attribute: str) -> None:
    """Flag a file as excluded from backup and sync via an extended attribute.

    Raises:
        BackupExclusionFailed: If the platform or filesystem rejects the attribute.
    """
    setxattr = getattr(os, "setxattr", None)
    if setxattr is None:
        raise BackupExclusionFailed(f"Extended attributes are not supported on this platform ({path})")
    try:
        setxattr(path, attribute, _BACKUP_EXCLUDE_VALUE)
    except OSError as exc:
        raise BackupExclusionFailed(f"Could not exclude {path} from backup: {exc}") from exc


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedModel:
    model: LoadedModel
    signature: tuple[int, int, int]
    last_used: float


class OnnxModelStore:
    """Resolves classifier ids to compiled ONNX Runtime models on local disk."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._models: dict[str, _CachedModel] = {}
        self._install_locks: dict[str, threading.Lock] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    @property
    def models_dir(self) -> Path:
        """Directory holding one compiled artifact per classifier."""
        return self._models_dir

    # -- Public API ---------------------------------------------------------

    def model_path(self, classifier_id: str) -> Path:
        """Return ``<models_dir>/<classifier_id>.ort``.

        Raises:
            ValueError: If the id is empty or would escape the models directory.
        """
        if (
            not classifier_id
            or classifier_id.startswith(".")
            or "/" in classifier_id
            or "\\" in classifier_id
            or "\x00" in classifier_id
        ):
            raise ValueError(f"Invalid classifier id: {classifier_id!r}")
        return self._models_dir / f"{classifier_id}{COMPILED_MODEL_EXT}"

    def resolve(self, classifier_id: str) -> LoadedModel | None:
        """Load the installed model for ``classifier_id``.

        Returns None when no artifact is installed. Never fetches.

        Raises:
            ModelLoadFailed: If the artifact exists but cannot be loaded.
        """
        path = self.model_path(classifier_id)
        try:
            stat = path.stat()
        except FileNotFoundError:
            logger.info("No model available for classifier: %s", classifier_id)
            return None
        signature = (stat.st_mtime_ns, stat.st_size, stat.st_ino)

        with self._lock:
            cached = self._models.get(classifier_id)
            if cached is not None and cached.signature == signature:
                cached.last_used = time.monotonic()
                return cached.model

        try:
            session = InferenceSession(
                str(path),
                sess_options=self._session_options,
                providers=self._providers,
            )
            metadata = ModelMetadata.from_custom_map(session.get_modelmeta().custom_metadata_map)
        except Exception as exc:  # noqa: BLE001
            raise ModelLoadFailed(classifier_id, str(exc)) from exc

        model = LoadedModel(classifier_id=classifier_id, path=path, session=session, metadata=metadata)
        with self._lock:
            # Double-check: another thread may have loaded the same artifact meanwhile.
            existing = self._models.get(classifier_id)
            if existing is not None and existing.signature == signature:
                existing.last_used = time.monotonic()
                return existing.model
            self._models[classifier_id] = _CachedModel(model=model, signature=signature, last_used=time.monotonic())
            logger.info("Loaded model for classifier %s from %s", classifier_id, path)
            return model

    def install_lock(self, classifier_id: str) -> threading.Lock:
        """Return the lock serializing installs for one classifier id."""
        with self._lock:
            return self._install_locks.setdefault(classifier_id, threading.Lock())

    def install(self, classifier_id: str, compiled_path: Path) -> Path:
        """Copy a compiled model into its final location, replacing any previous one.

        Raises:
            InstallError: If the copy or the final rename fails.
        """
        final_path = self.model_path(classifier_id)
        partial_path = self._models_dir / f".{classifier_id}.{uuid.uuid4().hex}.partial"

        with self.install_lock(classifier_id):
            try:
                shutil.copyfile(compiled_path, partial_path)
                try:
                    exclude_from_backup(partial_path, self._settings.backup_exclude_xattr)
                except BackupExclusionFailed as exc:
                    logger.warning("%s", exc)
                os.replace(partial_path, final_path)
            except OSError as exc:
                raise InstallError(f"Failed to install compiled model for classifier '{classifier_id}': {exc}") from exc
            finally:
                partial_path.unlink(missing_ok=True)
            self._drop_cached(classifier_id)

        logger.info("New model compiled for classifier: %s", classifier_id)
        return final_path

    def evict(self, classifier_id: str) -> bool:
        """Delete the installed artifact, its cached session, and its install lock."""
        path = self.model_path(classifier_id)
        with self.install_lock(classifier_id):
            self._drop_cached(classifier_id)
            with self._lock:
                self._install_locks.pop(classifier_id, None)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Evicted model for classifier %s", classifier_id)
        return True

    def is_stale(self, classifier_id: str) -> bool:
        """Return True if the installed model is older than ``model_max_age`` seconds.

        Always False when no max age is configured or nothing is installed.
        """
        max_age = self._settings.model_max_age
        if max_age == 0:
            return False
        try:
            mtime = self.model_path(classifier_id).stat().st_mtime
        except FileNotFoundError:
            return False
        return (time.time() - mtime) > max_age

    def list_installed(self) -> list[str]:
        """Return the sorted ids of every compiled model in the models directory."""
        return sorted(
            path.name[: -len(COMPILED_MODEL_EXT)]
            for path in self._models_dir.glob(f"*{COMPILED_MODEL_EXT}")
            if path.is_file()
        )

    def get_loaded_models(self) -> list[str]:
        """Return ids of classifiers with cached sessions."""
        with self._lock:
            return list(self._models.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [cid for cid, cached in self._models.items() if (now - cached.last_used) > ttl]
            for cid in expired:
                del self._models[cid]
                logger.info("Evicted idle session for %s", cid)

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._models.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _drop_cached(self, classifier_id: str) -> None:
        with self._lock:
            self._models.pop(classifier_id, None)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
