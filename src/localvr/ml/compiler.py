"""Compile raw ONNX classifiers into ORT-format models ready to load."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions

from localvr.errors import CompileError

logger = logging.getLogger(__name__)


class ModelCompiler(Protocol):
    """Protocol for turning a downloaded artifact into a loadable one."""

    def compile(self, source: Path, destination: Path) -> Path:
        """Compile ``source`` into ``destination`` and return the compiled path."""
        ...


class OnnxModelCompiler:
    """Serializes an optimized ORT-format model via ONNX Runtime's offline optimizer."""

    def __init__(self, optimization_level: GraphOptimizationLevel = GraphOptimizationLevel.ORT_ENABLE_BASIC) -> None:
        # Basic optimizations keep the saved graph loadable by every execution provider.
        self._optimization_level = optimization_level

    def compile(self, source: Path, destination: Path) -> Path:
        """Compile ``source`` into ``destination``.

        Raises:
            CompileError: If ONNX Runtime rejects the model or writes no output.
        """
        opts = SessionOptions()
        opts.graph_optimization_level = self._optimization_level
        opts.optimized_model_filepath = str(destination)
        opts.add_session_config_entry("session.save_model_format", "ORT")

        try:
            InferenceSession(str(source), sess_options=opts, providers=["CPUExecutionProvider"])
        except Exception as exc:  # noqa: BLE001
            raise CompileError(f"Could not compile model from source {source.name}: {exc}") from exc

        if not destination.is_file():
            raise CompileError(f"Compiler produced no output for {source.name}")
        logger.debug("Compiled %s to %s", source, destination)
        return destination
