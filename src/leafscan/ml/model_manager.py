"""Model manager: load, validate, and cache ONNX classification models.

A model is loaded once per path and shared read-only by every
classification call for the rest of the process.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from leafscan.errors import ModelLoadFailure

if TYPE_CHECKING:
    from leafscan.config import Settings

logger = logging.getLogger(__name__)

LABELS_METADATA_KEY = "labels"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def load(self, path: str | Path) -> Model:
        """Return the loaded model for a path, loading it on first use."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached models."""
        ...


# ---------------------------------------------------------------------------
# Loaded model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Model:
    """An immutable, loaded classification model."""

    name: str
    path: Path
    session: InferenceSession
    input_name: str
    output_name: str
    layout: Literal["NCHW", "NHWC"]
    channels: int
    input_height: int
    input_width: int
    labels: tuple[str, ...]


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Loads and caches ONNX inference sessions wrapped as ``Model`` records."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

        self._lock = threading.Lock()
        self._models: dict[Path, Model] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def load(self, path: str | Path) -> Model:
        """Return a cached Model, loading it if needed.

        Raises:
            ModelLoadFailure: If the file is missing, cannot be loaded by the
                runtime, does not take an image tensor, or has no labels.
        """
        model_path = Path(path).expanduser().resolve()
        with self._lock:
            cached = self._models.get(model_path)
            if cached is not None:
                return cached

        if not model_path.is_file():
            raise ModelLoadFailure(f"Model file not found: {model_path}")

        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:  # onnxruntime's pybind errors derive directly from Exception
            raise ModelLoadFailure(f"Cannot load model {model_path.name}: {exc}") from exc

        model = self._describe(model_path, session)

        with self._lock:
            # Double-check: another thread may have loaded it meanwhile.
            existing = self._models.get(model_path)
            if existing is not None:
                return existing
            self._models[model_path] = model
            logger.info(
                "Loaded %s (%s, %dx%dx%d, %d labels)",
                model.name,
                model.layout,
                model.input_width,
                model.input_height,
                model.channels,
                len(model.labels),
            )
            return model

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return [model.name for model in self._models.values()]

    def shutdown(self) -> None:
        """Clear all cached models."""
        with self._lock:
            self._models.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _describe(self, model_path: Path, session: InferenceSession) -> Model:
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if len(inputs) != 1 or not outputs:
            raise ModelLoadFailure(
                f"Model {model_path.name} must have one input and at least one output, "
                f"got {len(inputs)} inputs and {len(outputs)} outputs"
            )

        input_meta = inputs[0]
        layout, channels, height, width = self._parse_input_shape(model_path, list(input_meta.shape))
        labels = self._read_labels(model_path, session)

        output_shape = list(outputs[0].shape or [])
        classes = output_shape[-1] if output_shape else None
        if isinstance(classes, int) and classes > 0 and classes != len(labels):
            raise ModelLoadFailure(
                f"Model {model_path.name} outputs {classes} scores but has {len(labels)} labels"
            )

        return Model(
            name=model_path.stem,
            path=model_path,
            session=session,
            input_name=input_meta.name,
            output_name=outputs[0].name,
            layout=layout,
            channels=channels,
            input_height=height,
            input_width=width,
            labels=labels,
        )

    def _parse_input_shape(
        self, model_path: Path, shape: list[int | str | None]
    ) -> tuple[Literal["NCHW", "NHWC"], int, int, int]:
        if len(shape) != 4:
            raise ModelLoadFailure(f"Model {model_path.name} input must be a 4-D image tensor, got shape {shape}")

        # Symbolic or unknown spatial dims fall back to the configured size.
        def _dim(value: int | str | None) -> int:
            return value if isinstance(value, int) and value > 0 else self._settings.input_size

        _, second, third, fourth = shape
        if second in (1, 3):
            return "NCHW", _dim(second), _dim(third), _dim(fourth)
        if fourth in (1, 3):
            return "NHWC", _dim(fourth), _dim(second), _dim(third)
        raise ModelLoadFailure(f"Model {model_path.name} input has no 1- or 3-channel axis: {shape}")

    def _read_labels(self, model_path: Path, session: InferenceSession) -> tuple[str, ...]:
        labels_path = self._settings.labels_path
        if labels_path is not None:
            try:
                text = Path(labels_path).read_text(encoding="utf-8")
            except OSError as exc:
                raise ModelLoadFailure(f"Cannot read labels file {labels_path}: {exc}") from exc
            labels = [line.strip() for line in text.splitlines() if line.strip()]
        else:
            raw = session.get_modelmeta().custom_metadata_map.get(LABELS_METADATA_KEY)
            labels = self._parse_labels_metadata(raw)

        if not labels:
            raise ModelLoadFailure(f"Model {model_path.name} has no class labels")
        return tuple(labels)

    @staticmethod
    def _parse_labels_metadata(raw: str | None) -> list[str]:
        if not raw:
            return []
        if raw.lstrip().startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ModelLoadFailure(f"Malformed labels metadata: {exc}") from exc
            return [str(label) for label in parsed]
        return [label.strip() for label in raw.split(",") if label.strip()]

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
