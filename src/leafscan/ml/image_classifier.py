"""Classification engine: run a loaded model over an encoded pixel buffer.

The engine owns the tensor conversion (channel unpacking, scaling, layout)
and the score post-processing. The model's internals are opaque.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from leafscan.errors import InferenceFailure
from leafscan.ml.model_manager import OnnxModelManager
from leafscan.ml.pixel_buffer import PixelFormat

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

    from leafscan.config import Settings
    from leafscan.ml.model_manager import Model, ModelManager
    from leafscan.ml.pixel_buffer import PixelBuffer

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD: float = 0.5

RGB_FORMATS = frozenset({PixelFormat.ARGB32, PixelFormat.BGRA32, PixelFormat.RGBA32})
GRAY_FORMATS = frozenset({PixelFormat.GRAY8})

# Byte positions of R, G, B (or the single luma byte) within one pixel.
_CHANNEL_INDEX: dict[PixelFormat, list[int]] = {
    PixelFormat.ARGB32: [1, 2, 3],
    PixelFormat.BGRA32: [2, 1, 0],
    PixelFormat.RGBA32: [0, 1, 2],
    PixelFormat.GRAY8: [0],
}

# Tolerance for treating raw output as an already-normalized distribution.
_DISTRIBUTION_TOLERANCE = 1e-3


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class ClassificationResult:
    """Predictions sorted by confidence (descending), ties in model output order."""

    predictions: tuple[Prediction, ...]

    @property
    def top(self) -> Prediction:
        return self.predictions[0]

    @property
    def is_low_confidence(self) -> bool:
        """True when the top confidence is too low to count as a prediction."""
        return self.top.confidence < LOW_CONFIDENCE_THRESHOLD


class ImageClassifier(Protocol):
    """Protocol for image classification engines."""

    def load(self, path: str | Path) -> Model:
        """Load (or return the cached) model at a path."""
        ...

    def accepted_formats(self, model: Model) -> frozenset[PixelFormat]:
        """Return the pixel formats the engine can feed to a model."""
        ...

    def classify(self, buffer: PixelBuffer, model: Model) -> ClassificationResult:
        """Classify an encoded image and return ranked predictions.

        Args:
            buffer: Pixel buffer at the model's input size.
            model: Loaded model.

        Returns:
            Predictions sorted by confidence (descending).
        """
        ...


def softmax(scores: NDArray[np.float64]) -> NDArray[np.float64]:
    exp_scores = np.exp(scores - np.max(scores))  # Numerical stability
    result: NDArray[np.float64] = exp_scores / exp_scores.sum()
    return result


class ClassificationEngine:
    """ONNX Runtime implementation of ``ImageClassifier``."""

    def __init__(self, settings: Settings, model_manager: ModelManager | None = None) -> None:
        self._settings = settings
        self._model_manager = model_manager or OnnxModelManager(settings)
        self._scale = np.float32(settings.input_scale)
        self._mean = np.asarray(settings.input_mean, dtype=np.float32)
        self._std = np.asarray(settings.input_std, dtype=np.float32)

    def load(self, path: str | Path) -> Model:
        """Load a model through the model manager.

        Raises:
            ModelLoadFailure: If the model cannot be loaded.
        """
        return self._model_manager.load(path)

    def accepted_formats(self, model: Model) -> frozenset[PixelFormat]:
        return GRAY_FORMATS if model.channels == 1 else RGB_FORMATS

    def classify(self, buffer: PixelBuffer, model: Model) -> ClassificationResult:
        """Run the model on a buffer.

        Raises:
            InferenceFailure: If the buffer does not fit the model, the runtime
                fails, or the output is empty, non-finite, or does not match
                the label count.
        """
        tensor = self._to_tensor(buffer, model)
        try:
            outputs = model.session.run([model.output_name], {model.input_name: tensor})
        except Exception as exc:  # onnxruntime's pybind errors derive directly from Exception
            raise InferenceFailure(f"Model {model.name} failed to run: {exc}") from exc

        try:
            scores = np.asarray(outputs[0], dtype=np.float64).reshape(-1) if outputs else np.empty(0)
        except (TypeError, ValueError) as exc:
            raise InferenceFailure(f"Model {model.name} returned non-numeric output: {exc}") from exc
        if scores.size == 0:
            raise InferenceFailure(f"Model {model.name} returned no scores")
        if not np.all(np.isfinite(scores)):
            raise InferenceFailure(f"Model {model.name} returned non-finite scores")
        if scores.size != len(model.labels):
            raise InferenceFailure(f"Model {model.name} returned {scores.size} scores for {len(model.labels)} labels")

        probs = np.clip(self._to_probabilities(scores), 0.0, 1.0)
        order = np.argsort(-probs, kind="stable")
        predictions = tuple(Prediction(label=model.labels[idx], confidence=float(probs[idx])) for idx in order)

        logger.debug("Top prediction %s (%.4f)", predictions[0].label, predictions[0].confidence)
        return ClassificationResult(predictions=predictions)

    def shutdown(self) -> None:
        self._model_manager.shutdown()

    # -- Internal -----------------------------------------------------------

    def _to_tensor(self, buffer: PixelBuffer, model: Model) -> NDArray[np.float32]:
        if buffer.width != model.input_width or buffer.height != model.input_height:
            raise InferenceFailure(
                f"Buffer is {buffer.width}x{buffer.height}, "
                f"model {model.name} expects {model.input_width}x{model.input_height}"
            )
        if buffer.pixel_format not in self.accepted_formats(model):
            raise InferenceFailure(f"Model {model.name} cannot read {buffer.pixel_format} buffers")

        pixels = buffer.to_array()[..., _CHANNEL_INDEX[buffer.pixel_format]]
        mean, std = self._mean[: model.channels], self._std[: model.channels]
        tensor = (pixels.astype(np.float32) * self._scale - mean) / std

        if model.layout == "NCHW":
            tensor = tensor.transpose(2, 0, 1)
        # Ensure contiguous memory layout for ONNX Runtime
        return np.ascontiguousarray(np.expand_dims(tensor, axis=0), dtype=np.float32)

    def _to_probabilities(self, scores: NDArray[np.float64]) -> NDArray[np.float64]:
        activation = self._settings.output_activation
        if activation == "none":
            return scores
        if activation == "auto" and self._is_distribution(scores):
            return scores
        return softmax(scores)

    @staticmethod
    def _is_distribution(scores: NDArray[np.float64]) -> bool:
        return bool(
            np.all(scores >= 0.0) and np.all(scores <= 1.0) and scores.sum() <= 1.0 + _DISTRIBUTION_TOLERANCE
        )
