"""End-to-end classification of one image: normalize, resize, encode, classify."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from leafscan.errors import LeafScanError
from leafscan.ml import pixel_buffer, preprocessing
from leafscan.ml.image import load_image
from leafscan.schemas import ErrorOutcome, LabelOutcome, LowConfidenceOutcome, Outcome

if TYPE_CHECKING:
    from pathlib import Path
    from typing import BinaryIO

    from leafscan.config import Settings
    from leafscan.ml.image import RawImage
    from leafscan.ml.image_classifier import ClassificationResult, ImageClassifier
    from leafscan.ml.model_manager import Model

logger = logging.getLogger(__name__)

# Absorbs float error so that e.g. 0.29 reports 29% rather than 28%.
_PERCENT_EPSILON = 1e-9


def confidence_percent(confidence: float) -> int:
    """Truncate a [0, 1] confidence to a whole percentage."""
    return min(100, max(0, math.floor(confidence * 100 + _PERCENT_EPSILON)))


def interpret(result: ClassificationResult) -> Outcome:
    """Apply the low-confidence policy to ranked predictions."""
    if result.is_low_confidence:
        return LowConfidenceOutcome()
    top = result.top
    return LabelOutcome(label=top.label, confidence_percent=confidence_percent(top.confidence))


class ClassificationPipeline:
    """Runs the preprocessing stages and the engine for a loaded model.

    Holds no per-request state; one instance may serve concurrent calls.
    """

    def __init__(self, classifier: ImageClassifier, model: Model, settings: Settings) -> None:
        self._classifier = classifier
        self._model = model
        self._settings = settings
        self._accepted_formats = classifier.accepted_formats(model)

    @property
    def model(self) -> Model:
        return self._model

    def decode(self, source: bytes | str | Path | BinaryIO) -> RawImage:
        """Decode caller input, enforcing the configured pixel limit.

        Raises:
            ValueError: If the image cannot be decoded or is too large.
        """
        return load_image(source, max_pixels=self._settings.max_image_pixels)

    def run(self, image: RawImage) -> ClassificationResult:
        """Classify an image.

        Raises:
            RenderFailure, ResizeFailure, EncodeFailure, InferenceFailure:
                From the failing stage.
        """
        settings = self._settings
        upright = preprocessing.normalize(image)
        resized = preprocessing.resize(
            upright,
            self._model.input_width,
            self._model.input_height,
            resample=settings.resample,
        )
        buffer = pixel_buffer.encode(
            resized,
            settings.pixel_format,
            accepted_formats=self._accepted_formats,
            row_alignment=settings.row_alignment,
            row_order=settings.buffer_row_order,
        )
        return self._classifier.classify(buffer, self._model)

    def evaluate(self, image: RawImage) -> Outcome:
        """Classify an image and turn the result, or the failure, into an outcome."""
        try:
            result = self.run(image)
        except LeafScanError as exc:
            logger.warning("Classification failed: %s: %s", type(exc).__name__, exc)
            return ErrorOutcome(error=f"Failed to classify image: {exc}")
        return interpret(result)
