"""Shared fixtures: settings pointing at a temp model file and a fake ONNX session."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from leafscan.config import Settings
from leafscan.ml.image_classifier import ClassificationEngine

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from leafscan.ml.model_manager import Model

LABELS = ["Healthy", "Rust", "Scab"]


def make_onnx_session(
    scores: Sequence[float],
    *,
    shape: Sequence[int | str | None] = (1, 3, 224, 224),
    output_shape: Sequence[int | str | None] | None = None,
    labels: str | None = json.dumps(LABELS),
) -> MagicMock:
    """Build a stand-in for ``onnxruntime.InferenceSession`` with fixed output."""
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input", shape=list(shape))]
    output_dims = list(output_shape or (1, len(scores)))
    session.get_outputs.return_value = [SimpleNamespace(name="probabilities", shape=output_dims)]
    session.get_modelmeta.return_value.custom_metadata_map = {} if labels is None else {"labels": labels}
    session.run.return_value = [np.array([scores], dtype=np.float32)]
    return session


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "plant_disease.onnx"
    path.write_bytes(b"placeholder")
    return path


@pytest.fixture()
def settings(model_file: Path) -> Settings:
    return Settings(model_path=model_file)


@pytest.fixture()
def load_model(settings: Settings) -> Callable[..., tuple[ClassificationEngine, Model]]:
    """Factory returning an engine and a model whose session yields ``scores``."""

    def _load(scores: Sequence[float], **session_kwargs: object) -> tuple[ClassificationEngine, Model]:
        session = make_onnx_session(scores, **session_kwargs)  # type: ignore[arg-type]
        engine = ClassificationEngine(settings)
        with patch("leafscan.ml.model_manager.InferenceSession", return_value=session):
            model = engine.load(settings.model_path)
        return engine, model

    return _load
