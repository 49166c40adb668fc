"""Tests for the ONNX model manager."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import LABELS, make_onnx_session
from leafscan.config import Settings
from leafscan.errors import ModelLoadFailure
from leafscan.ml.model_manager import OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoad:
    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_load_describes_model(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.1, 0.2, 0.7])
        mgr = OnnxModelManager(_make_settings())

        model = mgr.load(model_file)

        assert model.name == "plant_disease"
        assert model.path == model_file.resolve()
        assert model.layout == "NCHW"
        assert model.channels == 3
        assert (model.input_width, model.input_height) == (224, 224)
        assert model.input_name == "input"
        assert model.output_name == "probabilities"
        assert model.labels == tuple(LABELS)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_load_caches_per_path(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.1, 0.2, 0.7])
        mgr = OnnxModelManager(_make_settings())

        first = mgr.load(model_file)
        second = mgr.load(str(model_file))

        assert first is second
        mock_session_cls.assert_called_once()

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_nhwc_input(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2], shape=(1, 299, 299, 3))
        model = OnnxModelManager(_make_settings()).load(model_file)
        assert model.layout == "NHWC"
        assert (model.input_width, model.input_height, model.channels) == (299, 299, 3)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_symbolic_dims_use_configured_size(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2], shape=("batch", 3, "height", None))
        model = OnnxModelManager(_make_settings(input_size=128)).load(model_file)
        assert (model.input_width, model.input_height) == (128, 128)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_grayscale_input(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2], shape=(1, 1, 224, 224))
        model = OnnxModelManager(_make_settings()).load(model_file)
        assert model.channels == 1

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_comma_separated_labels(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.5], labels="Healthy, Blight")
        model = OnnxModelManager(_make_settings()).load(model_file)
        assert model.labels == ("Healthy", "Blight")

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_labels_file_takes_precedence(self, mock_session_cls: MagicMock, model_file: Path, tmp_path: Path) -> None:
        labels_file = tmp_path / "labels.txt"
        labels_file.write_text("Healthy\nPowdery mildew\n\n", encoding="utf-8")
        mock_session_cls.return_value = make_onnx_session([0.5, 0.5])

        model = OnnxModelManager(_make_settings(labels_path=labels_file)).load(model_file)

        assert model.labels == ("Healthy", "Powdery mildew")


# ---------------------------------------------------------------------------
# Load failures
# ---------------------------------------------------------------------------


class TestLoadFailures:
    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_missing_file(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(ModelLoadFailure, match="not found"):
            mgr.load(tmp_path / "missing.onnx")
        mock_session_cls.assert_not_called()

    def test_corrupt_file(self, tmp_path: Path) -> None:
        corrupt = tmp_path / "corrupt.onnx"
        corrupt.write_bytes(b"\x00\x01 definitely not a protobuf \xff")
        mgr = OnnxModelManager(_make_settings())

        with pytest.raises(ModelLoadFailure, match=r"Cannot load model corrupt\.onnx"):
            mgr.load(corrupt)
        assert mgr.get_loaded_models() == []

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_incompatible_runtime(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.side_effect = RuntimeError("Unsupported model IR version: 99")
        with pytest.raises(ModelLoadFailure, match="IR version") as exc_info:
            OnnxModelManager(_make_settings()).load(model_file)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_non_image_input(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2], shape=(1, 1000))
        with pytest.raises(ModelLoadFailure, match="4-D image tensor"):
            OnnxModelManager(_make_settings()).load(model_file)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_no_channel_axis(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2], shape=(1, 5, 224, 224))
        with pytest.raises(ModelLoadFailure, match="channel axis"):
            OnnxModelManager(_make_settings()).load(model_file)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_missing_labels(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2], labels=None)
        with pytest.raises(ModelLoadFailure, match="no class labels"):
            OnnxModelManager(_make_settings()).load(model_file)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_output_width_must_match_labels(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.4, 0.3, 0.2, 0.1])
        with pytest.raises(ModelLoadFailure, match="outputs 4 scores but has 3 labels"):
            OnnxModelManager(_make_settings()).load(model_file)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_symbolic_output_width_is_accepted(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.4, 0.3, 0.2, 0.1], output_shape=("batch", "classes"))
        assert OnnxModelManager(_make_settings()).load(model_file).labels == tuple(LABELS)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_malformed_labels_metadata(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2], labels='["Healthy",')
        with pytest.raises(ModelLoadFailure, match="Malformed labels"):
            OnnxModelManager(_make_settings()).load(model_file)

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_unreadable_labels_file(self, mock_session_cls: MagicMock, model_file: Path, tmp_path: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.5, 0.3, 0.2])
        settings = _make_settings(labels_path=tmp_path / "nope.txt")
        with pytest.raises(ModelLoadFailure, match="Cannot read labels file"):
            OnnxModelManager(settings).load(model_file)


# ---------------------------------------------------------------------------
# Lifecycle and runtime configuration
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_get_loaded_models(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.1, 0.2, 0.7])
        mgr = OnnxModelManager(_make_settings())

        assert mgr.get_loaded_models() == []
        mgr.load(model_file)
        assert mgr.get_loaded_models() == ["plant_disease"]

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_shutdown_clears_models(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.1, 0.2, 0.7])
        mgr = OnnxModelManager(_make_settings())
        mgr.load(model_file)
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="openvino"))
        assert len(mgr._providers) == 2
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("leafscan.ml.model_manager.InferenceSession")
    def test_session_built_with_providers(self, mock_session_cls: MagicMock, model_file: Path) -> None:
        mock_session_cls.return_value = make_onnx_session([0.1, 0.2, 0.7])
        mgr = OnnxModelManager(_make_settings())
        mgr.load(model_file)

        _, kwargs = mock_session_cls.call_args
        assert kwargs["providers"] == ["CPUExecutionProvider"]
        assert kwargs["sess_options"].inter_op_num_threads == 1
