"""Tests for inference_toolkit.runner.classifier: retrieval paths and labels."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import onnx
import pytest
from conftest import CLASS_NAMES, NUM_CLASSES, make_classifier_model, model_bias, softmax
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from hypothesis.extra.numpy import arrays

from inference_toolkit.config import Settings
from inference_toolkit.engine.platform import PlatformInfo
from inference_toolkit.errors import ExecutionError, IndexOutOfRangeError, TransferError
from inference_toolkit.readback.queue import ReadbackQueue
from inference_toolkit.runner.classifier import ClassifierConfig, MultiClassImageClassifier
from inference_toolkit.types import BackendType, RunnerState

CPU_CONFIG = ClassifierConfig(backend=BackendType.CPU, use_nchw=True)
GPU_CONFIG = ClassifierConfig(backend=BackendType.GPU_COMPUTE, use_async_readback=True)


@pytest.fixture
def classifier(tiny_model: onnx.ModelProto, labels_json: str, cpu_platform: PlatformInfo):
    clf = MultiClassImageClassifier(tiny_model, labels_json, CPU_CONFIG, platform=cpu_platform)
    assert clf.start()
    yield clf
    clf.stop()


@pytest.fixture
def queue() -> ReadbackQueue:
    return ReadbackQueue()


@pytest.fixture
def async_classifier(
    tiny_model: onnx.ModelProto,
    labels_json: str,
    gpu_platform: PlatformInfo,
    queue: ReadbackQueue,
):
    clf = MultiClassImageClassifier(
        tiny_model, labels_json, GPU_CONFIG, platform=gpu_platform, readback_queue=queue
    )
    assert clf.start()
    yield clf
    clf.stop()


class TestStart:
    """Tests for classifier setup."""

    def test_ready(self, classifier: MultiClassImageClassifier) -> None:
        assert classifier.is_ready
        assert classifier.class_count == NUM_CLASSES
        assert classifier.output_layer == "softmaxLayer"
        assert not classifier.uses_async_readback
        assert classifier.preprocessor.config.target_width == 224

    def test_missing_model_degrades(self, labels_json: str, cpu_platform: PlatformInfo, log_messages) -> None:
        clf = MultiClassImageClassifier("/nonexistent/model.onnx", labels_json, platform=cpu_platform)
        assert not clf.start()
        assert not clf.is_ready
        assert clf.class_count == NUM_CLASSES
        assert any("setup failed" in m for m in log_messages)
        with pytest.raises(ExecutionError):
            clf.execute_model(np.zeros((224, 224, 3), dtype=np.uint8))

    def test_bad_output_index_degrades(
        self, tiny_model: onnx.ModelProto, labels_json: str, cpu_platform: PlatformInfo
    ) -> None:
        config = ClassifierConfig(output_layer_index=2)
        clf = MultiClassImageClassifier(tiny_model, labels_json, config, platform=cpu_platform)
        assert not clf.start()
        assert clf.runner.state is RunnerState.RELEASED

    def test_softmax_name_clash_degrades(
        self, tiny_model: onnx.ModelProto, labels_json: str, cpu_platform: PlatformInfo, log_messages
    ) -> None:
        config = ClassifierConfig(backend=BackendType.CPU, softmax_layer="logits")
        clf = MultiClassImageClassifier(tiny_model, labels_json, config, platform=cpu_platform)
        assert not clf.start()
        assert any("already has a tensor" in m for m in log_messages)

    def test_existing_softmax_output_used(self, labels_json: str, cpu_platform: PlatformInfo) -> None:
        model = make_classifier_model(with_softmax=True)
        with MultiClassImageClassifier(model, labels_json, CPU_CONFIG, platform=cpu_platform) as clf:
            assert clf.output_layer == "probs"
            assert clf.runner.graph.node_count == 4

    def test_output_layer_index(self, labels_json: str, cpu_platform: PlatformInfo) -> None:
        model = make_classifier_model(extra_output=True)
        config = ClassifierConfig(backend=BackendType.CPU, output_layer_index=1)
        with MultiClassImageClassifier(model, labels_json, config, platform=cpu_platform) as clf:
            assert clf.output_layer == "softmaxLayer"
            scores = clf.execute_model(np.zeros((224, 224, 3), dtype=np.uint8))
            assert scores.shape == (NUM_CLASSES,)

    def test_channel_conflict_degrades(
        self, classifier: MultiClassImageClassifier, tiny_model: onnx.ModelProto, labels_json: str,
        cpu_platform: PlatformInfo,
    ) -> None:
        config = ClassifierConfig(backend=BackendType.CPU, use_nchw=False)
        other = MultiClassImageClassifier(tiny_model, labels_json, config, platform=cpu_platform)
        assert not other.start()

    def test_from_settings(self, tiny_model_path: Path, labels_json: str, tmp_path: Path, cpu_platform) -> None:
        labels_path = tmp_path / "labels.json"
        labels_path.write_text(labels_json, encoding="utf-8")
        cfg = Settings(model_path=str(tiny_model_path), labels_path=str(labels_path), backend="cpu")
        with MultiClassImageClassifier.from_settings(cfg, platform=cpu_platform) as clf:
            assert clf.is_ready
            assert clf.class_name(3) == "class_3"


class TestSyncPath:
    """Tests for synchronous download."""

    def test_zero_image_matches_reference(
        self, classifier: MultiClassImageClassifier, tiny_model: onnx.ModelProto, zero_image: np.ndarray
    ) -> None:
        scores = classifier.execute_model(zero_image)
        assert scores.shape == (NUM_CLASSES,)
        assert scores.dtype == np.float32
        np.testing.assert_allclose(scores, softmax(model_bias(tiny_model)), rtol=1e-5, atol=1e-6)

    def test_scores_sum_to_one(self, classifier: MultiClassImageClassifier, random_image: np.ndarray) -> None:
        scores = classifier.execute_model(random_image)
        assert scores.sum() == pytest.approx(1.0, abs=1e-5)

    def test_download_before_execute_raises(self, classifier: MultiClassImageClassifier) -> None:
        with pytest.raises(ExecutionError):
            classifier.download_sync()

    def test_download_is_repeatable(self, classifier: MultiClassImageClassifier, random_image: np.ndarray) -> None:
        first = classifier.execute_model(random_image)
        np.testing.assert_array_equal(classifier.download_sync(), first)

    def test_label_count_mismatch_raises(self, classifier: MultiClassImageClassifier, zero_image) -> None:
        classifier.load_labels(json.dumps({"classes": ["a", "b"]}))
        with pytest.raises(ExecutionError, match="label table"):
            classifier.execute_model(zero_image)

    def test_classify_top_k(self, classifier: MultiClassImageClassifier, tiny_model, zero_image) -> None:
        results = classifier.classify(zero_image, top_k=3)
        expected = int(np.argmax(model_bias(tiny_model)))
        assert len(results) == 3
        assert results[0].class_id == expected
        assert results[0].label == CLASS_NAMES[expected]
        assert results[0].confidence >= results[1].confidence >= results[2].confidence

    def test_channels_last_matches(self, tiny_model, labels_json, cpu_platform, random_image) -> None:
        with MultiClassImageClassifier(tiny_model, labels_json, CPU_CONFIG, platform=cpu_platform) as clf:
            nchw = clf.execute_model(random_image)
        config = ClassifierConfig(backend=BackendType.CPU, use_nchw=False)
        with MultiClassImageClassifier(tiny_model, labels_json, config, platform=cpu_platform) as clf:
            nhwc = clf.execute_model(random_image)
        np.testing.assert_allclose(nchw, nhwc, atol=1e-5)

    def test_transposed_spatial_output(self, labels_json: str, cpu_platform: PlatformInfo, zero_image) -> None:
        model = make_classifier_model(spatial_output=True)
        config = ClassifierConfig(backend=BackendType.CPU, transpose_layer="transposeLayer")
        with MultiClassImageClassifier(model, labels_json, config, platform=cpu_platform) as clf:
            assert clf.output_layer == "transposeLayer"
            scores = clf.execute_model(zero_image)
        np.testing.assert_allclose(scores, softmax(model_bias(model)), rtol=1e-5, atol=1e-6)

    @given(
        image=arrays(
            dtype=np.float32,
            shape=(8, 8, 3),
            elements=st.floats(0.0, 1.0, allow_nan=False, allow_infinity=False, width=32),
        )
    )
    @settings(max_examples=15, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_softmax_invariant(self, image: np.ndarray, labels_json: str, cpu_platform: PlatformInfo) -> None:
        model = make_classifier_model(size=8)
        with MultiClassImageClassifier(model, labels_json, CPU_CONFIG, platform=cpu_platform) as clf:
            scores = clf.execute_model(image)
        assert scores.shape == (NUM_CLASSES,)
        assert scores.sum() == pytest.approx(1.0, abs=1e-5)
        assert np.all(scores >= 0.0)


class TestAsyncGate:
    """Fallback when async readback is unavailable."""

    def test_platform_without_support(self, classifier: MultiClassImageClassifier, random_image) -> None:
        assert not classifier.uses_async_readback
        scores = classifier.execute_model(random_image)
        np.testing.assert_array_equal(classifier.request_async_readback(), scores)
        np.testing.assert_array_equal(classifier.request_async_readback(), classifier.download_sync())
        assert classifier.readback_queue.pending == 0

    def test_non_compute_backend(self, tiny_model, labels_json, gpu_platform, random_image, log_messages) -> None:
        config = ClassifierConfig(backend=BackendType.CPU, use_async_readback=True)
        with MultiClassImageClassifier(tiny_model, labels_json, config, platform=gpu_platform) as clf:
            assert not clf.uses_async_readback
            clf.execute_model(random_image)
            np.testing.assert_array_equal(clf.request_async_readback(), clf.download_sync())
        assert any("requires the gpu_compute backend" in m for m in log_messages)

    def test_opt_out(self, tiny_model, labels_json, gpu_platform) -> None:
        config = ClassifierConfig(backend=BackendType.GPU_COMPUTE, use_async_readback=False)
        with MultiClassImageClassifier(tiny_model, labels_json, config, platform=gpu_platform) as clf:
            assert not clf.uses_async_readback


class TestAsyncPath:
    """Tests for the asynchronous readback path."""

    def test_enabled(self, async_classifier: MultiClassImageClassifier) -> None:
        assert async_classifier.uses_async_readback
        assert async_classifier.runner.selection.backend is BackendType.GPU_COMPUTE

    def test_first_cycle_returns_initial_texture(self, async_classifier, queue, zero_image) -> None:
        scores = async_classifier.execute_model(zero_image)
        np.testing.assert_array_equal(scores, np.zeros(NUM_CLASSES, dtype=np.float32))
        assert queue.pending == 1

    def test_result_arrives_after_tick(self, async_classifier, queue, tiny_model, zero_image) -> None:
        async_classifier.execute_model(zero_image)
        queue.tick()
        scores = async_classifier.request_async_readback()
        np.testing.assert_allclose(scores, softmax(model_bias(tiny_model)), rtol=1e-5, atol=1e-6)

    def test_one_cycle_lag(self, async_classifier, queue, zero_image, random_image) -> None:
        first = async_classifier.execute_model(zero_image)
        second = async_classifier.execute_model(random_image)
        expected_latest = async_classifier.download_sync()

        np.testing.assert_array_equal(second, first)
        assert queue.pending == 2

        queue.tick()
        current = async_classifier.request_async_readback()
        np.testing.assert_allclose(current, expected_latest, rtol=1e-6)

    def test_transfer_error_keeps_previous(self, tiny_model, labels_json, gpu_platform, zero_image, log_messages) -> None:
        fail = {"on": False}

        def transfer(payload: bytes) -> bytes:
            if fail["on"]:
                raise TransferError("device lost")
            return payload

        queue = ReadbackQueue(transfer=transfer)
        with MultiClassImageClassifier(
            tiny_model, labels_json, GPU_CONFIG, platform=gpu_platform, readback_queue=queue
        ) as clf:
            clf.execute_model(zero_image)
            queue.tick()
            before = clf.request_async_readback()
            queue.tick()

            fail["on"] = True
            clf.execute_model(np.full((224, 224, 3), 255, dtype=np.uint8))
            queue.tick()
            np.testing.assert_array_equal(clf.request_async_readback(), before)
        assert any("GPU readback error" in m for m in log_messages)

    def test_size_mismatch_skips_update(self, tiny_model, labels_json, gpu_platform, zero_image, log_messages) -> None:
        queue = ReadbackQueue(transfer=lambda payload: payload + b"\x00\x00\x00\x00")
        with MultiClassImageClassifier(
            tiny_model, labels_json, GPU_CONFIG, platform=gpu_platform, readback_queue=queue
        ) as clf:
            clf.execute_model(zero_image)
            queue.tick()
            np.testing.assert_array_equal(clf.request_async_readback(), np.zeros(NUM_CLASSES, dtype=np.float32))
        assert any("size mismatch" in m for m in log_messages)
        assert not any("GPU readback error" in m for m in log_messages)

    def test_completion_after_stop(self, async_classifier, queue, zero_image) -> None:
        async_classifier.execute_model(zero_image)
        async_classifier.stop()
        assert queue.tick() == 1


class TestLabels:
    """Tests for label management on the classifier."""

    def test_class_name(self, classifier: MultiClassImageClassifier) -> None:
        for i in range(NUM_CLASSES):
            assert classifier.class_name(i) == CLASS_NAMES[i]

    def test_index_out_of_range(self, classifier: MultiClassImageClassifier) -> None:
        with pytest.raises(IndexOutOfRangeError):
            classifier.class_name(NUM_CLASSES)
        with pytest.raises(IndexOutOfRangeError):
            classifier.class_name(-1)

    @pytest.mark.parametrize("payload", ["", None, "   ", "{not json"])
    def test_malformed_labels(self, classifier: MultiClassImageClassifier, payload, log_messages) -> None:
        classifier.load_labels(payload)
        assert classifier.class_count == 0
        assert log_messages
