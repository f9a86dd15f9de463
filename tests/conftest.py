"""Shared test fixtures for the inference toolkit."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import onnx
import pytest
from loguru import logger
from onnx import TensorProto, helper, numpy_helper

from inference_toolkit.engine.layout import get_channel_order_registry
from inference_toolkit.engine.platform import PlatformInfo

NUM_CLASSES = 10
IMAGE_SIZE = 224
CLASS_NAMES = [f"class_{i}" for i in range(NUM_CLASSES)]


def make_classifier_model(
    num_classes: int = NUM_CLASSES,
    size: int = IMAGE_SIZE,
    with_softmax: bool = False,
    spatial_output: bool = False,
    extra_output: bool = False,
    seed: int = 0,
) -> onnx.ModelProto:
    """Tiny NCHW classifier: GlobalAveragePool -> Gemm (or 1x1 Conv).

    An all-zero input yields the bias as logits.
    """
    rng = np.random.default_rng(seed)
    bias = rng.standard_normal(num_classes).astype(np.float32)

    if spatial_output:
        weight = rng.standard_normal((num_classes, 3, 1, 1)).astype(np.float32)
        nodes = [
            helper.make_node("GlobalAveragePool", ["input"], ["pooled"]),
            helper.make_node("Conv", ["pooled", "weight", "bias"], ["logits"]),
        ]
        logits_shape = [1, num_classes, 1, 1]
    else:
        weight = rng.standard_normal((num_classes, 3)).astype(np.float32)
        nodes = [
            helper.make_node("GlobalAveragePool", ["input"], ["pooled"]),
            helper.make_node("Flatten", ["pooled"], ["features"], axis=1),
            helper.make_node("Gemm", ["features", "weight", "bias"], ["logits"], transB=1),
        ]
        logits_shape = [1, num_classes]

    output_name = "logits"
    if with_softmax:
        nodes.append(helper.make_node("Softmax", ["logits"], ["probs"], axis=1))
        output_name = "probs"

    outputs = [helper.make_tensor_value_info(output_name, TensorProto.FLOAT, logits_shape)]
    if extra_output and not spatial_output:
        outputs.insert(0, helper.make_tensor_value_info("features", TensorProto.FLOAT, [1, 3]))

    graph = helper.make_graph(
        nodes,
        "tiny_classifier",
        [helper.make_tensor_value_info("input", TensorProto.FLOAT, [1, 3, size, size])],
        outputs,
        initializer=[
            numpy_helper.from_array(weight, "weight"),
            numpy_helper.from_array(bias, "bias"),
        ],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 17)])
    model.ir_version = 8
    return model


def model_bias(model: onnx.ModelProto) -> np.ndarray:
    for init in model.graph.initializer:
        if init.name == "bias":
            return numpy_helper.to_array(init)
    raise KeyError("bias")


def softmax(x: np.ndarray) -> np.ndarray:
    e = np.exp(x - x.max())
    return e / e.sum()


@pytest.fixture(autouse=True)
def reset_channel_order():
    """Each test starts without channel-order claims."""
    get_channel_order_registry().reset()
    yield
    get_channel_order_registry().reset()


@pytest.fixture
def tiny_model() -> onnx.ModelProto:
    return make_classifier_model()


@pytest.fixture
def tiny_model_path(tmp_path: Path, tiny_model: onnx.ModelProto) -> Path:
    path = tmp_path / "classifier.onnx"
    onnx.save(tiny_model, str(path))
    return path


@pytest.fixture
def labels_json() -> str:
    return json.dumps({"classes": CLASS_NAMES})


@pytest.fixture
def cpu_platform() -> PlatformInfo:
    return PlatformInfo(available_providers=("CPUExecutionProvider",), supports_async_readback=False)


@pytest.fixture
def gpu_platform() -> PlatformInfo:
    """Platform advertising a compute GPU; sessions still run on whatever ORT has."""
    return PlatformInfo(
        available_providers=("CUDAExecutionProvider", "CPUExecutionProvider"),
        supports_async_readback=True,
    )


@pytest.fixture
def zero_image() -> np.ndarray:
    return np.zeros((IMAGE_SIZE, IMAGE_SIZE, 3), dtype=np.uint8)


@pytest.fixture
def random_image() -> np.ndarray:
    return np.random.default_rng(42).integers(0, 256, (IMAGE_SIZE, IMAGE_SIZE, 3), dtype=np.uint8)


@pytest.fixture
def log_messages():
    """Messages emitted through loguru while the test runs."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
