"""Inference Toolkit: model runner and image classifier over ONNX Runtime."""

from inference_toolkit.labels import LabelTable, load_labels
from inference_toolkit.runner import (
    ClassifierConfig,
    ModelRunner,
    MultiClassImageClassifier,
    RunnerHooks,
)
from inference_toolkit.types import BackendSelection, BackendType, ChannelOrder, RunnerState

__version__ = "0.1.0"

__all__ = [
    "BackendSelection",
    "BackendType",
    "ChannelOrder",
    "ClassifierConfig",
    "LabelTable",
    "ModelRunner",
    "MultiClassImageClassifier",
    "RunnerHooks",
    "RunnerState",
    "load_labels",
]
