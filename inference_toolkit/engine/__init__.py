"""Engine module: ONNX graph handling and execution handles."""

from inference_toolkit.engine.graph import ModelAsset, RuntimeGraph
from inference_toolkit.engine.layout import ChannelOrderRegistry, get_channel_order_registry
from inference_toolkit.engine.onnx_runtime import ExecutionHandle, OwnedTensor
from inference_toolkit.engine.platform import PlatformInfo, resolve_backend

__all__ = [
    "ChannelOrderRegistry",
    "ExecutionHandle",
    "ModelAsset",
    "OwnedTensor",
    "PlatformInfo",
    "RuntimeGraph",
    "get_channel_order_registry",
    "resolve_backend",
]
