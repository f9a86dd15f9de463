"""Mutable in-memory model graph.

Wraps an ONNX ``ModelProto`` so that output-shaping nodes (Softmax, Transpose)
and input layout adapters can be appended before the graph is frozen into an
execution handle. Every append is keyed by node name and skipped when the node
already exists, so augmentation can run any number of times.
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Union

import onnx
from loguru import logger
from onnx import helper

from inference_toolkit.errors import AssetLoadError, ConfigurationError, RunnerStateError
from inference_toolkit.types import IMAGE_CHANNELS, ChannelOrder

ModelAsset = Union[str, os.PathLike, bytes, onnx.ModelProto]

# Ops that only move data around; looked through when checking for a softmax.
_LAYOUT_OPS = frozenset({"Transpose", "Reshape", "Flatten", "Identity", "Squeeze", "Unsqueeze"})

_TO_NCHW = (0, 3, 1, 2)
_TO_NHWC = (0, 2, 3, 1)


def _dims(value_info: onnx.ValueInfoProto) -> list[int | str | None] | None:
    tensor_type = value_info.type.tensor_type
    if not tensor_type.HasField("shape"):
        return None
    dims: list[int | str | None] = []
    for d in tensor_type.shape.dim:
        if d.HasField("dim_value"):
            dims.append(d.dim_value)
        elif d.HasField("dim_param"):
            dims.append(d.dim_param)
        else:
            dims.append(None)
    return dims


def _value_info(name: str, like: onnx.ValueInfoProto, dims: list | None) -> onnx.ValueInfoProto:
    return helper.make_tensor_value_info(name, like.type.tensor_type.elem_type, dims)


class RuntimeGraph:
    """Mutable graph built from a model asset.

    Usage:
        >>> graph = RuntimeGraph.load("models/classifier.onnx")
        >>> graph.append_softmax("softmaxLayer")
        >>> serialized = graph.freeze()
    """

    def __init__(self, model: onnx.ModelProto) -> None:
        self._model = copy.deepcopy(model)
        self._frozen = False

    @classmethod
    def load(cls, asset: ModelAsset) -> RuntimeGraph:
        """Load and check a model asset.

        Args:
            asset: Path to an .onnx file, serialized bytes, or a ModelProto.

        Raises:
            AssetLoadError: If the asset is missing, unreadable, or malformed.
        """
        if asset is None:
            raise AssetLoadError("No model asset provided")
        if isinstance(asset, (str, os.PathLike)) and not Path(asset).exists():
            raise AssetLoadError(f"Model not found: {asset}")

        try:
            if isinstance(asset, onnx.ModelProto):
                model = asset
            elif isinstance(asset, (bytes, bytearray)):
                model = onnx.load_from_string(bytes(asset))
            else:
                model = onnx.load(str(asset))
            onnx.checker.check_model(model)
        except Exception as e:
            raise AssetLoadError(f"Failed to load model: {e}") from e

        if not model.graph.output:
            raise AssetLoadError("Model declares no outputs")
        return cls(model)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def model(self) -> onnx.ModelProto:
        return self._model

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    @property
    def node_count(self) -> int:
        return len(self._model.graph.node)

    @property
    def inputs(self) -> list[str]:
        initializers = {init.name for init in self._model.graph.initializer}
        return [i.name for i in self._model.graph.input if i.name not in initializers]

    @property
    def outputs(self) -> list[str]:
        return [o.name for o in self._model.graph.output]

    def has_node(self, name: str) -> bool:
        return any(n.name == name for n in self._model.graph.node)

    def has_tensor(self, name: str) -> bool:
        graph = self._model.graph
        return (
            any(name in n.output for n in graph.node)
            or any(i.name == name for i in graph.input)
            or any(init.name == name for init in graph.initializer)
        )

    def producer_of(self, tensor_name: str) -> onnx.NodeProto | None:
        for node in reversed(self._model.graph.node):
            if tensor_name in node.output:
                return node
        return None

    def output_dims(self, index: int = 0) -> list[int | str | None] | None:
        return _dims(self._output_info(index))

    def ends_in_softmax(self, index: int = 0) -> bool:
        """Whether the selected output is already normalized by a Softmax."""
        node = self.producer_of(self._output_info(index).name)
        while node is not None:
            if node.op_type == "Softmax":
                return True
            if node.op_type not in _LAYOUT_OPS or not node.input:
                return False
            node = self.producer_of(node.input[0])
        return False

    def input_channel_order(self, index: int = 0) -> ChannelOrder | None:
        """Layout of an image input, inferred from its static shape."""
        dims = _dims(self._input_info(index))
        if dims is None or len(dims) != 4:
            return None
        if dims[1] == IMAGE_CHANNELS:
            return ChannelOrder.NCHW
        if dims[3] == IMAGE_CHANNELS:
            return ChannelOrder.NHWC
        return None

    def input_shape(self, index: int = 0) -> list[int | str | None] | None:
        return _dims(self._input_info(index))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append_softmax(self, name: str, output_index: int = 0) -> bool:
        """Normalize the selected output with a Softmax node.

        Returns:
            True if a node was appended.
        """
        self._check_mutable()
        if self.has_node(name):
            logger.debug(f"Softmax node '{name}' already present")
            return False
        if self.ends_in_softmax(output_index):
            return False
        self._check_unclaimed(name)

        source = self._output_info(output_index)
        dims = _dims(source)
        axis = 0 if dims is not None and len(dims) == 1 else 1
        node = helper.make_node("Softmax", [source.name], [name], name=name, axis=axis)
        self._append(node, output_index, _value_info(name, source, dims))
        logger.info(f"Appended softmax '{name}' after output '{source.name}'")
        return True

    def append_transpose(
        self,
        name: str,
        output_index: int = 0,
        perm: list[int] | None = None,
    ) -> bool:
        """Move the class axis of the selected output last.

        Returns:
            True if a node was appended. Rank <= 2 outputs are left alone.
        """
        self._check_mutable()
        if self.has_node(name):
            logger.debug(f"Transpose node '{name}' already present")
            return False
        self._check_unclaimed(name)

        source = self._output_info(output_index)
        dims = _dims(source)
        if perm is None:
            if dims is None or len(dims) <= 2:
                logger.debug(f"Skipping transpose '{name}': output rank too small")
                return False
            perm = [0, *range(2, len(dims)), 1]

        new_dims = [dims[p] for p in perm] if dims is not None else None
        node = helper.make_node("Transpose", [source.name], [name], name=name, perm=perm)
        self._append(node, output_index, _value_info(name, source, new_dims))
        logger.info(f"Appended transpose '{name}' perm={perm}")
        return True

    def adapt_input_layout(self, order: ChannelOrder, index: int = 0) -> bool:
        """Make the image input accept ``order`` by prepending a Transpose.

        Returns:
            True if the graph input was rewritten.
        """
        self._check_mutable()
        native = self.input_channel_order(index)
        if native is None or native is order:
            return False

        info = self._input_info(index)
        internal = f"{info.name}_{native.value}"
        if self.has_node(internal):
            return False

        perm = _TO_NCHW if native is ChannelOrder.NCHW else _TO_NHWC
        native_dims = _dims(info)
        new_dims: list[int | str | None] = [None] * len(native_dims)
        for axis, src in enumerate(perm):
            new_dims[src] = native_dims[axis]

        graph = self._model.graph
        for node in graph.node:
            for i, name in enumerate(node.input):
                if name == info.name:
                    node.input[i] = internal

        transpose = helper.make_node("Transpose", [info.name], [internal], name=internal, perm=list(perm))
        nodes = [transpose, *(copy.deepcopy(n) for n in graph.node)]
        del graph.node[:]
        graph.node.extend(nodes)

        info.CopyFrom(_value_info(info.name, info, new_dims))
        logger.info(f"Input '{info.name}' adapted from {native.value} to {order.value}")
        return True

    def freeze(self) -> bytes:
        """Serialize the graph. No mutation is allowed afterwards."""
        self._frozen = True
        return self._model.SerializeToString()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RunnerStateError("Graph is frozen; it is owned by an execution handle")

    def _check_unclaimed(self, name: str) -> None:
        if self.has_tensor(name):
            raise ConfigurationError(
                f"Cannot append node '{name}': the model already has a tensor with that name"
            )

    def _output_info(self, index: int) -> onnx.ValueInfoProto:
        outputs = self._model.graph.output
        if not 0 <= index < len(outputs):
            raise ConfigurationError(
                f"Output layer index {index} out of range for {len(outputs)} output(s)"
            )
        return outputs[index]

    def _input_info(self, index: int) -> onnx.ValueInfoProto:
        initializers = {init.name for init in self._model.graph.initializer}
        inputs = [i for i in self._model.graph.input if i.name not in initializers]
        if not 0 <= index < len(inputs):
            raise ConfigurationError(f"Input index {index} out of range for {len(inputs)} input(s)")
        return inputs[index]

    def _append(self, node: onnx.NodeProto, output_index: int, info: onnx.ValueInfoProto) -> None:
        graph = self._model.graph
        graph.node.append(node)
        graph.output[output_index].CopyFrom(info)
