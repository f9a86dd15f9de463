"""ONNX Runtime execution handle.

Compiles a frozen RuntimeGraph into an ``InferenceSession`` bound to the
providers of the resolved backend, and hands out scoped views of the
outputs of the last execution.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import numpy as np
import onnxruntime as ort
from loguru import logger

from inference_toolkit.engine.platform import providers_for
from inference_toolkit.errors import AssetLoadError, ExecutionError, RunnerStateError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from inference_toolkit.engine.graph import RuntimeGraph
    from inference_toolkit.types import BackendSelection


class OwnedTensor:
    """Output tensor valid for a single retrieval.

    Only readable inside its ``with`` block; this view's reference to the
    engine's buffer is dropped on exit, whichever way the block is left. The
    execution handle keeps its own reference until the next execute or
    dispose, so the same output can be peeked again.

    Usage:
        >>> with handle.peek_output("softmaxLayer") as output:
        ...     scores = output.download()
    """

    def __init__(self, name: str, data: NDArray[Any]) -> None:
        self._name = name
        self._data: NDArray[Any] | None = data
        self._entered = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_released(self) -> bool:
        return self._data is None

    @property
    def shape(self) -> tuple[int, ...]:
        return self._require().shape

    def download(self) -> NDArray[np.float32]:
        """Copy the tensor into caller-owned memory."""
        return np.array(self._require(), dtype=np.float32, copy=True)

    def reshape(self, shape: tuple[int, ...]) -> NDArray[np.float32]:
        return self.download().reshape(shape)

    def release(self) -> None:
        self._data = None

    def _require(self) -> NDArray[Any]:
        if self._data is None:
            raise ExecutionError(f"Output tensor '{self._name}' used after release")
        if not self._entered:
            raise ExecutionError(f"Output tensor '{self._name}' must be used inside a with block")
        return self._data

    def __enter__(self) -> OwnedTensor:
        if self._data is None:
            raise ExecutionError(f"Output tensor '{self._name}' used after release")
        self._entered = True
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()


class ExecutionHandle:
    """Backend-bound executable form of a RuntimeGraph.

    Created once per runner configuration and disposed exactly once.
    Not reentrant: execute calls must not overlap. Outputs of the last
    successful execute are retained until the next execute or dispose.
    """

    def __init__(
        self,
        graph: RuntimeGraph,
        selection: BackendSelection,
        available_providers: tuple[str, ...] | None = None,
        num_threads: int = 0,
    ) -> None:
        """Build the session.

        Args:
            graph: Finalized graph; frozen by this call.
            selection: Resolved backend and channel order.
            available_providers: Providers to choose from (defaults to ORT's).
            num_threads: Intra-op threads for CPU (0 = engine default).

        Raises:
            AssetLoadError: If the engine rejects the graph.
        """
        self._selection = selection
        self._providers = providers_for(selection.backend, available_providers)

        session_options = ort.SessionOptions()
        session_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        if num_threads > 0:
            session_options.intra_op_num_threads = num_threads

        serialized = graph.freeze()
        try:
            self._session: ort.InferenceSession | None = ort.InferenceSession(
                serialized,
                sess_options=session_options,
                providers=self._providers,
            )
        except Exception as e:
            raise AssetLoadError(f"Failed to build execution handle: {e}") from e

        self._input_names = [inp.name for inp in self._session.get_inputs()]
        self._output_names = [out.name for out in self._session.get_outputs()]
        self._last_outputs: dict[str, NDArray[Any]] = {}

        logger.info(
            f"Execution handle ready | "
            f"Backend: {selection.backend.value} | "
            f"Provider: {self._session.get_providers()[0]} | "
            f"Inputs: {self._input_names} | "
            f"Outputs: {self._output_names}"
        )

    @property
    def input_names(self) -> list[str]:
        return self._input_names

    @property
    def output_names(self) -> list[str]:
        return self._output_names

    @property
    def selection(self) -> BackendSelection:
        return self._selection

    @property
    def is_disposed(self) -> bool:
        return self._session is None

    def execute(self, inputs: NDArray[Any] | Mapping[str, NDArray[Any]]) -> None:
        """Submit one inference.

        Args:
            inputs: A single array bound to the first input, or a mapping of
                input names to arrays.

        Raises:
            ExecutionError: If disposed, or if the engine rejects the inputs.
        """
        if self._session is None:
            raise ExecutionError("Execution handle has been disposed")

        if isinstance(inputs, Mapping):
            feeds = dict(inputs)
        else:
            feeds = {self._input_names[0]: inputs}

        self._last_outputs = {}
        try:
            outputs = self._session.run(self._output_names, feeds)
        except Exception as e:
            raise ExecutionError(f"Inference failed: {e}") from e
        self._last_outputs = dict(zip(self._output_names, outputs, strict=True))

    def peek_output(self, name: str) -> OwnedTensor:
        """Scoped view of a named output of the last execution.

        Raises:
            ExecutionError: If disposed, not executed yet, or the name is unknown.
        """
        if self._session is None:
            raise ExecutionError("Execution handle has been disposed")
        if name not in self._output_names:
            raise ExecutionError(f"Unknown output '{name}'. Outputs: {self._output_names}")
        if name not in self._last_outputs:
            raise ExecutionError("No outputs available. Call execute() first.")
        return OwnedTensor(name, self._last_outputs[name])

    def summary(self) -> str:
        if self._session is None:
            return "ExecutionHandle(disposed)"
        return (
            f"ExecutionHandle(backend={self._selection.backend.value}, "
            f"channels={self._selection.channel_order.value}, "
            f"providers={self._session.get_providers()})"
        )

    def dispose(self) -> None:
        """Release the session.

        Raises:
            RunnerStateError: If already disposed.
        """
        if self._session is None:
            raise RunnerStateError("Execution handle already disposed")
        self._session = None
        self._last_outputs.clear()
