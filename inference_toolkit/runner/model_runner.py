"""Model runner: owns the graph and execution handle lifecycle.

Fixed setup order, with function-valued hooks as extension points:

    configure -> prepare (graph augmentation, backend validation, layout)
              -> initialize_execution -> execute* -> release
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from inference_toolkit.engine.graph import ModelAsset, RuntimeGraph
from inference_toolkit.engine.layout import ChannelOrderRegistry, get_channel_order_registry
from inference_toolkit.engine.onnx_runtime import ExecutionHandle, OwnedTensor
from inference_toolkit.engine.platform import PlatformInfo, resolve_backend
from inference_toolkit.errors import ConfigurationError, ExecutionError, RunnerStateError
from inference_toolkit.types import BackendSelection, BackendType, ChannelOrder, RunnerState

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

GraphAugmentationHook = Callable[[RuntimeGraph], None]
BackendValidationHook = Callable[[BackendSelection, PlatformInfo], BackendSelection]


@dataclass
class RunnerHooks:
    """Extension points invoked by ``ModelRunner.prepare``.

    Attributes:
        graph_augmentation: Mutates the freshly loaded graph (append nodes).
        backend_validation: Resolves the requested selection to a concrete
            backend. Defaults to ``resolve_backend``.
    """
    graph_augmentation: GraphAugmentationHook | None = None
    backend_validation: BackendValidationHook | None = None


class ModelRunner:
    """Runs a model asset on a selectable backend.

    Single-threaded: ``execute`` calls are ordered by the caller and must
    not overlap.

    Usage:
        >>> runner = ModelRunner()
        >>> runner.configure("models/classifier.onnx", BackendType.CPU)
        >>> runner.prepare()
        >>> runner.initialize_execution()
        >>> runner.execute(tensor)
        >>> with runner.peek_output(runner.output_names[0]) as output:
        ...     scores = output.download()
        >>> runner.release()
    """

    def __init__(
        self,
        hooks: RunnerHooks | None = None,
        platform: PlatformInfo | None = None,
        num_threads: int = 0,
        strict_backend: bool = False,
        registry: ChannelOrderRegistry | None = None,
    ) -> None:
        self._hooks = hooks or RunnerHooks()
        self._platform = platform or PlatformInfo.detect()
        self._num_threads = num_threads
        self._strict_backend = strict_backend
        self._registry = registry or get_channel_order_registry()

        self._state = RunnerState.UNCONFIGURED
        self._source: RuntimeGraph | None = None
        self._graph: RuntimeGraph | None = None
        self._requested = BackendSelection()
        self._selection: BackendSelection | None = None
        self._handle: ExecutionHandle | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is RunnerState.EXECUTION_READY

    @property
    def platform(self) -> PlatformInfo:
        return self._platform

    @property
    def requested_selection(self) -> BackendSelection:
        return self._requested

    @property
    def selection(self) -> BackendSelection | None:
        """Resolved selection; None before ``prepare``."""
        return self._selection

    @property
    def graph(self) -> RuntimeGraph | None:
        return self._graph

    @property
    def input_names(self) -> list[str]:
        if self._handle is not None:
            return self._handle.input_names
        return self._graph.inputs if self._graph is not None else []

    @property
    def output_names(self) -> list[str]:
        if self._handle is not None:
            return self._handle.output_names
        return self._graph.outputs if self._graph is not None else []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def configure(
        self,
        model_asset: ModelAsset,
        backend: BackendType | str = BackendType.AUTO,
        use_nchw: bool = True,
    ) -> None:
        """Record the model asset and backend request. Nothing is executed.

        Raises:
            AssetLoadError: If the model asset is missing or malformed.
            ConfigurationError: If the backend is unknown.
            RunnerStateError: If the runner is already configured.
        """
        self._require_state(RunnerState.UNCONFIGURED, "configure")
        try:
            backend = BackendType.parse(backend)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self._source = RuntimeGraph.load(model_asset)
        self._requested = BackendSelection(backend, ChannelOrder.from_flag(use_nchw))
        self._state = RunnerState.CONFIGURED
        logger.debug(
            f"Runner configured | backend={backend.value} | "
            f"channels={self._requested.channel_order.value}"
        )

    def prepare(self) -> None:
        """Build the runtime graph, run the hooks, and resolve the backend.

        A second call before ``initialize_execution`` re-runs the hooks on
        the same graph.

        Raises:
            ConfigurationError: If the backend cannot be resolved, or the
                channel order conflicts with another live runner.
            RunnerStateError: If called in the wrong state.
        """
        if self._state is RunnerState.GRAPH_PREPARED:
            logger.warning("prepare() called twice; re-running hooks on the existing graph")
        else:
            self._require_state(RunnerState.CONFIGURED, "prepare")
            self._graph = RuntimeGraph(self._source.model)

        if self._hooks.graph_augmentation is not None:
            self._hooks.graph_augmentation(self._graph)

        if self._hooks.backend_validation is not None:
            selection = self._hooks.backend_validation(self._requested, self._platform)
        else:
            selection = resolve_backend(self._requested, self._platform, strict=self._strict_backend)
        if not selection.is_resolved:
            raise ConfigurationError("Backend validation left the backend unresolved")

        self._graph.adapt_input_layout(selection.channel_order)
        self._registry.acquire(self, selection.channel_order)

        self._selection = selection
        self._state = RunnerState.GRAPH_PREPARED

    def initialize_execution(self) -> None:
        """Freeze the graph into an execution handle. Exactly once.

        Raises:
            RunnerStateError: If already initialized or not prepared.
            AssetLoadError: If the engine rejects the graph.
        """
        if self._handle is not None:
            raise RunnerStateError("Execution already initialized; release() the runner first")
        self._require_state(RunnerState.GRAPH_PREPARED, "initialize_execution")

        self._handle = ExecutionHandle(self._graph, self._selection, num_threads=self._num_threads)
        self._state = RunnerState.EXECUTION_READY

    def start(self) -> None:
        """Run ``prepare`` then ``initialize_execution``."""
        self.prepare()
        self.initialize_execution()

    def execute(self, inputs: NDArray[np.float32] | Mapping[str, NDArray[Any]]) -> None:
        """Submit one inference; returns once the engine accepted the work.

        Args:
            inputs: Tensor bound to the first graph input, or a mapping of
                input names to tensors.

        Raises:
            ExecutionError: If not ready, released, or the inputs are rejected.
        """
        if self._state is not RunnerState.EXECUTION_READY or self._handle is None:
            raise ExecutionError(f"Runner not ready for execution (state={self._state.name})")
        self._handle.execute(inputs)

    def peek_output(self, name: str) -> OwnedTensor:
        """Scoped view of a named output of the last ``execute``."""
        if self._handle is None:
            raise ExecutionError(f"No execution handle (state={self._state.name})")
        return self._handle.peek_output(name)

    def summary(self) -> str:
        if self._handle is None:
            return f"ModelRunner(state={self._state.name})"
        return self._handle.summary()

    def release(self) -> None:
        """Dispose the execution handle and the channel-order claim.

        Safe to call in any state; later calls are no-ops.
        """
        if self._state is RunnerState.RELEASED:
            logger.debug("Runner already released")
            return

        if self._handle is not None:
            self._handle.dispose()
            self._handle = None
        self._registry.release(self)
        self._state = RunnerState.RELEASED
        logger.info("Model runner released.")

    def _require_state(self, expected: RunnerState, operation: str) -> None:
        if self._state is not expected:
            raise RunnerStateError(
                f"{operation}() requires state {expected.name}, runner is {self._state.name}"
            )

    def __enter__(self) -> ModelRunner:
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()
