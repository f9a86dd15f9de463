"""Multi-class image classifier built on the model runner.

Orchestrates: image -> tensor -> execute -> softmax output -> scores, with
two ways of getting the scores back:

- ``download_sync``: copies the output tensor on the calling thread.
- ``request_async_readback``: copies the output into a device texture and
  queues a transfer to the host texture. It returns the host texture as it
  was *before* this transfer, i.e. the previous cycle's scores. Completion
  arrives on a later ``ReadbackQueue.tick``. When several transfers are in
  flight, the last one to complete overwrites the others.

Scores are always in label index order.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
from loguru import logger

from inference_toolkit.engine.platform import PlatformInfo
from inference_toolkit.errors import (
    AssetLoadError,
    ConfigurationError,
    ExecutionError,
    SizeMismatchError,
)
from inference_toolkit.labels import LabelTable, load_labels
from inference_toolkit.readback.queue import ReadbackQueue, ReadbackRequest
from inference_toolkit.readback.textures import DeviceTexture, HostTexture
from inference_toolkit.runner.model_runner import GraphAugmentationHook, ModelRunner, RunnerHooks
from inference_toolkit.types import (
    DEFAULT_SOFTMAX_LAYER,
    BackendType,
    ChannelOrder,
    ClassificationResult,
)
from inference_toolkit.vision.preprocessor import ImagePreprocessor, PreprocessConfig

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from inference_toolkit.config import Settings
    from inference_toolkit.engine.graph import ModelAsset, RuntimeGraph


def build_classifier_augmentation(
    softmax_layer: str = DEFAULT_SOFTMAX_LAYER,
    output_layer_index: int = 0,
    transpose_layer: str | None = None,
) -> GraphAugmentationHook:
    """Hook that normalizes the selected output (and optionally transposes it)."""

    def augment(graph: RuntimeGraph) -> None:
        if not 0 <= output_layer_index < len(graph.outputs):
            raise ConfigurationError(
                f"Output layer index {output_layer_index} out of range "
                f"for {len(graph.outputs)} output(s)"
            )
        graph.append_softmax(softmax_layer, output_layer_index)
        if transpose_layer:
            graph.append_transpose(transpose_layer, output_layer_index)

    return augment


@dataclass
class ClassifierConfig:
    """Configuration for the classifier.

    Attributes:
        backend: Requested execution backend.
        use_nchw: Channel-first image tensors when True.
        output_layer_index: Which declared graph output holds the class scores.
        softmax_layer: Name of the appended softmax node.
        transpose_layer: Name of the appended transpose node (None = no transpose).
        use_async_readback: Opt in to the asynchronous readback path.
        strict_backend: Fail instead of falling back when the backend is unavailable.
        num_threads: Intra-op threads for CPU (0 = engine default).
    """
    backend: BackendType = BackendType.AUTO
    use_nchw: bool = True
    output_layer_index: int = 0
    softmax_layer: str = DEFAULT_SOFTMAX_LAYER
    transpose_layer: str | None = None
    use_async_readback: bool = True
    strict_backend: bool = False
    num_threads: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> ClassifierConfig:
        return cls(
            backend=settings.backend,
            use_nchw=settings.use_nchw,
            output_layer_index=settings.output_layer_index,
            softmax_layer=settings.softmax_layer,
            transpose_layer=settings.transpose_layer,
            use_async_readback=settings.async_readback_enabled,
            strict_backend=settings.strict_backend,
            num_threads=settings.intra_op_num_threads,
        )


class MultiClassImageClassifier:
    """Image classifier with synchronous and asynchronous score retrieval.

    Usage:
        >>> classifier = MultiClassImageClassifier("model.onnx", labels_json)
        >>> classifier.start()
        >>>
        >>> # In your frame loop:
        >>> scores = classifier.execute_model(frame)
        >>> queue.tick()
        >>> print(classifier.class_name(int(scores.argmax())))
        >>>
        >>> classifier.stop()
    """

    def __init__(
        self,
        model_asset: ModelAsset,
        labels_json: str | None = None,
        config: ClassifierConfig | None = None,
        platform: PlatformInfo | None = None,
        readback_queue: ReadbackQueue | None = None,
    ) -> None:
        self._model_asset = model_asset
        self._labels_json = labels_json
        self._config = config or ClassifierConfig()
        self._readback = readback_queue or ReadbackQueue()
        self._runner = ModelRunner(
            hooks=RunnerHooks(
                graph_augmentation=build_classifier_augmentation(
                    self._config.softmax_layer,
                    self._config.output_layer_index,
                    self._config.transpose_layer,
                ),
            ),
            platform=platform,
            num_threads=self._config.num_threads,
            strict_backend=self._config.strict_backend,
        )

        self._labels = LabelTable()
        self._output_layer: str | None = None
        self._use_async_readback = False
        self._preprocessor = ImagePreprocessor(
            PreprocessConfig(channel_order=ChannelOrder.from_flag(self._config.use_nchw))
        )
        self._device_texture: DeviceTexture | None = None
        self._host_texture: HostTexture | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        platform: PlatformInfo | None = None,
        readback_queue: ReadbackQueue | None = None,
    ) -> MultiClassImageClassifier:
        """Build a classifier from model and label paths in the settings."""
        labels_json = None
        if settings.labels_path:
            labels_path = Path(settings.labels_path)
            if labels_path.exists():
                labels_json = labels_path.read_text(encoding="utf-8")
            else:
                logger.error(f"Labels file not found: {labels_path}")

        return cls(
            settings.model_path,
            labels_json,
            ClassifierConfig.from_settings(settings),
            platform=platform or PlatformInfo.detect(settings.async_readback_supported),
            readback_queue=readback_queue,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def runner(self) -> ModelRunner:
        return self._runner

    @property
    def readback_queue(self) -> ReadbackQueue:
        return self._readback

    @property
    def is_ready(self) -> bool:
        return self._runner.is_ready

    @property
    def labels(self) -> LabelTable:
        return self._labels

    @property
    def class_count(self) -> int:
        return len(self._labels)

    @property
    def output_layer(self) -> str | None:
        return self._output_layer

    @property
    def uses_async_readback(self) -> bool:
        return self._use_async_readback

    @property
    def preprocessor(self) -> ImagePreprocessor:
        return self._preprocessor

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Load labels and model, then build the execution handle.

        Setup failures are logged and leave the classifier not ready.

        Returns:
            True if the classifier is ready to execute.
        """
        logger.info("Starting image classifier...")
        self.load_labels(self._labels_json)

        try:
            self._runner.configure(self._model_asset, self._config.backend, self._config.use_nchw)
            self._runner.start()
        except (AssetLoadError, ConfigurationError) as e:
            logger.error(f"Classifier setup failed: {e}")
            self._runner.release()
            return False

        self._output_layer = self._runner.output_names[self._config.output_layer_index]
        self._configure_preprocessor()
        self._check_class_count()
        self._check_async_readback_support()

        logger.info(
            f"Classifier started | Backend: {self._runner.selection.backend.value} | "
            f"Output: {self._output_layer} | Classes: {self.class_count} | "
            f"Async readback: {self._use_async_readback}"
        )
        return True

    def stop(self) -> None:
        """Release the runner and the textures."""
        self._runner.release()
        self._device_texture = None
        self._host_texture = None
        logger.info("Classifier stopped.")

    def load_labels(self, raw_text: str | None) -> LabelTable:
        """Replace the label table; malformed payloads leave it empty."""
        self._labels = load_labels(raw_text)
        self._create_output_textures()
        return self._labels

    def class_name(self, index: int) -> str:
        """Label for a class index.

        Raises:
            IndexOutOfRangeError: If ``index`` is outside ``[0, class_count)``.
        """
        return self._labels.class_name(index)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_model(self, image: np.ndarray) -> NDArray[np.float32]:
        """Classify an (H, W, 3) image.

        Returns:
            ``class_count`` scores; one cycle stale on the async path.

        Raises:
            ExecutionError: If the classifier is not ready or the engine fails.
        """
        tensor = self._preprocessor.to_tensor(image)
        self._runner.execute(tensor)
        return self.process_output()

    def classify(self, image: np.ndarray, top_k: int = 5) -> list[ClassificationResult]:
        """Ranked labels for an image."""
        return self._labels.top_k(self.execute_model(image), top_k)

    def process_output(self, output_layer: str | None = None) -> NDArray[np.float32]:
        if self._use_async_readback:
            return self.request_async_readback(output_layer)
        return self.download_sync(output_layer)

    def download_sync(self, output_layer: str | None = None) -> NDArray[np.float32]:
        """Copy the scores of the last execution to the caller.

        Raises:
            ExecutionError: If there is no output, or its size differs from
                ``class_count``.
        """
        name = output_layer or self._output_layer
        if name is None:
            raise ExecutionError("Classifier not started")
        with self._runner.peek_output(name) as output:
            scores = output.reshape((-1,))
        return self._check_scores(scores)

    def request_async_readback(self, output_layer: str | None = None) -> NDArray[np.float32]:
        """Queue a device to host transfer of the scores.

        Falls back to ``download_sync`` when async readback is unavailable.

        Returns:
            The host texture contents before this transfer (previous cycle).
        """
        if not self._use_async_readback or self._device_texture is None:
            logger.debug("Async readback unavailable; using synchronous download")
            return self.download_sync(output_layer)

        name = output_layer or self._output_layer
        with self._runner.peek_output(name) as output:
            scores = self._check_scores(output.reshape((-1,)))
        self._device_texture.write(scores.reshape(1, self.class_count, 1, 1))
        self._readback.request(self._device_texture, self._on_complete_readback)
        return self._host_texture.pixels()

    def _on_complete_readback(self, request: ReadbackRequest) -> None:
        if isinstance(request.error, SizeMismatchError):
            logger.warning(f"Readback size mismatch, skipping texture update: {request.error}")
            return
        if request.has_error:
            logger.error(f"GPU readback error detected: {request.error}")
            return
        if self._host_texture is None:
            logger.debug(f"Readback {request.request_id} completed after release; dropped")
            return
        try:
            self._host_texture.load_raw(request.data)
        except SizeMismatchError as e:
            logger.warning(f"Readback size mismatch, skipping texture update: {e}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_scores(self, scores: NDArray[np.float32]) -> NDArray[np.float32]:
        if scores.size != self.class_count:
            raise ExecutionError(
                f"Output has {scores.size} scores but the label table has {self.class_count} classes"
            )
        return scores

    def _create_output_textures(self) -> None:
        self._device_texture = DeviceTexture(height=self.class_count)
        self._host_texture = HostTexture(height=self.class_count)

    def _check_async_readback_support(self) -> None:
        use_async = self._config.use_async_readback
        if use_async and not self._runner.platform.supports_async_readback:
            logger.warning("Async readback not supported on this platform; using synchronous download")
            use_async = False
        if use_async and self._runner.selection.backend is not BackendType.GPU_COMPUTE:
            logger.warning(
                f"Async readback requires the {BackendType.GPU_COMPUTE.value} backend, "
                f"got {self._runner.selection.backend.value}; using synchronous download"
            )
            use_async = False
        self._use_async_readback = use_async

    def _configure_preprocessor(self) -> None:
        order = self._runner.selection.channel_order
        shape = self._runner.graph.input_shape() if self._runner.graph is not None else None
        height = width = 0
        if shape is not None and len(shape) == 4:
            h, w = (shape[2], shape[3]) if order is ChannelOrder.NCHW else (shape[1], shape[2])
            if isinstance(h, int) and isinstance(w, int) and h > 0 and w > 0:
                height, width = h, w
        self._preprocessor = ImagePreprocessor(
            PreprocessConfig(target_width=width, target_height=height, channel_order=order)
        )

    def _check_class_count(self) -> None:
        dims = self._runner.graph.output_dims(self._config.output_layer_index)
        if dims is None or not all(isinstance(d, int) and d > 0 for d in dims[1:]):
            return
        model_classes = int(np.prod(dims[1:]))
        if model_classes != self.class_count:
            logger.warning(
                f"Model output has {model_classes} classes but the label table has {self.class_count}"
            )

    def __enter__(self) -> MultiClassImageClassifier:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()
