"""Shared types and constants for the inference toolkit."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IMAGE_CHANNELS = 3
DEFAULT_SOFTMAX_LAYER = "softmaxLayer"
CPU_PROVIDER = "CPUExecutionProvider"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BackendType(Enum):
    """Execution backend requested for a model runner."""
    AUTO = "auto"
    CPU = "cpu"
    GPU_COMPUTE = "gpu_compute"
    GPU_PIXEL_SHADER = "gpu_pixel_shader"

    @classmethod
    def parse(cls, value: str | BackendType) -> BackendType:
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_")
        for member in cls:
            if member.value == key or member.name.lower() == key:
                return member
        raise ValueError(f"Unknown backend: {value!r}")


class ChannelOrder(Enum):
    """Tensor layout of the image input."""
    NCHW = "nchw"
    NHWC = "nhwc"

    @classmethod
    def from_flag(cls, use_nchw: bool) -> ChannelOrder:
        return cls.NCHW if use_nchw else cls.NHWC


class RunnerState(Enum):
    """Lifecycle of a model runner. Transitions are strictly forward."""
    UNCONFIGURED = auto()
    CONFIGURED = auto()
    GRAPH_PREPARED = auto()
    EXECUTION_READY = auto()
    RELEASED = auto()


# ---------------------------------------------------------------------------
# Core Data Structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class BackendSelection:
    """Backend plus channel order.

    Attributes:
        backend: Requested or resolved execution backend.
        channel_order: Layout of the image input tensor.
    """
    backend: BackendType = BackendType.AUTO
    channel_order: ChannelOrder = ChannelOrder.NCHW

    @property
    def is_resolved(self) -> bool:
        return self.backend is not BackendType.AUTO


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """A single ranked classification prediction."""
    class_id: int
    label: str
    confidence: float
