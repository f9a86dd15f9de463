"""Platform capability detection and backend resolution.

Maps the abstract backends onto ONNX Runtime execution providers:

    CPU              -> CPUExecutionProvider
    GPU_COMPUTE      -> CUDA / ROCm (compute kernels, async readback capable)
    GPU_PIXEL_SHADER -> DirectML / CoreML (graphics-API backed)
"""

from __future__ import annotations

from dataclasses import dataclass

import onnxruntime as ort
from loguru import logger

from inference_toolkit.errors import ConfigurationError
from inference_toolkit.types import CPU_PROVIDER, BackendSelection, BackendType

BACKEND_PROVIDERS: dict[BackendType, tuple[str, ...]] = {
    BackendType.GPU_COMPUTE: ("CUDAExecutionProvider", "ROCMExecutionProvider"),
    BackendType.GPU_PIXEL_SHADER: ("DmlExecutionProvider", "CoreMLExecutionProvider"),
    BackendType.CPU: (CPU_PROVIDER,),
}

# Auto resolution walks this list and takes the first backend with a provider.
AUTO_PREFERENCE = (BackendType.GPU_COMPUTE, BackendType.GPU_PIXEL_SHADER, BackendType.CPU)


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    """What the host can run.

    Attributes:
        available_providers: Execution providers reported by the engine.
        supports_async_readback: Whether device to host transfers can be
            issued without blocking.
    """
    available_providers: tuple[str, ...] = (CPU_PROVIDER,)
    supports_async_readback: bool = False

    @classmethod
    def detect(cls, async_readback_override: bool | None = None) -> PlatformInfo:
        """Probe ONNX Runtime for its execution providers."""
        available = tuple(ort.get_available_providers())
        if async_readback_override is None:
            supports_async = any(
                p in available for p in BACKEND_PROVIDERS[BackendType.GPU_COMPUTE]
            )
        else:
            supports_async = async_readback_override
        return cls(available_providers=available, supports_async_readback=supports_async)

    def supports(self, backend: BackendType) -> bool:
        if backend is BackendType.AUTO:
            return True
        return any(p in self.available_providers for p in BACKEND_PROVIDERS[backend])


def resolve_backend(
    selection: BackendSelection,
    platform: PlatformInfo,
    strict: bool = False,
) -> BackendSelection:
    """Resolve AUTO and validate an explicit backend against the platform.

    Args:
        selection: Requested backend and channel order.
        platform: Capabilities of the host.
        strict: Raise instead of falling back to CPU.

    Returns:
        A selection whose backend is concrete.

    Raises:
        ConfigurationError: If the selection is invalid, or unsupported in strict mode.
    """
    if not isinstance(selection.backend, BackendType):
        raise ConfigurationError(f"Invalid backend selection: {selection.backend!r}")

    if selection.backend is BackendType.AUTO:
        for candidate in AUTO_PREFERENCE:
            if platform.supports(candidate):
                logger.debug(f"Auto backend resolved to {candidate.value}")
                return BackendSelection(candidate, selection.channel_order)

    if platform.supports(selection.backend):
        return selection

    if strict:
        raise ConfigurationError(
            f"Backend {selection.backend.value} not supported. "
            f"Available providers: {list(platform.available_providers)}"
        )
    logger.warning(
        f"Backend {selection.backend.value} not supported on this platform, "
        f"falling back to {BackendType.CPU.value}"
    )
    return BackendSelection(BackendType.CPU, selection.channel_order)


def providers_for(backend: BackendType, available: tuple[str, ...] | None = None) -> list[str]:
    """Provider list for a session, in priority order, always ending with CPU."""
    if backend is BackendType.AUTO:
        raise ConfigurationError("Backend must be resolved before creating a session")
    available = tuple(ort.get_available_providers()) if available is None else available
    providers = [p for p in BACKEND_PROVIDERS[backend] if p in available]
    if CPU_PROVIDER not in providers:
        providers.append(CPU_PROVIDER)
    return providers
