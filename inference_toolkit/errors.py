"""Error taxonomy for the inference toolkit.

Setup-time errors (asset, configuration) are recovered by the classifier with
logging and safe defaults. Readback errors never leave the completion callback.
Usage-contract violations always propagate.
"""

from __future__ import annotations


class ToolkitError(Exception):
    """Base class for all toolkit errors."""


class AssetLoadError(ToolkitError):
    """Model or label asset is missing, unreadable, or malformed."""


class InvalidLabelDataError(AssetLoadError):
    """Label payload is empty or does not match the expected schema."""


class ConfigurationError(ToolkitError, ValueError):
    """Invalid backend, channel order, or output layer selection."""


class ExecutionError(ToolkitError, RuntimeError):
    """Engine invoked before it is ready, after release, or with bad inputs."""


class RunnerStateError(ToolkitError, RuntimeError):
    """Lifecycle method called in the wrong state."""


class TransferError(ToolkitError):
    """Device to host readback reported a failure."""


class SizeMismatchError(TransferError):
    """Readback delivered a byte count different from the texture size.

    Recoverable: the host texture keeps its previous contents.
    """

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Readback size mismatch: expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class IndexOutOfRangeError(ToolkitError, IndexError):
    """Class index outside the label table."""
