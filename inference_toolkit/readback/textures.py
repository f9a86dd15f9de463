"""Float textures used by the asynchronous readback path.

One ``R32_FLOAT`` texel per class, width 1 and height ``class_count``,
stored in class index order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from inference_toolkit.errors import ExecutionError, SizeMismatchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

TEXEL_DTYPE = np.dtype(np.float32)


class _Texture:
    def __init__(self, height: int, width: int = 1) -> None:
        if height < 0 or width < 1:
            raise ValueError(f"Invalid texture size {width}x{height}")
        self._width = width
        self._height = height
        self._pixels = np.zeros(width * height, dtype=TEXEL_DTYPE)

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def nbytes(self) -> int:
        return self._pixels.nbytes

    def pixels(self) -> NDArray[np.float32]:
        """Copy of the texel values in index order."""
        return self._pixels.copy()


class DeviceTexture(_Texture):
    """Device-resident render target the output tensor is copied into."""

    def write(self, tensor: NDArray[np.generic]) -> None:
        flat = np.asarray(tensor, dtype=TEXEL_DTYPE).reshape(-1)
        if flat.size != self._pixels.size:
            raise ExecutionError(
                f"Tensor with {flat.size} values does not fit a "
                f"{self._width}x{self._height} texture"
            )
        self._pixels[:] = flat

    def read_bytes(self) -> bytes:
        return self._pixels.tobytes()


class HostTexture(_Texture):
    """CPU-side texture updated when a readback completes."""

    def load_raw(self, data: bytes) -> None:
        """Overwrite the backing store with raw texel bytes.

        Raises:
            SizeMismatchError: If ``data`` does not match the texture size.
        """
        if len(data) != self.nbytes:
            raise SizeMismatchError(expected=self.nbytes, actual=len(data))
        self._pixels = np.frombuffer(data, dtype=TEXEL_DTYPE).copy()
