"""Image to tensor conversion for the classifier.

Handles validation, resizing to the model's input size, normalization,
and channel ordering of 3-channel images.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from inference_toolkit.types import IMAGE_CHANNELS, ChannelOrder


@dataclass(frozen=True, slots=True)
class PreprocessConfig:
    """Configuration for image preprocessing.

    Attributes:
        target_width: Model input width (0 = keep image width).
        target_height: Model input height (0 = keep image height).
        channel_order: Layout of the produced tensor.
        bgr_to_rgb: Convert OpenCV BGR images to RGB.
        flip_vertical: Flip rows (texture sources with a bottom-left origin).
    """
    target_width: int = 0
    target_height: int = 0
    channel_order: ChannelOrder = ChannelOrder.NCHW
    bgr_to_rgb: bool = False
    flip_vertical: bool = False


class ImagePreprocessor:
    """Converts (H, W, 3) images into model input tensors.

    uint8 images are scaled to [0, 1]; float images are passed through.
    Stateless and thread-safe.

    Usage:
        >>> preprocessor = ImagePreprocessor(PreprocessConfig(224, 224))
        >>> tensor = preprocessor.to_tensor(frame)  # (1, 3, 224, 224)
    """

    def __init__(self, config: PreprocessConfig | None = None) -> None:
        self._config = config or PreprocessConfig()

    @property
    def config(self) -> PreprocessConfig:
        return self._config

    def to_tensor(self, image: np.ndarray) -> np.ndarray:
        """Convert an image to a ``[1, 3, H, W]`` or ``[1, H, W, 3]`` float32 tensor.

        Raises:
            ValueError: If the image is invalid.
        """
        self._validate(image)
        result = image if image.dtype == np.uint8 else image.astype(np.float32)

        if self._config.bgr_to_rgb:
            result = cv2.cvtColor(result, cv2.COLOR_BGR2RGB)
        if self._config.flip_vertical:
            result = cv2.flip(result, 0)

        result = self._resize(result)

        if result.dtype == np.uint8:
            result = result.astype(np.float32) / 255.0

        if self._config.channel_order is ChannelOrder.NCHW:
            result = np.transpose(result, (2, 0, 1))
        return np.ascontiguousarray(result[np.newaxis, ...])

    def _validate(self, image: np.ndarray) -> None:
        if image is None:
            raise ValueError("Image is None")
        if image.ndim != 3 or image.shape[2] != IMAGE_CHANNELS:
            raise ValueError(f"Expected (H, W, 3) image, got shape {image.shape}")
        if image.size == 0:
            raise ValueError("Image is empty")

    def _resize(self, image: np.ndarray) -> np.ndarray:
        h, w = image.shape[:2]
        target_w = self._config.target_width or w
        target_h = self._config.target_height or h
        if (target_w, target_h) == (w, h):
            return image
        return cv2.resize(image, (target_w, target_h), interpolation=cv2.INTER_LINEAR)
