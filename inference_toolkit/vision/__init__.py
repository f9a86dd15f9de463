"""Vision module: image preprocessing."""

from inference_toolkit.vision.preprocessor import ImagePreprocessor, PreprocessConfig

__all__ = ["ImagePreprocessor", "PreprocessConfig"]
