"""Runner module: model runner lifecycle and the image classifier."""

from inference_toolkit.runner.classifier import (
    ClassifierConfig,
    MultiClassImageClassifier,
    build_classifier_augmentation,
)
from inference_toolkit.runner.model_runner import ModelRunner, RunnerHooks

__all__ = [
    "ClassifierConfig",
    "ModelRunner",
    "MultiClassImageClassifier",
    "RunnerHooks",
    "build_classifier_augmentation",
]
