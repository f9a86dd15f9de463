"""Class label metadata.

Labels arrive as a JSON payload with a single recognized key::

    {"classes": ["cat", "dog", ...]}

A missing key yields an empty table. Index ``i`` of the table names score
``i`` of the classifier output.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import numpy as np
from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from inference_toolkit.errors import IndexOutOfRangeError, InvalidLabelDataError
from inference_toolkit.types import ClassificationResult


class ClassLabels(BaseModel):
    """Schema of the label payload."""
    model_config = ConfigDict(extra="ignore")

    classes: list[str] = []


class LabelTable:
    """Ordered, read-only sequence of class names."""

    def __init__(self, classes: Sequence[str] = ()) -> None:
        self._classes = tuple(classes)

    @classmethod
    def from_json(cls, raw_text: str | None) -> LabelTable:
        """Parse a label payload.

        Raises:
            InvalidLabelDataError: If the payload is empty or malformed.
        """
        if raw_text is None or not raw_text.strip():
            raise InvalidLabelDataError("Class labels JSON is null or empty.")
        try:
            parsed = ClassLabels.model_validate_json(raw_text)
        except ValidationError as e:
            raise InvalidLabelDataError(f"Failed to deserialize class labels JSON: {e}") from e
        if not parsed.classes:
            logger.warning("Class labels JSON has no 'classes' entries")
        return cls(parsed.classes)

    @classmethod
    def from_file(cls, path: str | Path) -> LabelTable:
        path = Path(path)
        if not path.exists():
            raise InvalidLabelDataError(f"Labels file not found: {path}")
        return cls.from_json(path.read_text(encoding="utf-8"))

    @property
    def classes(self) -> tuple[str, ...]:
        return self._classes

    def class_name(self, index: int) -> str:
        """Label for ``index``.

        Raises:
            IndexOutOfRangeError: If ``index`` is outside ``[0, len(self))``.
        """
        if not 0 <= index < len(self._classes):
            raise IndexOutOfRangeError(
                f"Class index {index} out of range for {len(self._classes)} classes"
            )
        return self._classes[index]

    def top_k(self, scores: Sequence[float] | np.ndarray, k: int = 5) -> list[ClassificationResult]:
        """Highest scoring classes, best first."""
        scores = np.asarray(scores, dtype=np.float32).reshape(-1)
        if scores.size != len(self._classes):
            raise ValueError(f"Got {scores.size} scores for {len(self._classes)} classes")
        order = np.argsort(-scores, kind="stable")[: max(k, 0)]
        return [
            ClassificationResult(class_id=int(i), label=self._classes[i], confidence=float(scores[i]))
            for i in order
        ]

    def __len__(self) -> int:
        return len(self._classes)

    def __iter__(self):
        return iter(self._classes)

    def __repr__(self) -> str:
        return f"LabelTable({len(self._classes)} classes)"


def load_labels(raw_text: str | None) -> LabelTable:
    """Parse labels, logging failures and returning an empty table instead of raising."""
    try:
        return LabelTable.from_json(raw_text)
    except InvalidLabelDataError as e:
        logger.error(str(e))
        return LabelTable()
