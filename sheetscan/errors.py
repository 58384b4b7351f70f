# sheetscan/errors.py
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Sequence, Tuple


class ErrorCode(str, Enum):
    INSUFFICIENT_MARKERS = "insufficient_markers"
    DEGENERATE_GEOMETRY = "degenerate_geometry"
    REGION_OUT_OF_BOUNDS = "region_out_of_bounds"
    INVALID_QUESTION_SPEC = "invalid_question_spec"
    CLASSIFICATION_AMBIGUOUS = "classification_ambiguous"
    OCR_FAILED = "ocr_failed"
    INTERNAL = "internal"


class OMRError(RuntimeError):
    """
    Base of every error the pipeline raises on purpose.

    - whole-pipeline: InsufficientMarkers, DegenerateGeometry
    - per-question: RegionOutOfBounds, InvalidQuestionSpec, OCRError
    """

    code: ErrorCode = ErrorCode.INTERNAL


class InsufficientMarkers(OMRError):
    code = ErrorCode.INSUFFICIENT_MARKERS

    def __init__(self, found: int, required: int, markers: Sequence[Any] = ()):
        self.found = int(found)
        self.required = int(required)
        self.markers = tuple(markers)  # what was detected, for reporting
        super().__init__(f"insufficient markers: found={self.found} required={self.required}")


class DegenerateGeometry(OMRError):
    code = ErrorCode.DEGENERATE_GEOMETRY


class RegionOutOfBounds(OMRError):
    code = ErrorCode.REGION_OUT_OF_BOUNDS

    def __init__(
        self,
        index: int,
        quad: Sequence[Tuple[float, float]],
        image_size: Tuple[int, int],
    ):
        self.index = int(index)
        self.quad = tuple((float(x), float(y)) for x, y in quad)
        self.image_size = image_size
        w, h = image_size
        super().__init__(f"question {self.index}: region maps outside image {w}x{h}: {self.quad}")


class InvalidQuestionSpec(OMRError):
    code = ErrorCode.INVALID_QUESTION_SPEC

    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        prefix = f"question {index}: " if index is not None else ""
        super().__init__(prefix + message)


class OCRError(OMRError):
    code = ErrorCode.OCR_FAILED
