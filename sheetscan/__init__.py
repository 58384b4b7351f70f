"""
sheetscan - optical mark recognition for photographed answer sheets.

fiducial markers -> sheet geometry -> per-question crops -> bubble classification
(text/info regions are handed to an OCR service when one is supplied)
"""

from sheetscan.config import OMRConfig
from sheetscan.errors import (
    DegenerateGeometry,
    ErrorCode,
    InsufficientMarkers,
    InvalidQuestionSpec,
    OCRError,
    OMRError,
    RegionOutOfBounds,
)
from sheetscan.pipelines.dispatcher import run_pipeline
from sheetscan.types import (
    AnswerResult,
    AnswerStatus,
    Image,
    Marker,
    NormBox,
    PipelineResult,
    QuestionRegion,
    QuestionSpec,
    QuestionType,
    SheetGeometry,
    Stage,
)

__version__ = "1.0.0"

__all__ = [
    "AnswerResult",
    "AnswerStatus",
    "DegenerateGeometry",
    "ErrorCode",
    "Image",
    "InsufficientMarkers",
    "InvalidQuestionSpec",
    "Marker",
    "NormBox",
    "OCRError",
    "OMRConfig",
    "OMRError",
    "PipelineResult",
    "QuestionRegion",
    "QuestionSpec",
    "QuestionType",
    "RegionOutOfBounds",
    "SheetGeometry",
    "Stage",
    "run_pipeline",
]
