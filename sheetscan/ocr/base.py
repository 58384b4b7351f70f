# sheetscan/ocr/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from sheetscan.types import Image


@dataclass
class OCRResult:
    text: str
    confidence: Optional[float] = None
    raw: Optional[Any] = None


class OCRService(ABC):
    """
    Text recognizer boundary for text/info regions.

    Implementations raise sheetscan.errors.OCRError on failure; the pipeline
    turns that into an error entry for the one question.
    """

    @abstractmethod
    def recognize(self, image: Image) -> OCRResult:
        raise NotImplementedError
