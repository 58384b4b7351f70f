# sheetscan/ocr/tesseract.py
from __future__ import annotations

import logging
import re
from typing import List, Optional

import cv2  # type: ignore
from PIL import Image as PILImage  # type: ignore
import pytesseract  # type: ignore

from sheetscan.errors import OCRError
from sheetscan.ocr.base import OCRResult, OCRService
from sheetscan.types import Image

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")


def _to_pil(image: Image) -> PILImage.Image:
    px = image.pixels
    if image.channels == 1:
        return PILImage.fromarray(px)
    if image.channels == 4:
        return PILImage.fromarray(cv2.cvtColor(px, cv2.COLOR_BGRA2RGBA))
    return PILImage.fromarray(cv2.cvtColor(px, cv2.COLOR_BGR2RGB))


class TesseractOCR(OCRService):
    """
    pytesseract adapter.

    - text: recognized words joined by a space (empty words dropped)
    - confidence: mean of non-negative word conf, 0~1; None when no words
    - strip_whitespace=True removes every whitespace char (name/tel/zip style fields)
    """

    def __init__(
        self,
        *,
        lang: str = "eng",
        config: str = "",
        strip_whitespace: bool = False,
    ):
        self.lang = lang
        self.config = config
        self.strip_whitespace = strip_whitespace

    def recognize(self, image: Image) -> OCRResult:
        pil = _to_pil(image)
        try:
            data = pytesseract.image_to_data(
                pil,
                lang=self.lang,
                config=self.config,
                output_type=pytesseract.Output.DICT,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as e:
            logger.warning("tesseract failed: %s", e)
            raise OCRError(f"tesseract_failed: {e}") from e

        words = [str(w).strip() for w in data.get("text", [])]
        words = [w for w in words if w]
        text = " ".join(words)
        if self.strip_whitespace:
            text = _WS.sub("", text)

        confs: List[float] = []
        for c in data.get("conf", []):
            try:
                v = float(c)
            except (TypeError, ValueError):
                continue
            if v >= 0:
                confs.append(v)
        confidence: Optional[float] = (sum(confs) / len(confs) / 100.0) if confs else None

        # raw=data 는 너무 클 수 있어 기본 None
        return OCRResult(text=text, confidence=confidence, raw=None)
