from .base import OCRResult, OCRService
from .tesseract import TesseractOCR

__all__ = ["OCRResult", "OCRService", "TesseractOCR"]
