from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np
import pytest

from sheetscan.config import OMRConfig

# 600x800 sheet, marker centers 40px in from every edge -> sheet frame 520x720
SHEET_W, SHEET_H = 600, 800
MARKER_R = 20
MARKERS = [(40, 40), (560, 40), (560, 760), (40, 760)]
FRAME_X0, FRAME_Y0, FRAME_W, FRAME_H = 40, 40, 520, 720

BUBBLE_R = 22
BUBBLE_CENTERS = [(150, 190), (250, 190), (350, 190), (450, 190)]


def norm_box(x0: float, y0: float, x1: float, y1: float) -> Dict[str, float]:
    """Source-pixel rectangle on the synthetic sheet -> normalized box mapping."""
    return {
        "x": (x0 - FRAME_X0) / FRAME_W,
        "y": (y0 - FRAME_Y0) / FRAME_H,
        "w": (x1 - x0) / FRAME_W,
        "h": (y1 - y0) / FRAME_H,
    }


SINGLE_BOX = norm_box(100, 150, 500, 230)
TEXT_BOX = norm_box(100, 300, 500, 420)
INFO_BOX = norm_box(100, 460, 500, 580)


def _draw_sheet(filled: Sequence[int] = (2,), markers: Optional[List[tuple]] = None) -> np.ndarray:
    img = np.full((SHEET_H, SHEET_W), 255, dtype=np.uint8)
    for c in MARKERS if markers is None else markers:
        cv2.circle(img, c, MARKER_R, 0, -1)
    for i, c in enumerate(BUBBLE_CENTERS):
        cv2.circle(img, c, BUBBLE_R, 0, -1 if i in filled else 2)
    # text area: frame + writing lines, nothing round
    cv2.rectangle(img, (100, 300), (499, 419), 0, 2)
    for y in (340, 380):
        cv2.line(img, (120, y), (480, y), 0, 2)
    cv2.rectangle(img, (100, 460), (499, 579), 0, 2)
    return img


def _draw_bubble_row(filled: Sequence[int] = (), n: int = 4, cell: int = 100, axis: str = "x") -> np.ndarray:
    """Standalone choice region: n bubbles (r=28) centered in n square cells."""
    w, h = (cell * n, cell) if axis == "x" else (cell, cell * n)
    img = np.full((h, w), 255, dtype=np.uint8)
    for i in range(n):
        c = (cell // 2 + cell * i, cell // 2) if axis == "x" else (cell // 2, cell // 2 + cell * i)
        cv2.circle(img, c, 28, 0, -1 if i in filled else 2)
    return img


@pytest.fixture
def make_sheet():
    return _draw_sheet


@pytest.fixture
def make_bubble_row():
    return _draw_bubble_row


@pytest.fixture
def sheet():
    return _draw_sheet()


@pytest.fixture
def cfg():
    return OMRConfig(max_workers=4)


@pytest.fixture
def single_question():
    return {"type": "single", "optionCount": 4, "box": dict(SINGLE_BOX)}


@pytest.fixture
def text_question():
    return {"type": "text", "box": dict(TEXT_BOX)}


@pytest.fixture
def info_question():
    return {"type": "info", "options": ["name", "email"], "box": dict(INFO_BOX)}
