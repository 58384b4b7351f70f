# sheetscan/omr/engine.py
from __future__ import annotations

from typing import List, Optional, Tuple

import cv2  # type: ignore
import numpy as np  # type: ignore

from sheetscan.config import OMRConfig
from sheetscan.omr.roi_builder import split_lines
from sheetscan.types import AnswerResult, QuestionRegion, QuestionSpec, QuestionType


# ------------------------------------------------------------
# OMR answer classifier
# - per-question region -> choice별 fill ratio -> selected / none / ambiguous
# - text/info: no fill analysis, region goes to OCR untouched
#
# fill ratio = ink pixels / pixels inside a circular mask centered in the cell
# ink = blurred region <= min(Otsu level, ink_max_level)
# ------------------------------------------------------------

BBox = Tuple[int, int, int, int]


def _split_choices_bbox(roi_w: int, roi_h: int, n: int, axis: str = "x") -> List[BBox]:
    """
    Region을 n등분해서 choice별 bbox를 만든다.
    - axis="x": options side by side (A B C D)
    - axis="y": options stacked
    """
    boxes: List[BBox] = []
    if n <= 0:
        return boxes

    if axis == "y":
        step = roi_h / float(n)
        for i in range(n):
            yy = int(round(i * step))
            hh = int(round((i + 1) * step)) - yy
            boxes.append((0, yy, roi_w, max(1, hh)))
        return boxes

    step = roi_w / float(n)
    for i in range(n):
        xx = int(round(i * step))
        ww = int(round((i + 1) * step)) - xx
        boxes.append((xx, 0, max(1, ww), roi_h))
    return boxes


def _option_cells(roi_w: int, roi_h: int, spec: QuestionSpec) -> List[BBox]:
    if not spec.option_boxes:
        return _split_choices_bbox(roi_w, roi_h, spec.option_cardinality, axis=spec.axis)

    # template-positioned cells, normalized inside the region
    cells: List[BBox] = []
    for b in spec.option_boxes:
        x = int(round(b.x * roi_w))
        y = int(round(b.y * roi_h))
        w = max(1, int(round(b.w * roi_w)))
        h = max(1, int(round(b.h * roi_h)))
        x = max(0, min(roi_w - 1, x))
        y = max(0, min(roi_h - 1, y))
        cells.append((x, y, min(w, roi_w - x), min(h, roi_h - y)))
    return cells


def _ink_mask(gray: np.ndarray, cfg: OMRConfig) -> np.ndarray:
    blur = cv2.GaussianBlur(gray, (5, 5), 0)
    level, _ = cv2.threshold(blur, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    # blank paper has no real ink class; the cap keeps Otsu from splitting paper noise
    level = min(float(level), float(cfg.ink_max_level))
    return blur <= level


def _fill_ratio(ink: np.ndarray, cell: BBox, mask_scale: float) -> float:
    x, y, w, h = cell
    sub = ink[y:y + h, x:x + w]
    if sub.size == 0:
        return 0.0

    hh, ww = sub.shape[:2]
    r = max(1.0, mask_scale * min(ww, hh) / 2.0)
    cy = (hh - 1) / 2.0
    cx = (ww - 1) / 2.0
    yy, xx = np.ogrid[:hh, :ww]
    mask = (xx - cx) ** 2 + (yy - cy) ** 2 <= r * r
    total = int(mask.sum())
    if total <= 0:
        return 0.0
    score = float(sub[mask].sum()) / float(total)
    return float(max(0.0, min(1.0, score)))


def measure_fill_ratios(region: QuestionRegion, *, cfg: Optional[OMRConfig] = None) -> List[float]:
    cfg = cfg or OMRConfig()
    gray = region.image.gray()
    ink = _ink_mask(gray, cfg)
    cells = _option_cells(region.image.width, region.image.height, region.spec)
    return [_fill_ratio(ink, c, cfg.sample_mask_scale) for c in cells]


def _decisiveness(fill: float, threshold: float) -> float:
    span = max(threshold, 1.0 - threshold) or 1.0
    return float(min(1.0, abs(fill - threshold) / span))


def _classify_single(region: QuestionRegion, fills: List[float], cfg: OMRConfig) -> AnswerResult:
    spec = region.spec
    kw = dict(fill_ratios=fills, region=region, option_labels=spec.option_labels)

    ranked = sorted(range(len(fills)), key=lambda i: (-fills[i], i))
    top = fills[ranked[0]]
    second = fills[ranked[1]] if len(ranked) > 1 else 0.0
    gap = top - second

    marked = [i for i, f in enumerate(fills) if f >= cfg.fill_threshold]

    # blank
    if not marked:
        return AnswerResult.none(region.index, spec.type, confidence=1.0 - top, **kw)

    # 2개 이상 marked -> ambiguous, never resolved silently
    if len(marked) > 1:
        return AnswerResult.ambiguous(region.index, spec.type, marked, confidence=max(0.0, gap), **kw)

    # one mark but the runner-up is too close
    if gap < cfg.ambiguity_margin:
        return AnswerResult.ambiguous(region.index, spec.type, ranked[:2], confidence=max(0.0, gap), **kw)

    return AnswerResult.selected(region.index, spec.type, [ranked[0]], confidence=top, **kw)


def _classify_multiple(region: QuestionRegion, fills: List[float], cfg: OMRConfig) -> AnswerResult:
    spec = region.spec
    marked = [i for i, f in enumerate(fills) if f >= cfg.fill_threshold]
    confidence = sum(_decisiveness(f, cfg.fill_threshold) for f in fills) / float(len(fills))
    kw = dict(fill_ratios=fills, confidence=confidence, region=region, option_labels=spec.option_labels)

    if not marked:
        return AnswerResult.none(region.index, spec.type, **kw)
    return AnswerResult.selected(region.index, spec.type, marked, **kw)


def classify_region(region: QuestionRegion, *, cfg: Optional[OMRConfig] = None) -> AnswerResult:
    """
    QuestionRegion -> AnswerResult (pure function of the pixels and the QuestionSpec).

    The QuestionSpec is validated first: InvalidQuestionSpec is raised before any
    pixel work for a malformed question.
    """
    cfg = cfg or OMRConfig()
    spec = region.spec.validate(region.index)

    if spec.type is QuestionType.TEXT:
        return AnswerResult.unclassified(region.index, spec.type, region)

    if spec.type is QuestionType.INFO:
        lines = split_lines(region.image, len(spec.info_fields) or 1)
        return AnswerResult.unclassified(region.index, spec.type, region, line_regions=lines)

    fills = measure_fill_ratios(region, cfg=cfg)
    if spec.type is QuestionType.SINGLE:
        return _classify_single(region, fills, cfg)
    return _classify_multiple(region, fills, cfg)
