# sheetscan/omr/roi_builder.py
from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple, Union

import cv2  # type: ignore
import numpy as np  # type: ignore

from sheetscan.config import OMRConfig
from sheetscan.errors import InvalidQuestionSpec, RegionOutOfBounds
from sheetscan.types import Image, QuestionRegion, QuestionSpec, Quad, SheetGeometry, as_image

logger = logging.getLogger(__name__)

_EPS = 1e-6


def _as_quad(pts: np.ndarray) -> Quad:
    return tuple((float(x), float(y)) for x, y in pts)  # type: ignore[return-value]


def _in_bounds(quad: Quad, img_w: int, img_h: int, tol: float) -> bool:
    for x, y in quad:
        if not (math.isfinite(x) and math.isfinite(y)):
            return False
        if x < -tol or y < -tol or x > img_w + tol or y > img_h + tol:
            return False
    return True


def _integral(v: float) -> bool:
    return abs(v - round(v)) < _EPS


def _axis_aligned_rect(quad: Quad, out_w: int, out_h: int) -> Optional[Tuple[int, int, int, int]]:
    """
    (x, y, w, h) when the quad is an upright rectangle on whole pixels with the
    same size as the output; then a plain slice is exact and no resampling happens.
    """
    (x0, y0), (x1, y1t), (x1b, y1), (x0b, y0b) = quad
    if abs(x0 - x0b) > _EPS or abs(x1 - x1b) > _EPS or abs(y0 - y1t) > _EPS or abs(y1 - y0b) > _EPS:
        return None
    if not all(_integral(v) for v in (x0, y0, x1, y1)):
        return None
    x, y = int(round(x0)), int(round(y0))
    w, h = int(round(x1)) - x, int(round(y1)) - y
    if w != out_w or h != out_h:
        return None
    return x, y, w, h


def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


def crop_region(
    image: Union[Image, np.ndarray],
    geometry: SheetGeometry,
    spec: QuestionSpec,
    *,
    index: int,
    cfg: Optional[OMRConfig] = None,
) -> QuestionRegion:
    """
    normalized box -> inverse transform -> source quad -> rectified crop.

    Output size is the box size on the rectified sheet (geometry.sheet_size_px),
    so crops from a tilted photo come out upright and at a stable scale.
    """
    cfg = cfg or OMRConfig()
    img = as_image(image)
    spec.validate(index)
    if spec.box is None:
        raise InvalidQuestionSpec("question has no box to crop", index)

    quad = _as_quad(geometry.to_source(spec.box.corners()))
    img_w, img_h = img.size
    if not _in_bounds(quad, img_w, img_h, cfg.region_bounds_tolerance_px):
        raise RegionOutOfBounds(index=index, quad=quad, image_size=(img_w, img_h))

    sheet_w, sheet_h = geometry.sheet_size_px
    out_w = max(1, int(round(spec.box.w * sheet_w)))
    out_h = max(1, int(round(spec.box.h * sheet_h)))

    rect = _axis_aligned_rect(quad, out_w, out_h)
    if rect is not None:
        x, y, w, h = rect
        x = _clamp(x, 0, img_w - 1)
        y = _clamp(y, 0, img_h - 1)
        crop = img.pixels[y:y + h, x:x + w].copy()
    else:
        dst = np.array([[0, 0], [out_w, 0], [out_w, out_h], [0, out_h]], dtype=np.float32)
        m = cv2.getPerspectiveTransform(np.array(quad, dtype=np.float32), dst)
        crop = cv2.warpPerspective(
            img.pixels,
            m,
            (out_w, out_h),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE,
        )

    logger.debug("question %d: crop %dx%d from quad %s", index, crop.shape[1], crop.shape[0], quad)
    return QuestionRegion(index=index, image=Image(crop), spec=spec, box=spec.box, source_quad=quad)


def region_from_crop(index: int, image: Union[Image, np.ndarray], spec: QuestionSpec) -> QuestionRegion:
    """Caller-supplied crop; trusted as-is, no geometry involved."""
    return QuestionRegion(index=index, image=as_image(image), spec=spec, box=None, source_quad=None)


def regions_from_crops(
    images: Sequence[Union[Image, np.ndarray]],
    specs: Sequence[QuestionSpec],
) -> List[QuestionRegion]:
    if len(images) != len(specs):
        raise ValueError(f"got {len(images)} cropped images for {len(specs)} questions")
    return [region_from_crop(i, img, spec) for i, (img, spec) in enumerate(zip(images, specs))]


def split_lines(image: Image, count: int) -> Tuple[Image, ...]:
    """Horizontal strips, one per info line (top to bottom)."""
    count = max(1, int(count))
    h = image.height
    step = h / float(count)
    out: List[Image] = []
    for i in range(count):
        y0 = int(round(i * step))
        y1 = max(y0 + 1, int(round((i + 1) * step)))
        y1 = min(y1, h)
        y0 = min(y0, y1 - 1)
        out.append(Image(image.pixels[y0:y1].copy()))
    return tuple(out)
