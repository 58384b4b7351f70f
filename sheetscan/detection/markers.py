# sheetscan/detection/markers.py
from __future__ import annotations

import logging
import math
from typing import Iterator, List, Optional, Tuple, Union

import cv2  # type: ignore
import numpy as np  # type: ignore

from sheetscan.config import OMRConfig
from sheetscan.errors import InsufficientMarkers
from sheetscan.types import Image, Marker, as_image

logger = logging.getLogger(__name__)


def _block_size(gray: np.ndarray, cfg: OMRConfig) -> int:
    if cfg.threshold_block_size:
        return int(cfg.threshold_block_size)
    h, w = gray.shape[:2]
    size = max(11, min(w, h) // 20)
    return size if size % 2 == 1 else size + 1


def _radius_range(gray: np.ndarray, cfg: OMRConfig) -> Tuple[float, float]:
    h, w = gray.shape[:2]
    base = float(min(w, h))
    lo = cfg.marker_min_radius_px if cfg.marker_min_radius_px is not None else base * cfg.marker_radius_min_ratio
    hi = cfg.marker_max_radius_px if cfg.marker_max_radius_px is not None else base * cfg.marker_radius_max_ratio
    return float(lo), float(hi)


def binarize(gray: np.ndarray, cfg: OMRConfig) -> np.ndarray:
    """
    Ink -> 255, paper -> 0.
    Adaptive mean threshold so a shadow across the sheet does not swallow a corner marker.
    """
    blur = cv2.GaussianBlur(gray, (5, 5), 0)
    return cv2.adaptiveThreshold(
        blur,
        255,
        cv2.ADAPTIVE_THRESH_MEAN_C,
        cv2.THRESH_BINARY_INV,
        _block_size(gray, cfg),
        cfg.threshold_c,
    )


def circularity(area: float, perimeter: float) -> float:
    if perimeter <= 0:
        return 0.0
    score = 4.0 * math.pi * area / (perimeter * perimeter)
    return float(max(0.0, min(1.0, score)))


def _candidates(gray: np.ndarray, cfg: OMRConfig) -> List[Marker]:
    thresh = binarize(gray, cfg)
    contours, _ = cv2.findContours(thresh, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)

    r_min, r_max = _radius_range(gray, cfg)
    out: List[Marker] = []
    for cnt in contours:
        area = float(cv2.contourArea(cnt))
        perimeter = float(cv2.arcLength(cnt, True))
        score = circularity(area, perimeter)
        if score < cfg.marker_circularity_threshold:
            continue

        (x, y), r = cv2.minEnclosingCircle(cnt)
        if r < r_min or r > r_max:
            continue

        out.append(Marker(x=float(x), y=float(y), radius=float(r), score=score))

    logger.debug("marker candidates: %d of %d contours (r=%.1f~%.1f)", len(out), len(contours), r_min, r_max)
    return out


def _dedupe(candidates: List[Marker], merge_px: Optional[float]) -> List[Marker]:
    # highest score wins; position breaks ties so the result never depends on contour order
    ordered = sorted(candidates, key=lambda m: (-m.score, m.y, m.x, -m.radius))
    kept: List[Marker] = []
    for m in ordered:
        dup = False
        for k in kept:
            tol = merge_px if merge_px is not None else max(m.radius, k.radius)
            if math.hypot(m.x - k.x, m.y - k.y) <= tol:
                dup = True
                break
        if not dup:
            kept.append(m)
    return kept


def iter_markers(image: Union[Image, np.ndarray], *, cfg: Optional[OMRConfig] = None) -> Iterator[Marker]:
    """
    Lazy, single-pass stream of accepted fiducial markers in reading order (y, x).

    Pipeline:
      gray -> blur -> adaptive threshold -> external contours
      -> circularity 4*pi*A/P^2 + min enclosing circle radius range
      -> overlap dedupe
    """
    cfg = cfg or OMRConfig()
    img = as_image(image)
    gray = img.gray()

    kept = _dedupe(_candidates(gray, cfg), cfg.marker_merge_distance_px)
    for m in sorted(kept, key=lambda m: (m.y, m.x)):
        yield m


def detect_markers(
    image: Union[Image, np.ndarray],
    *,
    cfg: Optional[OMRConfig] = None,
    min_markers: Optional[int] = None,
) -> List[Marker]:
    cfg = cfg or OMRConfig()
    required = cfg.min_markers if min_markers is None else int(min_markers)

    markers = list(iter_markers(image, cfg=cfg))
    if len(markers) < required:
        logger.warning("insufficient markers: found=%d required=%d", len(markers), required)
        raise InsufficientMarkers(found=len(markers), required=required, markers=markers)

    logger.debug("markers: %s", [(round(m.x, 1), round(m.y, 1), round(m.radius, 1)) for m in markers])
    return markers
