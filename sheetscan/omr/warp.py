# sheetscan/omr/warp.py
from __future__ import annotations

import itertools
import logging
import math
from typing import List, Optional, Sequence, Tuple, Union

import cv2  # type: ignore
import numpy as np  # type: ignore

from sheetscan.config import OMRConfig
from sheetscan.errors import DegenerateGeometry, InsufficientMarkers
from sheetscan.types import Image, Marker, MarkerLayout, SheetGeometry, as_image, get_layout

logger = logging.getLogger(__name__)


def _sorted_markers(markers: Sequence[Marker]) -> List[Marker]:
    # canonical input order: everything downstream is a pure function of this list
    return sorted(markers, key=lambda m: (m.x, m.y, m.radius, m.score))


def _points(markers: Sequence[Marker]) -> np.ndarray:
    return np.array([[m.x, m.y] for m in markers], dtype=np.float64)


def _polygon_area(pts: np.ndarray) -> float:
    x = pts[:, 0]
    y = pts[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


def _order_clockwise(pts: np.ndarray) -> List[int]:
    """
    Indices ordered clockwise (image coords, y down) starting at top-left.
    top-left = smallest x + y.
    """
    c = pts.mean(axis=0)
    angles = np.arctan2(pts[:, 1] - c[1], pts[:, 0] - c[0])
    order = sorted(range(len(pts)), key=lambda i: (float(angles[i]), i))
    start = min(order, key=lambda i: (float(pts[i, 0] + pts[i, 1]), float(pts[i, 1]), i))
    k = order.index(start)
    return order[k:] + order[:k]


def _select_subset(markers: List[Marker], count: int) -> List[Marker]:
    """
    Too many candidates: keep the `count` markers spanning the largest polygon.
    The largest polygon always sits on convex hull vertices, so interior false
    positives (filled bubbles, stray dots) never make it into the frame.
    """
    if len(markers) == count:
        return list(markers)

    pts = _points(markers)
    hull = cv2.convexHull(pts.astype(np.float32), returnPoints=False)
    hull_idx = sorted(int(i) for i in np.asarray(hull).reshape(-1))
    pool = hull_idx if len(hull_idx) >= count else list(range(len(markers)))

    best: Optional[Tuple[int, ...]] = None
    best_area = -1.0
    for combo in itertools.combinations(pool, count):
        sub = pts[list(combo)]
        area = _polygon_area(sub[_order_clockwise(sub)])
        if area > best_area:
            best_area = area
            best = combo

    if best is None:
        raise DegenerateGeometry(f"no usable {count}-marker subset among {len(markers)} candidates")
    logger.debug("marker subset: %d of %d candidates (pool=%d, area=%.1f)", count, len(markers), len(pool), best_area)
    return [markers[i] for i in best]


def _sheet_size(src: np.ndarray, layout: MarkerLayout) -> Tuple[int, int]:
    def d(a: int, b: int) -> float:
        return float(math.hypot(*(src[a] - src[b])))

    if layout.count == 4:
        # TL, TR, BR, BL
        w = max(d(0, 1), d(3, 2))
        h = max(d(0, 3), d(1, 2))
    else:
        # TL, TR, BL
        w = d(0, 1)
        h = d(0, 2)
    return max(1, int(round(w))), max(1, int(round(h)))


def resolve_geometry(
    markers: Sequence[Marker],
    *,
    cfg: Optional[OMRConfig] = None,
    layout: Optional[str] = None,
    source_size: Optional[Tuple[int, int]] = None,
) -> SheetGeometry:
    """
    markers -> SheetGeometry (source px -> normalized sheet coords).

    - 4 markers (corners4): perspective transform
    - 3 markers (corners3): affine transform
    - more than the layout needs: largest-area subset
    - near-collinear / coincident: DegenerateGeometry

    Same marker set in any order -> bit-identical ordering and matrix.
    """
    cfg = cfg or OMRConfig()
    lay = get_layout(layout or cfg.marker_layout)

    ms = _sorted_markers(markers)
    if len(ms) < lay.count:
        raise InsufficientMarkers(found=len(ms), required=lay.count, markers=ms)

    chosen = _select_subset(ms, lay.count)
    pts = _points(chosen)
    order = _order_clockwise(pts)
    ordered = [chosen[i] for i in order]
    src = pts[order]

    diffs = src[:, None, :] - src[None, :, :]
    dmax2 = float((diffs ** 2).sum(axis=2).max())
    area = _polygon_area(src)
    if dmax2 <= 0.0 or area / dmax2 < cfg.degenerate_area_ratio:
        raise DegenerateGeometry(
            f"markers are near-collinear: area={area:.1f} span^2={dmax2:.1f} "
            f"(ratio<{cfg.degenerate_area_ratio})"
        )

    dst = np.array(lay.points, dtype=np.float32)
    if lay.count == 4:
        matrix = cv2.getPerspectiveTransform(src.astype(np.float32), dst)
    else:
        affine = cv2.getAffineTransform(src.astype(np.float32), dst)
        matrix = np.vstack([affine, [0.0, 0.0, 1.0]])

    try:
        inverse = np.linalg.inv(matrix)
    except np.linalg.LinAlgError as e:
        raise DegenerateGeometry(f"singular sheet transform: {e}") from e

    geometry = SheetGeometry(
        markers=tuple(ordered),
        kind=lay.kind,
        matrix=matrix,
        inverse=inverse,
        source_size=source_size,
        sheet_size_px=_sheet_size(src, lay),
        layout=lay.name,
    )
    logger.debug("geometry: kind=%s sheet=%s matrix=%s", geometry.kind, geometry.sheet_size_px, geometry.matrix.tolist())
    return geometry


def warp_sheet(image: Union[Image, np.ndarray], geometry: SheetGeometry) -> Image:
    """
    Perspective-corrected sheet: marker frame -> (0,0)~sheet_size_px.
    A new Image; the source is untouched.
    """
    img = as_image(image)
    out_w, out_h = geometry.sheet_size_px
    scale = np.diag([float(out_w), float(out_h), 1.0])
    m = scale @ geometry.matrix
    warped = cv2.warpPerspective(
        img.pixels,
        m,
        (out_w, out_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_REPLICATE,
    )
    return Image(warped)
