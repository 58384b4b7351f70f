# sheetscan/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    return v if v not in (None, "") else default


def _float(name: str, default: float) -> float:
    return float(_env(name, str(default)) or default)


def _int(name: str, default: int) -> int:
    return int(_env(name, str(default)) or default)


def _opt_float(name: str) -> Optional[float]:
    v = _env(name)
    return float(v) if v is not None else None


def _opt_int(name: str) -> Optional[int]:
    v = _env(name)
    return int(v) if v is not None else None


def _bool(name: str, default: bool) -> bool:
    v = _env(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class OMRConfig:
    """
    Tuning constants for one pipeline invocation.

    The defaults are a baseline measured on synthetic sheets; tune them
    against labeled photos before changing them.
    """

    # marker detection
    marker_circularity_threshold: float = 0.8   # 4*pi*A/P^2, 1.0 = perfect circle
    marker_radius_min_ratio: float = 0.01       # * min(w, h) when no px bound given
    marker_radius_max_ratio: float = 0.1
    marker_min_radius_px: Optional[float] = None
    marker_max_radius_px: Optional[float] = None
    marker_merge_distance_px: Optional[float] = None  # None -> larger radius of the pair
    threshold_block_size: Optional[int] = None  # None -> derived from image size
    threshold_c: float = 10.0
    min_markers: int = 4

    # geometry
    marker_layout: str = "corners4"             # corners4 | corners3
    degenerate_area_ratio: float = 0.05         # polygon area / max pairwise distance^2

    # cropping
    region_bounds_tolerance_px: float = 0.5
    produce_corrected_image: bool = True

    # classification (fill ratio 0~1 inside the sampling mask)
    fill_threshold: float = 0.5
    ambiguity_margin: float = 0.2               # top - runner-up below this -> ambiguous
    sample_mask_scale: float = 0.6              # mask radius / cell half extent
    ink_max_level: int = 180                    # caps the Otsu level on blank regions

    # worker pool (None -> os.cpu_count())
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("marker_circularity_threshold", "fill_threshold", "ambiguity_margin"):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {v}")
        if not 0.0 < self.sample_mask_scale <= 1.0:
            raise ValueError(f"sample_mask_scale must be within (0, 1], got {self.sample_mask_scale}")
        if self.marker_radius_min_ratio <= 0 or self.marker_radius_max_ratio <= self.marker_radius_min_ratio:
            raise ValueError("marker radius ratios must satisfy 0 < min < max")
        if self.marker_layout not in ("corners4", "corners3"):
            raise ValueError(f"unknown marker_layout: {self.marker_layout!r}")
        if self.min_markers < 3:
            raise ValueError(f"min_markers must be >= 3, got {self.min_markers}")
        if self.threshold_block_size is not None and (
            self.threshold_block_size < 3 or self.threshold_block_size % 2 == 0
        ):
            raise ValueError(f"threshold_block_size must be odd and >= 3, got {self.threshold_block_size}")
        if not 0 <= self.ink_max_level <= 255:
            raise ValueError(f"ink_max_level must be within [0, 255], got {self.ink_max_level}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")

    def worker_count(self) -> int:
        return self.max_workers or (os.cpu_count() or 1)

    @staticmethod
    def load() -> "OMRConfig":
        d = OMRConfig()
        return OMRConfig(
            marker_circularity_threshold=_float("OMR_MARKER_CIRCULARITY_THRESHOLD", d.marker_circularity_threshold),
            marker_radius_min_ratio=_float("OMR_MARKER_RADIUS_MIN_RATIO", d.marker_radius_min_ratio),
            marker_radius_max_ratio=_float("OMR_MARKER_RADIUS_MAX_RATIO", d.marker_radius_max_ratio),
            marker_min_radius_px=_opt_float("OMR_MARKER_MIN_RADIUS_PX"),
            marker_max_radius_px=_opt_float("OMR_MARKER_MAX_RADIUS_PX"),
            marker_merge_distance_px=_opt_float("OMR_MARKER_MERGE_DISTANCE_PX"),
            threshold_block_size=_opt_int("OMR_THRESHOLD_BLOCK_SIZE"),
            threshold_c=_float("OMR_THRESHOLD_C", d.threshold_c),
            min_markers=_int("OMR_MIN_MARKERS", d.min_markers),

            marker_layout=_env("OMR_MARKER_LAYOUT", d.marker_layout) or d.marker_layout,
            degenerate_area_ratio=_float("OMR_DEGENERATE_AREA_RATIO", d.degenerate_area_ratio),

            region_bounds_tolerance_px=_float("OMR_REGION_BOUNDS_TOLERANCE_PX", d.region_bounds_tolerance_px),
            produce_corrected_image=_bool("OMR_PRODUCE_CORRECTED_IMAGE", d.produce_corrected_image),

            fill_threshold=_float("OMR_FILL_THRESHOLD", d.fill_threshold),
            ambiguity_margin=_float("OMR_AMBIGUITY_MARGIN", d.ambiguity_margin),
            sample_mask_scale=_float("OMR_SAMPLE_MASK_SCALE", d.sample_mask_scale),
            ink_max_level=_int("OMR_INK_MAX_LEVEL", d.ink_max_level),

            max_workers=_opt_int("OMR_MAX_WORKERS"),
        )
