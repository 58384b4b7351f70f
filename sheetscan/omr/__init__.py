"""
Sheet geometry, region cropping and answer classification.

    from sheetscan.omr import resolve_geometry, crop_region, classify_region

    geometry = resolve_geometry(markers, source_size=image.size)
    region = crop_region(image, geometry, spec, index=0)
    answer = classify_region(region)
"""

from .engine import classify_region, measure_fill_ratios
from .roi_builder import crop_region, region_from_crop, regions_from_crops, split_lines
from .template_meta import SheetTemplate, TemplateError
from .warp import resolve_geometry, warp_sheet

__all__ = [
    "SheetTemplate",
    "TemplateError",
    "classify_region",
    "crop_region",
    "measure_fill_ratios",
    "region_from_crop",
    "regions_from_crops",
    "resolve_geometry",
    "split_lines",
    "warp_sheet",
]
