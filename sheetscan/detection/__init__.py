"""
Fiducial marker detection.

    from sheetscan.detection import detect_markers

    markers = detect_markers(image, cfg=OMRConfig(min_markers=4))
"""

from .markers import circularity, detect_markers, iter_markers

__all__ = ["circularity", "detect_markers", "iter_markers"]
