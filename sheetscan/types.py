# sheetscan/types.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import cv2  # type: ignore
import numpy as np  # type: ignore

from sheetscan.errors import ErrorCode, InvalidQuestionSpec, OMRError


Point = Tuple[float, float]
Quad = Tuple[Point, Point, Point, Point]


# ------------------------------------------------------------
# Image
# ------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Image:
    """
    Immutable pixel buffer (uint8, HxW gray or HxWx3/4 BGR(A), OpenCV order).

    The buffer is copied on construction and marked read-only, so every
    crop/warp has to produce a new Image.
    """
    pixels: np.ndarray

    def __post_init__(self) -> None:
        arr = np.asarray(self.pixels)
        if arr.dtype != np.uint8:
            raise ValueError(f"image must be uint8, got {arr.dtype}")
        if arr.ndim == 3 and arr.shape[2] == 1:
            arr = arr[:, :, 0]
        if arr.ndim not in (2, 3) or (arr.ndim == 3 and arr.shape[2] not in (3, 4)):
            raise ValueError(f"unsupported image shape {arr.shape}")
        if arr.shape[0] == 0 or arr.shape[1] == 0:
            raise ValueError("empty image")
        arr = arr.copy()
        arr.setflags(write=False)
        object.__setattr__(self, "pixels", arr)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def gray(self) -> np.ndarray:
        if self.channels == 1:
            return self.pixels
        code = cv2.COLOR_BGR2GRAY if self.channels == 3 else cv2.COLOR_BGRA2GRAY
        return cv2.cvtColor(self.pixels, code)

    def meta(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height, "channels": self.channels}


def as_image(obj: Union[Image, np.ndarray]) -> Image:
    return obj if isinstance(obj, Image) else Image(obj)


# ------------------------------------------------------------
# Markers / geometry
# ------------------------------------------------------------

@dataclass(frozen=True)
class Marker:
    x: float
    y: float
    radius: float
    score: float  # circularity 0~1

    @property
    def center(self) -> Point:
        return self.x, self.y

    def to_dict(self) -> Dict[str, float]:
        return {
            "x": float(self.x),
            "y": float(self.y),
            "radius": float(self.radius),
            "score": float(self.score),
        }


@dataclass(frozen=True)
class MarkerLayout:
    """Canonical marker positions in normalized sheet coordinates, clockwise from top-left."""
    name: str
    points: Tuple[Point, ...]

    @property
    def count(self) -> int:
        return len(self.points)

    @property
    def kind(self) -> str:
        return "perspective" if self.count == 4 else "affine"


LAYOUTS: Dict[str, MarkerLayout] = {
    "corners4": MarkerLayout("corners4", ((0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0))),
    "corners3": MarkerLayout("corners3", ((0.0, 0.0), (1.0, 0.0), (0.0, 1.0))),
}


def get_layout(name: str) -> MarkerLayout:
    try:
        return LAYOUTS[name]
    except KeyError:
        raise ValueError(f"unknown marker layout: {name!r}") from None


def _frozen_matrix(m: np.ndarray) -> np.ndarray:
    out = np.array(m, dtype=np.float64).reshape(3, 3)
    out.setflags(write=False)
    return out


def _apply_homography(m: np.ndarray, points: Iterable[Sequence[float]]) -> np.ndarray:
    pts = np.asarray(list(points), dtype=np.float64).reshape(-1, 2)
    homo = np.hstack([pts, np.ones((pts.shape[0], 1), dtype=np.float64)])
    out = homo @ m.T
    return out[:, :2] / out[:, 2:3]


@dataclass(frozen=True, eq=False)
class SheetGeometry:
    """
    Accepted markers plus the frame they define.

    - matrix: source px -> normalized sheet coords (3x3)
    - inverse: normalized sheet coords -> source px
    - sheet_size_px: (w, h) of the rectified sheet, used to size crops
    """
    markers: Tuple[Marker, ...]
    kind: str  # perspective | affine | identity
    matrix: np.ndarray
    inverse: np.ndarray
    source_size: Optional[Tuple[int, int]]
    sheet_size_px: Tuple[int, int]
    layout: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "markers", tuple(self.markers))
        object.__setattr__(self, "matrix", _frozen_matrix(self.matrix))
        object.__setattr__(self, "inverse", _frozen_matrix(self.inverse))

    @staticmethod
    def identity(image: Union[Image, Tuple[int, int]]) -> "SheetGeometry":
        """The whole image is the sheet: pixel (w, h) maps to (1, 1)."""
        w, h = image.size if isinstance(image, Image) else image
        return SheetGeometry(
            markers=(),
            kind="identity",
            matrix=np.diag([1.0 / w, 1.0 / h, 1.0]),
            inverse=np.diag([float(w), float(h), 1.0]),
            source_size=(int(w), int(h)),
            sheet_size_px=(int(w), int(h)),
        )

    def to_normalized(self, points: Iterable[Sequence[float]]) -> np.ndarray:
        return _apply_homography(self.matrix, points)

    def to_source(self, points: Iterable[Sequence[float]]) -> np.ndarray:
        return _apply_homography(self.inverse, points)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "layout": self.layout,
            "markers": [m.to_dict() for m in self.markers],
            "matrix": self.matrix.tolist(),
            "source_size": list(self.source_size) if self.source_size else None,
            "sheet_size_px": list(self.sheet_size_px),
        }


# ------------------------------------------------------------
# Question template
# ------------------------------------------------------------

class QuestionType(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    TEXT = "text"
    INFO = "info"

    @property
    def is_choice(self) -> bool:
        return self in (QuestionType.SINGLE, QuestionType.MULTIPLE)


@dataclass(frozen=True)
class NormBox:
    """Bounding box in normalized sheet coordinates."""
    x: float
    y: float
    w: float
    h: float

    def corners(self) -> Quad:
        return (
            (self.x, self.y),
            (self.x + self.w, self.y),
            (self.x + self.w, self.y + self.h),
            (self.x, self.y + self.h),
        )

    @staticmethod
    def from_dict(d: Union[Mapping[str, Any], Sequence[float]]) -> "NormBox":
        try:
            if isinstance(d, Mapping):
                return NormBox(float(d["x"]), float(d["y"]), float(d["w"]), float(d["h"]))
            x, y, w, h = d
            return NormBox(float(x), float(y), float(w), float(h))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidQuestionSpec(f"invalid box {d!r}: {e}") from e

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.x, self.y, self.w, self.h))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


def _question_type(raw: Any) -> QuestionType:
    if isinstance(raw, QuestionType):
        return raw
    try:
        return QuestionType(str(raw or "").strip().lower())
    except ValueError:
        raise InvalidQuestionSpec(f"unknown question type: {raw!r}") from None


@dataclass(frozen=True)
class QuestionSpec:
    """
    One template entry, tagged by `type`.

    single/multiple use option_count or option_labels (plus axis and the
    optional template-positioned option_boxes). text/info ignore all option
    data; info carries the ordered info_fields, one text line each.
    """
    type: QuestionType
    option_count: int = 0
    option_labels: Tuple[str, ...] = ()
    box: Optional[NormBox] = None
    axis: str = "x"
    option_boxes: Tuple[NormBox, ...] = ()
    info_fields: Tuple[str, ...] = ()
    title: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _question_type(self.type))
        object.__setattr__(self, "option_labels", tuple(str(s) for s in self.option_labels))
        object.__setattr__(self, "option_boxes", tuple(self.option_boxes))
        object.__setattr__(self, "info_fields", tuple(str(s) for s in self.info_fields))

    @property
    def option_cardinality(self) -> int:
        if self.option_labels:
            return len(self.option_labels)
        return int(self.option_count or 0)

    def validate(self, index: Optional[int] = None) -> "QuestionSpec":
        for b in ((self.box,) if self.box is not None else ()) + self.option_boxes:
            if not b.is_finite():
                raise InvalidQuestionSpec(f"box values must be finite, got {b}", index)
        if self.box is not None and (self.box.w <= 0 or self.box.h <= 0):
            raise InvalidQuestionSpec(f"box must have positive size, got {self.box}", index)
        if not self.type.is_choice:
            return self

        n = self.option_cardinality
        if n <= 0:
            raise InvalidQuestionSpec(f"{self.type.value} question requires a positive option count, got {n}", index)
        if self.option_labels and self.option_count and self.option_count != len(self.option_labels):
            raise InvalidQuestionSpec(
                f"option_count={self.option_count} disagrees with {len(self.option_labels)} option labels",
                index,
            )
        if self.axis not in ("x", "y"):
            raise InvalidQuestionSpec(f"axis must be 'x' or 'y', got {self.axis!r}", index)
        if self.option_boxes:
            if len(self.option_boxes) != n:
                raise InvalidQuestionSpec(f"expected {n} option boxes, got {len(self.option_boxes)}", index)
            for b in self.option_boxes:
                if b.w <= 0 or b.h <= 0:
                    raise InvalidQuestionSpec(f"option box must have positive size, got {b}", index)
        return self

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "QuestionSpec":
        """
        Accepts bridge-style entries:
          {"type": "single", "optionCount": 4, "options": [...], "box": {x,y,w,h}, "axis": "x"}
          {"type": "info", "infoFields": ["name", "email"], "box": {...}}
        """
        qtype = _question_type(d.get("type"))

        raw_count = d.get("optionCount", d.get("option_count", 0))
        try:
            option_count = int(raw_count or 0)
        except (TypeError, ValueError):
            raise InvalidQuestionSpec(f"optionCount must be an integer, got {raw_count!r}") from None

        options = list(d.get("options") or d.get("option_labels") or [])
        info_fields = list(d.get("infoFields") or d.get("info_fields") or [])
        if qtype is QuestionType.INFO and not info_fields:
            # the app passes info field names through the options slot
            info_fields = options

        box_raw = d.get("box")
        option_boxes_raw = d.get("optionBoxes") or d.get("option_boxes") or []

        return QuestionSpec(
            type=qtype,
            option_count=option_count if qtype.is_choice else 0,
            option_labels=tuple(options) if qtype.is_choice else (),
            box=NormBox.from_dict(box_raw) if box_raw is not None else None,
            axis=str(d.get("axis") or "x").lower(),
            option_boxes=tuple(NormBox.from_dict(b) for b in option_boxes_raw) if qtype.is_choice else (),
            info_fields=tuple(info_fields) if qtype is QuestionType.INFO else (),
            title=str(d.get("title") or d.get("question") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "option_count": self.option_cardinality,
            "option_labels": list(self.option_labels),
            "box": self.box.to_dict() if self.box else None,
            "axis": self.axis,
            "option_boxes": [b.to_dict() for b in self.option_boxes],
            "info_fields": list(self.info_fields),
            "title": self.title,
        }


# ------------------------------------------------------------
# Regions / answers
# ------------------------------------------------------------

@dataclass(frozen=True)
class QuestionRegion:
    index: int
    image: Image
    spec: QuestionSpec
    box: Optional[NormBox] = None            # None for caller-supplied crops
    source_quad: Optional[Quad] = None       # TL, TR, BR, BL in source px

    def to_dict(self, include_images: bool = False) -> Dict[str, Any]:
        return {
            "index": self.index,
            "type": self.spec.type.value,
            "box": self.box.to_dict() if self.box else None,
            "source_quad": [list(p) for p in self.source_quad] if self.source_quad else None,
            "image": self.image.pixels if include_images else self.image.meta(),
        }


@dataclass(frozen=True)
class ErrorInfo:
    code: ErrorCode
    message: str

    @staticmethod
    def from_exception(e: BaseException) -> "ErrorInfo":
        code = e.code if isinstance(e, OMRError) else ErrorCode.INTERNAL
        return ErrorInfo(code=code, message=str(e)[:500])

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class AnswerStatus(str, Enum):
    SELECTED = "selected"
    NONE = "none"
    AMBIGUOUS = "ambiguous"
    UNCLASSIFIED = "unclassified"
    ERROR = "error"


@dataclass(frozen=True)
class AnswerResult:
    """
    Per-question outcome, index-aligned with the caller's question list.

    - single: selection=(i,) | none | ambiguous (marked candidates kept in selection)
    - multiple: selection = marked indices, empty -> none
    - text/info: unclassified with the region attached (OCR fields filled when an
      OCR service ran)
    - error: slot kept, error filled
    """
    index: int
    type: Optional[QuestionType]
    status: AnswerStatus
    selection: Tuple[int, ...] = ()
    fill_ratios: Tuple[float, ...] = ()
    confidence: float = 0.0
    region: Optional[QuestionRegion] = None
    option_labels: Tuple[str, ...] = ()
    line_regions: Tuple[Image, ...] = ()
    text: Optional[str] = None
    line_texts: Tuple[str, ...] = ()
    line_confidences: Tuple[float, ...] = ()
    error: Optional[ErrorInfo] = None

    @staticmethod
    def selected(
        index: int,
        qtype: QuestionType,
        selection: Sequence[int],
        *,
        fill_ratios: Sequence[float] = (),
        confidence: float = 0.0,
        region: Optional[QuestionRegion] = None,
        option_labels: Sequence[str] = (),
    ) -> "AnswerResult":
        return AnswerResult(
            index=index,
            type=qtype,
            status=AnswerStatus.SELECTED,
            selection=tuple(sorted(int(i) for i in selection)),
            fill_ratios=tuple(float(f) for f in fill_ratios),
            confidence=float(confidence),
            region=region,
            option_labels=tuple(option_labels),
        )

    @staticmethod
    def none(
        index: int,
        qtype: QuestionType,
        *,
        fill_ratios: Sequence[float] = (),
        confidence: float = 0.0,
        region: Optional[QuestionRegion] = None,
        option_labels: Sequence[str] = (),
    ) -> "AnswerResult":
        return AnswerResult(
            index=index,
            type=qtype,
            status=AnswerStatus.NONE,
            fill_ratios=tuple(float(f) for f in fill_ratios),
            confidence=float(confidence),
            region=region,
            option_labels=tuple(option_labels),
        )

    @staticmethod
    def ambiguous(
        index: int,
        qtype: QuestionType,
        candidates: Sequence[int],
        *,
        fill_ratios: Sequence[float] = (),
        confidence: float = 0.0,
        region: Optional[QuestionRegion] = None,
        option_labels: Sequence[str] = (),
    ) -> "AnswerResult":
        return AnswerResult(
            index=index,
            type=qtype,
            status=AnswerStatus.AMBIGUOUS,
            selection=tuple(sorted(int(i) for i in candidates)),
            fill_ratios=tuple(float(f) for f in fill_ratios),
            confidence=float(confidence),
            region=region,
            option_labels=tuple(option_labels),
        )

    @staticmethod
    def unclassified(
        index: int,
        qtype: QuestionType,
        region: QuestionRegion,
        *,
        line_regions: Sequence[Image] = (),
    ) -> "AnswerResult":
        return AnswerResult(
            index=index,
            type=qtype,
            status=AnswerStatus.UNCLASSIFIED,
            region=region,
            line_regions=tuple(line_regions),
        )

    @staticmethod
    def failed(
        index: int,
        error: Union[ErrorInfo, BaseException],
        *,
        qtype: Optional[QuestionType] = None,
        region: Optional[QuestionRegion] = None,
    ) -> "AnswerResult":
        info = error if isinstance(error, ErrorInfo) else ErrorInfo.from_exception(error)
        return AnswerResult(
            index=index,
            type=qtype,
            status=AnswerStatus.ERROR,
            region=region,
            error=info,
        )

    @property
    def code(self) -> Optional[ErrorCode]:
        if self.error is not None:
            return self.error.code
        if self.status is AnswerStatus.AMBIGUOUS:
            return ErrorCode.CLASSIFICATION_AMBIGUOUS
        return None

    @property
    def labels(self) -> Tuple[str, ...]:
        """Labels of the selected options; 0-based indices as strings when unlabeled."""
        if self.option_labels:
            return tuple(self.option_labels[i] for i in self.selection)
        return tuple(str(i) for i in self.selection)

    @property
    def answer_text(self) -> str:
        if self.status is AnswerStatus.SELECTED:
            return ",".join(self.labels)
        if self.type is QuestionType.INFO and self.line_texts:
            return "\n".join(self.line_texts)
        return self.text or ""

    def to_dict(self, include_images: bool = False) -> Dict[str, Any]:
        return {
            "index": self.index,
            "type": self.type.value if self.type else None,
            "status": self.status.value,
            "selection": list(self.selection),
            "labels": list(self.labels),
            "fill_ratios": list(self.fill_ratios),
            "confidence": float(self.confidence),
            "region": self.region.to_dict(include_images) if self.region else None,
            "line_count": len(self.line_regions),
            "text": self.text,
            "line_texts": list(self.line_texts),
            "line_confidences": list(self.line_confidences),
            "code": self.code.value if self.code else None,
            "error": self.error.to_dict() if self.error else None,
        }


# ------------------------------------------------------------
# Pipeline result
# ------------------------------------------------------------

class Stage(str, Enum):
    DETECT = "detect"      # markers only
    CROP = "crop"          # detect + resolve + crop, no classification
    PARSE = "parse"        # full pipeline
    CLASSIFY = "classify"  # caller-supplied crops + classification


@dataclass(frozen=True)
class PipelineResult:
    stage: Stage
    markers: Tuple[Marker, ...] = ()
    geometry: Optional[SheetGeometry] = None
    source_image: Optional[Image] = None
    corrected_image: Optional[Image] = None
    regions: Tuple[Optional[QuestionRegion], ...] = ()
    answers: Tuple[AnswerResult, ...] = ()
    error: Optional[ErrorInfo] = None
    exception: Optional[OMRError] = field(default=None, repr=False, compare=False)
    version: str = "v1"

    @staticmethod
    def failed(
        stage: Stage,
        exc: OMRError,
        *,
        markers: Sequence[Marker] = (),
        source_image: Optional[Image] = None,
    ) -> "PipelineResult":
        return PipelineResult(
            stage=stage,
            markers=tuple(markers),
            source_image=source_image,
            error=ErrorInfo.from_exception(exc),
            exception=exc,
        )

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> "PipelineResult":
        if self.exception is not None:
            raise self.exception
        return self

    def to_dict(self, include_images: bool = False) -> Dict[str, Any]:
        def _img(img: Optional[Image]) -> Any:
            if img is None:
                return None
            return img.pixels if include_images else img.meta()

        return {
            "version": self.version,
            "stage": self.stage.value,
            "ok": self.ok,
            "markers": [m.to_dict() for m in self.markers],
            "geometry": self.geometry.to_dict() if self.geometry else None,
            "source_image": _img(self.source_image),
            "corrected_image": _img(self.corrected_image),
            "regions": [r.to_dict(include_images) if r else None for r in self.regions],
            "answers": [a.to_dict(include_images) for a in self.answers],
            "error": self.error.to_dict() if self.error else None,
        }

    def to_bridge_dict(self) -> Dict[str, Any]:
        """Key shape consumed by the app layer (parsedAnswers / confidenceScores / rowConfidences)."""
        row_confidences: List[List[float]] = [
            list(a.line_confidences) if a.type is QuestionType.INFO else [] for a in self.answers
        ]
        return {
            "version": self.version,
            "markerCount": len(self.markers),
            "croppedCount": sum(1 for r in self.regions if r is not None),
            "parsedAnswers": [a.answer_text for a in self.answers],
            "confidenceScores": [float(a.confidence) for a in self.answers],
            "rowConfidences": row_confidences,
            "error": self.error.to_dict() if self.error else None,
        }
