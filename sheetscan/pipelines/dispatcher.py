# sheetscan/pipelines/dispatcher.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

import cv2  # type: ignore
import numpy as np  # type: ignore

from sheetscan.config import OMRConfig
from sheetscan.detection.markers import detect_markers
from sheetscan.errors import InsufficientMarkers, InvalidQuestionSpec, OMRError
from sheetscan.ocr.base import OCRService
from sheetscan.omr.engine import classify_region
from sheetscan.omr.roi_builder import crop_region, region_from_crop
from sheetscan.omr.warp import resolve_geometry, warp_sheet
from sheetscan.pipelines.aggregator import aggregate
from sheetscan.types import (
    AnswerResult,
    AnswerStatus,
    Image,
    Marker,
    PipelineResult,
    QuestionRegion,
    QuestionSpec,
    QuestionType,
    SheetGeometry,
    Stage,
    as_image,
)

logger = logging.getLogger(__name__)

QuestionInput = Union[QuestionSpec, Mapping[str, Any]]
ImageInput = Union[Image, np.ndarray]


@dataclass(frozen=True)
class PipelineContext:
    """Per-invocation settings. Nothing here outlives one run_pipeline call."""
    cfg: OMRConfig
    ocr: Optional[OCRService] = None
    workers: int = 1

    @staticmethod
    def create(cfg: Optional[OMRConfig] = None, ocr: Optional[OCRService] = None) -> "PipelineContext":
        cfg = cfg or OMRConfig()
        return PipelineContext(cfg=cfg, ocr=ocr, workers=cfg.worker_count())


def _parse_question(index: int, raw: QuestionInput) -> QuestionSpec:
    if isinstance(raw, QuestionSpec):
        spec = raw
    elif isinstance(raw, Mapping):
        try:
            spec = QuestionSpec.from_dict(raw)
        except InvalidQuestionSpec as e:
            raise InvalidQuestionSpec(str(e), index) from e
    else:
        raise InvalidQuestionSpec(f"question must be a QuestionSpec or mapping, got {type(raw).__name__}", index)
    return spec.validate(index)


# ------------------------------------------------------------
# OCR (text / info)
# ------------------------------------------------------------

def _apply_ocr(ocr: Optional[OCRService], answer: AnswerResult) -> AnswerResult:
    if ocr is None or answer.status is not AnswerStatus.UNCLASSIFIED or answer.region is None:
        return answer

    if answer.type is QuestionType.INFO:
        lines = answer.line_regions or (answer.region.image,)
        texts: List[str] = []
        confs: List[float] = []
        for line in lines:
            r = ocr.recognize(line)
            texts.append(r.text)
            confs.append(float(r.confidence or 0.0))
        return replace(
            answer,
            text="\n".join(texts),
            line_texts=tuple(texts),
            line_confidences=tuple(confs),
            confidence=(sum(confs) / len(confs)) if confs else 0.0,
        )

    r = ocr.recognize(answer.region.image)
    return replace(answer, text=r.text, confidence=float(r.confidence or 0.0))


# ------------------------------------------------------------
# per-question task
# ------------------------------------------------------------

def _process_question(
    ctx: PipelineContext,
    stage: Stage,
    index: int,
    raw: QuestionInput,
    *,
    image: Optional[Image] = None,
    geometry: Optional[SheetGeometry] = None,
    crop: Optional[Image] = None,
) -> Tuple[Optional[QuestionRegion], AnswerResult]:
    """
    One question: parse -> crop (or take the supplied crop) -> classify -> OCR.
    Per-question failures come back as an error entry, never raised.
    """
    spec: Optional[QuestionSpec] = None
    region: Optional[QuestionRegion] = None
    try:
        spec = _parse_question(index, raw)

        if crop is not None:
            region = region_from_crop(index, crop, spec)
        else:
            if image is None or geometry is None:
                raise ValueError("cropping needs a sheet image and its geometry")
            region = crop_region(image, geometry, spec, index=index, cfg=ctx.cfg)

        if stage is Stage.CROP:
            return region, AnswerResult.unclassified(index, spec.type, region)

        answer = classify_region(region, cfg=ctx.cfg)
        return region, _apply_ocr(ctx.ocr, answer)

    except (OMRError, cv2.error) as e:
        logger.warning("question %d failed: %s", index, e)
        return region, AnswerResult.failed(index, e, qtype=spec.type if spec else None, region=region)

    except Exception as e:
        # one broken question (or OCR service) must not take the batch down
        logger.exception("question %d failed unexpectedly: %s", index, e)
        return region, AnswerResult.failed(index, e, qtype=spec.type if spec else None, region=region)


def _run_questions(
    ctx: PipelineContext,
    stage: Stage,
    questions: Sequence[QuestionInput],
    *,
    image: Optional[Image] = None,
    geometry: Optional[SheetGeometry] = None,
    crops: Optional[Sequence[Image]] = None,
) -> Tuple[List[Optional[QuestionRegion]], List[AnswerResult]]:
    n = len(questions)
    if n == 0:
        return [], []

    workers = max(1, min(ctx.workers, n))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(
                _process_question,
                ctx,
                stage,
                i,
                q,
                image=image,
                geometry=geometry,
                crop=crops[i] if crops is not None else None,
            )
            for i, q in enumerate(questions)
        ]
        # input order, not completion order
        results = [f.result() for f in futures]

    regions = [r for r, _ in results]
    answers = [a for _, a in results]
    return regions, answers


# ------------------------------------------------------------
# entry point
# ------------------------------------------------------------

def run_pipeline(
    image: Optional[ImageInput],
    questions: Sequence[QuestionInput],
    *,
    stage: Union[Stage, str] = Stage.PARSE,
    crops: Optional[Sequence[ImageInput]] = None,
    cfg: Optional[OMRConfig] = None,
    ocr: Optional[OCRService] = None,
) -> PipelineResult:
    """
    Sheet image + ordered question specs -> PipelineResult.

    stage:
    - detect: markers only
    - crop: detect + geometry + per-question regions (answers unclassified)
    - parse: full pipeline
    - classify: caller-supplied crops (one per question), geometry skipped

    Whole-pipeline errors (InsufficientMarkers / DegenerateGeometry) come back as
    PipelineResult.failed(...); call raise_for_error() to get the exception.
    Caller mistakes (crops missing / wrong count for classify) raise ValueError.
    """
    ctx = PipelineContext.create(cfg, ocr)
    stage = Stage(stage)
    questions = list(questions)
    source = as_image(image) if image is not None else None

    logger.info("pipeline start: stage=%s questions=%d workers=%d", stage.value, len(questions), ctx.workers)

    if stage is Stage.CLASSIFY:
        if crops is None:
            raise ValueError("classify stage requires crops")
        if len(crops) != len(questions):
            raise ValueError(f"got {len(crops)} cropped images for {len(questions)} questions")
        crop_images = [as_image(c) for c in crops]
        regions, answers = _run_questions(ctx, stage, questions, crops=crop_images)
        result = aggregate(stage, expected=len(questions), source_image=source, regions=regions, answers=answers)
        _log_done(result)
        return result

    if source is None:
        raise ValueError(f"{stage.value} stage requires a sheet image")

    markers: List[Marker] = []
    try:
        markers = detect_markers(source, cfg=ctx.cfg)
        if stage is Stage.DETECT:
            result = aggregate(stage, expected=0, markers=markers, source_image=source)
            _log_done(result)
            return result
        geometry = resolve_geometry(markers, cfg=ctx.cfg, source_size=source.size)
    except OMRError as e:
        if isinstance(e, InsufficientMarkers) and not markers:
            markers = list(e.markers)
        logger.warning("pipeline aborted at %s: %s", stage.value, e)
        return aggregate(stage, expected=len(questions), markers=markers, source_image=source, exception=e)

    corrected = warp_sheet(source, geometry) if ctx.cfg.produce_corrected_image else None

    regions, answers = _run_questions(ctx, stage, questions, image=source, geometry=geometry)
    result = aggregate(
        stage,
        expected=len(questions),
        markers=markers,
        geometry=geometry,
        source_image=source,
        corrected_image=corrected,
        regions=regions,
        answers=answers,
    )
    _log_done(result)
    return result


def _log_done(result: PipelineResult) -> None:
    failed = sum(1 for a in result.answers if a.status is AnswerStatus.ERROR)
    logger.info(
        "pipeline done: stage=%s markers=%d answers=%d failed=%d",
        result.stage.value,
        len(result.markers),
        len(result.answers),
        failed,
    )
