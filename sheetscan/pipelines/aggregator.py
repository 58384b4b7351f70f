# sheetscan/pipelines/aggregator.py
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from sheetscan.errors import ErrorCode, OMRError
from sheetscan.types import (
    AnswerResult,
    ErrorInfo,
    Image,
    Marker,
    PipelineResult,
    QuestionRegion,
    SheetGeometry,
    Stage,
)

logger = logging.getLogger(__name__)


def aggregate(
    stage: Stage,
    *,
    expected: int,
    markers: Sequence[Marker] = (),
    geometry: Optional[SheetGeometry] = None,
    source_image: Optional[Image] = None,
    corrected_image: Optional[Image] = None,
    regions: Sequence[Optional[QuestionRegion]] = (),
    answers: Sequence[AnswerResult] = (),
    exception: Optional[OMRError] = None,
) -> PipelineResult:
    """
    Whatever the run produced -> one PipelineResult. Never raises.

    - exception set (whole-pipeline failure): no answers, error filled
    - DETECT: markers only, answers=()
    - otherwise answers/regions padded to `expected` so len(answers) == len(questions)
    """
    if exception is not None:
        return PipelineResult.failed(stage, exception, markers=markers, source_image=source_image)

    if stage is Stage.DETECT:
        return PipelineResult(stage=stage, markers=tuple(markers), source_image=source_image)

    out_answers: List[AnswerResult] = list(answers)[:expected]
    out_regions: List[Optional[QuestionRegion]] = list(regions)[:expected]

    if len(out_answers) < expected:
        logger.warning("aggregate: %d of %d answers missing, padding", expected - len(out_answers), expected)
    for i in range(len(out_answers), expected):
        out_answers.append(
            AnswerResult.failed(i, ErrorInfo(code=ErrorCode.INTERNAL, message="no result produced for question"))
        )
    while len(out_regions) < expected:
        out_regions.append(None)

    return PipelineResult(
        stage=stage,
        markers=tuple(markers),
        geometry=geometry,
        source_image=source_image,
        corrected_image=corrected_image,
        regions=tuple(out_regions),
        answers=tuple(out_answers),
    )
