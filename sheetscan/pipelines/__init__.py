"""
Pipeline entry point.

    from sheetscan.pipelines import run_pipeline

    result = run_pipeline(image, questions, stage="parse")
    result.raise_for_error()
    for answer in result.answers:
        print(answer.index, answer.status.value, answer.labels)
"""

from .aggregator import aggregate
from .dispatcher import PipelineContext, run_pipeline

__all__ = ["PipelineContext", "aggregate", "run_pipeline"]
