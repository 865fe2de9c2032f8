"""Pipeline package - Step definitions and the executor."""

from extraction_queue.pipeline.executor import PipelineExecutor, ProgressRecorder
from extraction_queue.pipeline.steps import (
    PIPELINE_FACTORIES,
    Pipeline,
    RunPaths,
    StepContext,
    StepDefinition,
    build_pipeline,
)

__all__ = [
    "PipelineExecutor",
    "ProgressRecorder",
    "Pipeline",
    "StepDefinition",
    "StepContext",
    "RunPaths",
    "PIPELINE_FACTORIES",
    "build_pipeline",
]
