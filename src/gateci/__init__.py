from .dsl import build, job_template, matrix, pipeline, script, stage, task, triggers, use
from .composer import expand_pipeline
from .execution import run_plan
from .model import JobTemplate, Pipeline, PipelineDefinition

__all__ = [
    "build",
    "job_template",
    "matrix",
    "pipeline",
    "script",
    "stage",
    "task",
    "triggers",
    "use",
    "expand_pipeline",
    "run_plan",
    "JobTemplate",
    "Pipeline",
    "PipelineDefinition",
]
