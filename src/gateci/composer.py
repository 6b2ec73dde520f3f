# composer.py
from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .conditions import check_domains, evaluate, select_variable
from .errors import DuplicateJobNameError, MissingDependencyError
from .interpolate import interpolate
from .matrix import expand, with_runtime
from .model import (
    ConcreteJob,
    ConcreteStep,
    JobRef,
    JobSkeleton,
    ParameterSet,
    Pipeline,
    PipelineDefinition,
    Stage,
    StageDefinition,
    freeze_value,
)
from .params import check_overrides, resolve
from .plan import validate
from .triggers import TriggerPolicy

logger = logging.getLogger(__name__)

DEFAULT_STAGE = "Default"


# ---------------------------------------------------------------------
# Job Composer
# ---------------------------------------------------------------------

def compose(skeleton: JobSkeleton, params: Optional[ParameterSet] = None) -> ConcreteJob:
    """
    Finalize one job: select derived variables, drop steps whose condition
    is false, interpolate the rest in declaration order.

    A step that consumes a job-local artifact must come after a kept step
    that produces it.
    """
    template = skeleton.template
    params = params if params is not None else skeleton.parameters
    name = skeleton.name

    derived: Dict[str, Any] = {}
    for variable in template.variables:
        raw = select_variable(variable, params)
        derived[variable.name] = interpolate(raw, params, where=f"{name}.variables.{variable.name}")
    if derived:
        params = with_runtime(params, derived)

    produced: Set[str] = set()
    steps: List[ConcreteStep] = []
    for idx, step in enumerate(template.steps):
        where = f"{name}.steps[{idx}]"
        if step.condition and not evaluate(step.condition, params):
            logger.debug("%s: dropped %r (%s)", name, step.label, step.condition)
            continue

        missing = [a for a in step.consumes if a not in produced]
        if missing:
            raise MissingDependencyError(
                f"Step '{step.label}' consumes {', '.join(missing)} but no earlier step in job '{name}' produces it",
                details={"job": name, "step": step.label, "produced": ", ".join(sorted(produced)) or "<none>"},
            )
        produced.update(step.produces)

        steps.append(
            ConcreteStep(
                kind=step.kind,
                label=interpolate(step.label, params, where=f"{where}.label"),
                args=MappingProxyType(
                    {k: interpolate(v, params, where=f"{where}.{k}") for k, v in step.args.items()}
                ),
                run_condition=step.run_condition,
                produces=step.produces,
                consumes=step.consumes,
            )
        )

    display = interpolate(template.display_name, params, where=f"{name}.displayName") if template.display_name else None
    return ConcreteJob(
        name=name,
        pool=interpolate(template.pool, params, where=f"{name}.pool"),
        steps=tuple(steps),
        # each job owns a private copy of its bindings
        bindings=MappingProxyType({k: freeze_value(v) for k, v in params.items()}),
        axis_value=skeleton.axis_value,
        max_parallel=skeleton.max_parallel,
        display_name=display,
        group=skeleton.group,
    )


def expand_job_ref(
    ref: JobRef,
    runtime: Optional[Mapping[str, Any]] = None,
    *,
    position: Optional[int] = None,
) -> List[ConcreteJob]:
    """
    Resolve parameters for one template use, expand its matrix, compose
    every job. ``position`` (the use's index in its stage) keeps the
    expansion groups of two uses apart.
    """
    template = ref.template
    check_overrides(template.parameters, ref.parameters, where=template.name)
    params = resolve(template.parameters, ref.parameters, runtime)
    check_domains(template.domains, params, where=template.name)
    return [compose(s) for s in expand(template, params, position=position)]


# ---------------------------------------------------------------------
# Stage Composer
# ---------------------------------------------------------------------

def _check_unique_jobs(stage_name: str, jobs: Sequence[ConcreteJob]) -> None:
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobNameError(
            f"Duplicate job names found in stage '{stage_name}': {dupes}",
            details={"stage": stage_name},
        )


def compose_stage(
    name: str,
    job_refs: Iterable[JobRef],
    stage_parameters: Optional[Mapping[str, Any]] = None,
    *,
    variables: Optional[Mapping[str, Any]] = None,
    display_name: Optional[str] = None,
    fail_fast: bool = True,
    depends_on: Optional[Sequence[str]] = None,
) -> Stage:
    """
    Concatenate the jobs of every template use into one stage.

    ``variables`` are pipeline-level; ``stage_parameters`` are visible to
    the jobs of this stage only and win over pipeline variables.
    """
    stage_parameters = dict(stage_parameters or {})
    runtime: Dict[str, Any] = dict(variables or {})
    runtime.update(stage_parameters)

    jobs: List[ConcreteJob] = []
    for position, ref in enumerate(job_refs):
        jobs.extend(expand_job_ref(ref, runtime, position=position))
    _check_unique_jobs(name, jobs)

    logger.debug("stage %s: %d job(s)", name, len(jobs))
    return Stage(
        name=name,
        jobs=tuple(jobs),
        parameters=MappingProxyType({k: freeze_value(v) for k, v in stage_parameters.items()}),
        display_name=display_name,
        fail_fast=fail_fast,
        depends_on=tuple(depends_on) if depends_on is not None else None,
    )


def compose_pipeline(
    name: str,
    stages: Sequence[Stage],
    *,
    variables: Optional[Mapping[str, Any]] = None,
    parameters: Optional[Mapping[str, Any]] = None,
    triggers: Optional[TriggerPolicy] = None,
) -> Pipeline:
    """
    Chain stages into a linear pipeline. Stage i+1 implicitly depends on
    stage i; any other declared dependency is rejected.
    """
    pipeline = Pipeline(
        name=name,
        stages=tuple(stages),
        variables=MappingProxyType(dict(variables or {})),
        parameters=MappingProxyType(dict(parameters or {})),
        triggers=triggers,
    )
    validate(pipeline)
    return pipeline


# ---------------------------------------------------------------------
# Whole pipeline
# ---------------------------------------------------------------------

def expand_pipeline(definition: PipelineDefinition, parameters: Optional[Mapping[str, Any]] = None) -> Pipeline:
    """
    Expand a pipeline definition into an immutable plan.

    Required invocation parameters are checked before any stage is
    composed. Any expansion error aborts the whole pipeline.
    """
    triggers: TriggerPolicy = definition.triggers or TriggerPolicy()
    supplied = triggers.manual.require(dict(parameters or {}))

    runtime: Dict[str, Any] = dict(definition.variables)
    runtime.update(supplied)

    stages = [
        compose_stage(
            sd.name,
            sd.jobs,
            sd.parameters,
            variables=runtime,
            display_name=sd.display_name,
            fail_fast=sd.fail_fast,
            depends_on=sd.depends_on,
        )
        for sd in definition.stages
    ]
    return compose_pipeline(
        definition.name,
        stages,
        variables=definition.variables,
        parameters=supplied,
        triggers=triggers,
    )


def single_stage(name: str, job_refs: Iterable[JobRef], **kwargs) -> StageDefinition:
    """Jobs-only pipelines run as one implicit stage."""
    return StageDefinition(name=name or DEFAULT_STAGE, jobs=tuple(job_refs), **kwargs)
