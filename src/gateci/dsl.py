# src/gateci/dsl.py
from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .model import (
    ConditionalVariable,
    JobRef,
    JobTemplate,
    MatrixAxis,
    PipelineDefinition,
    StageDefinition,
    StepTemplate,
)
from .triggers import ManualTrigger, PullRequestTrigger, ScheduleTrigger, TriggerPolicy

StepLike = Union[StepTemplate, Sequence[StepTemplate]]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def script(
    label: str,
    cmd: str,
    *,
    condition: str | None = None,
    run_condition: str | None = None,
    produces: Iterable[str] = (),
    consumes: Iterable[str] = (),
    cwd: str | None = None,
    env: Optional[Mapping[str, str]] = None,
) -> StepTemplate:
    """Create a shell step. ``env`` entries become ``env.NAME`` arguments."""
    args = {"script": cmd}
    if cwd is not None:
        args["workingDirectory"] = cwd
    for k, v in (env or {}).items():
        args[f"env.{k}"] = v
    return StepTemplate(
        kind="script",
        label=label,
        args=args,
        condition=condition,
        run_condition=run_condition,
        produces=tuple(produces),
        consumes=tuple(consumes),
    )


def task(
    label: str,
    name: str,
    *,
    condition: str | None = None,
    run_condition: str | None = None,
    produces: Iterable[str] = (),
    consumes: Iterable[str] = (),
    **inputs: Any,
) -> StepTemplate:
    """Create a step that runs a named executor task (``UsePythonVersion@0`` ...)."""
    args = {"task": name}
    args.update({k: str(v) for k, v in inputs.items()})
    return StepTemplate(
        kind="task",
        label=label,
        args=args,
        condition=condition,
        run_condition=run_condition,
        produces=tuple(produces),
        consumes=tuple(consumes),
    )


def publish(
    label: str,
    path: str,
    artifact: str,
    *,
    condition: str | None = None,
    run_condition: str | None = None,
    consumes: Iterable[str] = (),
) -> StepTemplate:
    """Publish a file as a pipeline artifact (visible to later stages)."""
    return StepTemplate(
        kind="publish",
        label=label,
        args={"path": path, "artifact": artifact},
        condition=condition,
        run_condition=run_condition,
        consumes=tuple(consumes),
    )


def download(
    label: str,
    artifact: str,
    path: str,
    *,
    condition: str | None = None,
    run_condition: str | None = None,
    produces: Iterable[str] = (),
) -> StepTemplate:
    """Fetch a pipeline artifact from an earlier stage into the job workspace."""
    return StepTemplate(
        kind="download",
        label=label,
        args={"artifact": artifact, "path": path},
        condition=condition,
        run_condition=run_condition,
        produces=tuple(produces),
    )


def guard(parameter: str, allowed: Sequence[str]) -> StepTemplate:
    """
    A step that fails the job at run time when ``parameter`` is outside
    ``allowed``. Expansion itself never fails on the bad value.
    """
    quoted = ", ".join(f"'{a}'" for a in allowed)
    return script(
        f"Bad {parameter}: ${{{{ parameters.{parameter} }}}}",
        "exit 1",
        condition=f"notIn(parameters.{parameter}, {quoted})",
    )


def when(name: str, *branches: Tuple[str, str], otherwise: str | None = None) -> ConditionalVariable:
    """Derived variable: ``when("pypiUrl", (cond, value), ...)``."""
    return ConditionalVariable(name=name, branches=tuple(branches), fallback=otherwise)


def _flatten(steps: Iterable[StepLike]) -> Tuple[StepTemplate, ...]:
    out: List[StepTemplate] = []
    for s in steps:
        if isinstance(s, StepTemplate):
            out.append(s)
        else:
            out.extend(_flatten(s))
    return tuple(out)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    One matrix axis over a sequence parameter.

    Example:
        matrix("pyVersions", "PyVer", max_parallel=2,
               RequirementsFile="requirements-$(PyVer).txt")
    """
    def __init__(self, parameter: str, variable: str, *, max_parallel: int | None = None, **variables: str):
        if max_parallel is not None and max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")
        self.parameter = parameter
        self.variable = variable
        self.max_parallel = max_parallel
        self.variables = dict(variables)

    def axis(self) -> MatrixAxis:
        return MatrixAxis(
            parameter=self.parameter,
            variable=self.variable,
            variables=dict(self.variables),
            max_parallel=self.max_parallel,
        )


def matrix(parameter: str, variable: str, *, max_parallel: int | None = None, **variables: str) -> Matrix:
    return Matrix(parameter, variable, max_parallel=max_parallel, **variables)


# ---------------------------------------------------------------------
# Functional job template helper
# ---------------------------------------------------------------------

def job_template(
    name: str,
    *steps: StepLike,
    parameters: Optional[Mapping[str, Any]] = None,
    matrix: Optional[Matrix] = None,
    variables: Iterable[ConditionalVariable] = (),
    pool: str = "${{ parameters.vmImage }}",
    display_name: str | None = None,
    prefix: str = "",
    domains: Optional[Mapping[str, Sequence[str]]] = None,
) -> JobTemplate:
    steps_final = _flatten(steps)
    if not steps_final:
        raise ValueError(f"job_template({name!r}) must have at least one step")
    return JobTemplate(
        name=name,
        steps=steps_final,
        parameters=dict(parameters or {}),
        matrix=matrix.axis() if matrix is not None else None,
        variables=tuple(variables),
        pool=pool,
        display_name=display_name,
        prefix=prefix,
        domains={k: tuple(v) for k, v in (domains or {}).items()},
    )


def use(template: JobTemplate, **parameters: Any) -> JobRef:
    """``- template: x`` with ``parameters:``."""
    return JobRef(template=template, parameters=parameters)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobTemplateBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[StepTemplate] = []
        self._parameters: dict[str, Any] = {}
        self._variables: list[ConditionalVariable] = []
        self._matrix: Optional[Matrix] = None
        self._pool: str = "${{ parameters.vmImage }}"
        self._display_name: str | None = None

    def param(self, name: str, default: Any = None):
        self._parameters[name] = default
        return self

    def define_step(self, *steps: StepLike):
        self._steps.extend(_flatten(steps))
        return self

    def with_matrix(self, parameter: str, variable: str, *, max_parallel: int | None = None, **variables: str):
        self._matrix = Matrix(parameter, variable, max_parallel=max_parallel, **variables)
        return self

    def with_variable(self, variable: ConditionalVariable):
        self._variables.append(variable)
        return self

    def on_pool(self, pool: str):
        self._pool = pool
        return self

    def display(self, display_name: str):
        self._display_name = display_name
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job template '{self.name}' has no steps")
        return job_template(
            self.name,
            *self._steps,
            parameters=self._parameters,
            matrix=self._matrix,
            variables=self._variables,
            pool=self._pool,
            display_name=self._display_name,
        )


def build(name: str) -> JobTemplateBuilder:
    """Convenience: build('x').param(...).define_step(...).build()"""
    return JobTemplateBuilder(name)


# ---------------------------------------------------------------------
# Stages, triggers, pipelines
# ---------------------------------------------------------------------

def stage(
    name: str,
    *jobs: Union[JobRef, Sequence[JobRef]],
    parameters: Optional[Mapping[str, Any]] = None,
    display_name: str | None = None,
    fail_fast: bool = True,
    depends_on: Optional[Sequence[str]] = None,
) -> StageDefinition:
    refs: List[JobRef] = []
    for j in jobs:
        if isinstance(j, JobRef):
            refs.append(j)
        else:
            refs.extend(j)
    return StageDefinition(
        name=name,
        jobs=tuple(refs),
        parameters=dict(parameters or {}),
        display_name=display_name,
        fail_fast=fail_fast,
        depends_on=tuple(depends_on) if depends_on is not None else None,
    )


def on_pr(*branches: str) -> PullRequestTrigger:
    return PullRequestTrigger(branches=tuple(branches))


def schedule(cron: str, *, display_name: str = "", branches: Sequence[str] = ("master",), always: bool = False) -> ScheduleTrigger:
    return ScheduleTrigger(cron=cron, display_name=display_name, branches=tuple(branches), always=always)


def triggers(
    *,
    pr: Optional[PullRequestTrigger] = None,
    schedules: Sequence[ScheduleTrigger] = (),
    required: Optional[Mapping[str, str]] = None,
) -> TriggerPolicy:
    return TriggerPolicy(pr=pr, schedules=tuple(schedules), manual=ManualTrigger(parameters=dict(required or {})))


def pipeline(
    name: str,
    *stages: Union[StageDefinition, Sequence[StageDefinition]],
    variables: Optional[Mapping[str, Any]] = None,
    trigger: Optional[TriggerPolicy] = None,
    description: str = "",
) -> PipelineDefinition:
    """
    Pipeline definition helper.

        PIPELINE = pipeline("pr-gate", stage("Default", use(ALL_TESTS, ...)), trigger=triggers(pr=on_pr("master")))
    """
    flat: List[StageDefinition] = []
    for s in stages:
        if isinstance(s, StageDefinition):
            flat.append(s)
        else:
            flat.extend(s)
    return PipelineDefinition(
        name=name,
        stages=tuple(flat),
        variables=dict(variables or {}),
        triggers=trigger or TriggerPolicy(),
        description=description,
    )
