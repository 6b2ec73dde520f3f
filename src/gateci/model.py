# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .errors import UnresolvedParameterError


# ---------------------------------------------------------------------
# Closed parameter domains
# ---------------------------------------------------------------------

class TestRunType(str, Enum):
    __test__ = False  # keep pytest from collecting this

    UNIT = "Unit"
    NOTEBOOKS = "Notebooks"


class InstallationType(str, Enum):
    NONE = "None"
    PIP_LOCAL = "PipLocal"
    PYPI = "PyPI"


class TargetType(str, Enum):
    TEST = "Test"
    PROD = "Prod"


class Platform(str, Enum):
    LINUX = "Linux"
    WINDOWS = "Windows"
    MACOS = "MacOS"


def enum_values(enum_cls) -> Tuple[str, ...]:
    return tuple(m.value for m in enum_cls)


# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

Scalar = Any  # str | bool | int | float


class ParameterSet(Mapping[str, Any]):
    """
    Immutable, layered parameter bindings for one invocation.

    Declared parameters with no value in any layer are kept as unresolved:
    they are "known" (``name in params`` is True) but reading them raises
    UnresolvedParameterError.
    """

    def __init__(self, values: Mapping[str, Any], unresolved: Tuple[str, ...] = ()):
        self._values: Dict[str, Any] = dict(values)
        self._unresolved = frozenset(unresolved) - set(self._values)

    def __getitem__(self, name: str) -> Any:
        if name in self._values:
            return self._values[name]
        if name in self._unresolved:
            raise UnresolvedParameterError(
                f"Parameter '{name}' has no default and no supplied value",
                details={"parameter": name},
            )
        raise KeyError(name)

    def __contains__(self, name: object) -> bool:
        return name in self._values or name in self._unresolved

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ParameterSet({self._values!r}, unresolved={sorted(self._unresolved)!r})"

    @property
    def unresolved(self) -> frozenset:
        return self._unresolved

    def is_resolved(self, name: str) -> bool:
        return name in self._values

    def to_dict(self) -> Dict[str, Any]:
        return {k: list(v) if isinstance(v, tuple) else v for k, v in self._values.items()}


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepTemplate:
    """One unit of work inside a job template."""
    kind: str                                   # "script", "task", "publish", "download", ...
    label: str
    args: Mapping[str, str] = field(default_factory=dict)
    condition: Optional[str] = None             # design-time, evaluated at expansion
    run_condition: Optional[str] = None         # run-time, passed through to the executor
    produces: Tuple[str, ...] = ()
    consumes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConditionalVariable:
    """A derived variable chosen by the first (and only) true branch."""
    name: str
    branches: Tuple[Tuple[str, str], ...]       # (condition, value)
    fallback: Optional[str] = None


@dataclass(frozen=True)
class MatrixAxis:
    """
    Expands a job once per value of ``parameter``.

    ``variable`` is bound to the axis value in each expansion; ``variables``
    are extra per-value runtime variables rendered after the axis is bound.
    """
    parameter: str
    variable: str
    variables: Mapping[str, str] = field(default_factory=dict)
    max_parallel: Optional[int] = None


@dataclass(frozen=True)
class JobTemplate:
    name: str                                   # interpolatable base name, e.g. "${{ parameters.platform }}_..."
    steps: Tuple[StepTemplate, ...]
    parameters: Mapping[str, Any] = field(default_factory=dict)   # declared params -> defaults (None = required)
    matrix: Optional[MatrixAxis] = None
    variables: Tuple[ConditionalVariable, ...] = ()
    pool: str = "${{ parameters.vmImage }}"
    display_name: Optional[str] = None
    prefix: str = ""
    domains: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)  # closed value sets, checked once per use


@dataclass(frozen=True)
class JobRef:
    """A use of a job template with caller overrides (``- template: x`` + ``parameters:``)."""
    template: JobTemplate
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StageDefinition:
    name: str
    jobs: Tuple[JobRef, ...]
    parameters: Mapping[str, Any] = field(default_factory=dict)   # passed down to every job
    display_name: Optional[str] = None
    fail_fast: bool = True
    depends_on: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class PipelineDefinition:
    """Unexpanded pipeline: what a pipeline file declares."""
    name: str
    stages: Tuple[StageDefinition, ...]
    variables: Mapping[str, Any] = field(default_factory=dict)
    triggers: Optional[Any] = None              # triggers.TriggerPolicy
    description: str = ""


# ---------------------------------------------------------------------
# Expansion results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobSkeleton:
    """Output of the matrix expander: one (template x axis value) pair."""
    template: JobTemplate
    name: str
    parameters: ParameterSet
    axis_value: Optional[str] = None
    max_parallel: Optional[int] = None
    group: Optional[str] = None                 # jobs from one expansion share a group

@dataclass(frozen=True)
class ConcreteStep:
    kind: str
    label: str
    args: Mapping[str, str]
    run_condition: Optional[str] = None
    produces: Tuple[str, ...] = ()
    consumes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind, "label": self.label, "args": dict(self.args)}
        if self.run_condition:
            d["run_condition"] = self.run_condition
        if self.produces:
            d["produces"] = list(self.produces)
        if self.consumes:
            d["consumes"] = list(self.consumes)
        return d


@dataclass(frozen=True)
class ConcreteJob:
    name: str
    pool: str
    steps: Tuple[ConcreteStep, ...]
    bindings: Mapping[str, Any]
    axis_value: Optional[str] = None
    max_parallel: Optional[int] = None
    display_name: Optional[str] = None
    group: Optional[str] = None                 # maxParallel applies per group

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name or self.name,
            "pool": self.pool,
            "axis_value": self.axis_value,
            "max_parallel": self.max_parallel,
            "group": self.group,
            "bindings": {k: list(v) if isinstance(v, tuple) else v for k, v in self.bindings.items()},
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class Stage:
    name: str
    jobs: Tuple[ConcreteJob, ...]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    display_name: Optional[str] = None
    fail_fast: bool = True
    depends_on: Optional[Tuple[str, ...]] = None  # only the previous stage is legal

    def job(self, name: str) -> ConcreteJob:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(f"Stage '{self.name}' has no job '{name}'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name or self.name,
            "fail_fast": self.fail_fast,
            "parameters": dict(self.parameters),
            "jobs": [j.to_dict() for j in self.jobs],
        }


@dataclass(frozen=True)
class Pipeline:
    """
    The fully expanded plan: stages run strictly in order, each gated by
    the success of the previous one.
    """
    name: str
    stages: Tuple[Stage, ...]
    variables: Mapping[str, Any] = field(default_factory=dict)
    parameters: Mapping[str, Any] = field(default_factory=dict)
    triggers: Optional[Any] = None              # triggers.TriggerPolicy

    @property
    def jobs(self) -> Tuple[ConcreteJob, ...]:
        return tuple(j for s in self.stages for j in s.jobs)

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(f"Pipeline '{self.name}' has no stage '{name}'")


def freeze_value(value: Any) -> Any:
    """Copy a parameter value into its immutable form (lists become tuples)."""
    if isinstance(value, (list, tuple)):
        return tuple(freeze_value(v) for v in value)
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze_value(v) for k, v in value.items()})
    return value
