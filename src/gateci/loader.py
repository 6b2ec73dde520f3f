# loader.py
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from . import dsl
from .catalog import JOB_TEMPLATES
from .composer import single_stage
from .errors import InvalidTemplateError
from .model import JobRef, JobTemplate, PipelineDefinition, StepTemplate
from .pipelines import get_pipeline

logger = logging.getLogger(__name__)

PIPELINE_SUFFIXES = (".yml", ".yaml", ".py")


# ---------------------------------------------------------------------
# YAML schema
# ---------------------------------------------------------------------

class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepModel(_Model):
    script: Optional[str] = None
    task: Optional[str] = None
    publish: Optional[str] = None
    download: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    inputs: Dict[str, Any] = Field(default_factory=dict)
    artifact: Optional[str] = None
    path: Optional[str] = None
    working_directory: Optional[str] = Field(default=None, alias="workingDirectory")
    env: Dict[str, str] = Field(default_factory=dict)
    condition: Optional[str] = None
    run_condition: Optional[str] = Field(default=None, alias="runCondition")
    produces: List[str] = Field(default_factory=list)
    consumes: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_kind(self) -> "StepModel":
        kinds = [k for k in ("script", "task", "publish", "download") if getattr(self, k) is not None]
        if len(kinds) != 1:
            raise ValueError("a step needs exactly one of script, task, publish, download")
        if self.publish is not None and not self.artifact:
            raise ValueError("publish steps need an 'artifact'")
        return self

    def to_step(self) -> StepTemplate:
        if self.script is not None:
            return dsl.script(
                self.display_name or self.script,
                self.script,
                condition=self.condition,
                run_condition=self.run_condition,
                produces=self.produces,
                consumes=self.consumes,
                cwd=self.working_directory,
                env=self.env,
            )
        if self.task is not None:
            return dsl.task(
                self.display_name or self.task,
                self.task,
                condition=self.condition,
                run_condition=self.run_condition,
                produces=self.produces,
                consumes=self.consumes,
                **self.inputs,
            )
        if self.publish is not None:
            return dsl.publish(
                self.display_name or f"Publish {self.publish}",
                self.publish,
                self.artifact,
                condition=self.condition,
                run_condition=self.run_condition,
                consumes=self.consumes,
            )
        return dsl.download(
            self.display_name or f"Download {self.download}",
            self.download,
            self.path or "$(System.DefaultWorkingDirectory)",
            condition=self.condition,
            run_condition=self.run_condition,
            produces=self.produces,
        )


class MatrixModel(_Model):
    parameter: str
    variable: str
    max_parallel: Optional[int] = Field(default=None, alias="maxParallel", ge=1)
    variables: Dict[str, str] = Field(default_factory=dict)


class BranchModel(_Model):
    condition: str
    value: str


class VariableModel(_Model):
    name: str
    branches: List[BranchModel]
    otherwise: Optional[str] = None


class TemplateModel(_Model):
    name: str
    steps: List[StepModel]
    parameters: Dict[str, Any] = Field(default_factory=dict)
    matrix: Optional[MatrixModel] = None
    variables: List[VariableModel] = Field(default_factory=list)
    pool: str = "${{ parameters.vmImage }}"
    display_name: Optional[str] = Field(default=None, alias="displayName")

    def to_template(self) -> JobTemplate:
        return dsl.job_template(
            self.name,
            *[s.to_step() for s in self.steps],
            parameters=self.parameters,
            matrix=(
                dsl.matrix(
                    self.matrix.parameter,
                    self.matrix.variable,
                    max_parallel=self.matrix.max_parallel,
                    **self.matrix.variables,
                )
                if self.matrix is not None
                else None
            ),
            variables=[
                dsl.when(v.name, *[(b.condition, b.value) for b in v.branches], otherwise=v.otherwise)
                for v in self.variables
            ],
            pool=self.pool,
            display_name=self.display_name,
        )


class JobRefModel(_Model):
    template: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class StageModel(_Model):
    stage: str
    jobs: List[JobRefModel]
    display_name: Optional[str] = Field(default=None, alias="displayName")
    fail_fast: bool = Field(default=True, alias="failFast")
    depends_on: Optional[List[str]] = Field(default=None, alias="dependsOn")
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ScheduleModel(_Model):
    cron: str
    display_name: str = Field(default="", alias="displayName")
    branches: List[str] = Field(default_factory=lambda: ["master"])
    always: bool = False


class TriggerModel(_Model):
    pr: Optional[List[str]] = None
    schedules: List[ScheduleModel] = Field(default_factory=list)
    parameters: Dict[str, str] = Field(default_factory=dict)


class PipelineModel(_Model):
    name: str
    description: str = ""
    variables: Dict[str, Any] = Field(default_factory=dict)
    trigger: TriggerModel = Field(default_factory=TriggerModel)
    templates: Dict[str, TemplateModel] = Field(default_factory=dict)
    stages: List[StageModel] = Field(default_factory=list)
    jobs: List[JobRefModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def _stages_or_jobs(self) -> "PipelineModel":
        if self.stages and self.jobs:
            raise ValueError("declare either 'stages' or 'jobs', not both")
        if not self.stages and not self.jobs:
            raise ValueError("a pipeline needs 'stages' or 'jobs'")
        return self


# ---------------------------------------------------------------------
# Building definitions
# ---------------------------------------------------------------------

def _lookup(name: str, inline: Dict[str, JobTemplate]) -> JobTemplate:
    if name in inline:
        return inline[name]
    if name in JOB_TEMPLATES:
        return JOB_TEMPLATES[name]
    raise InvalidTemplateError(
        f"Unknown job template '{name}'",
        details={"available": ", ".join(sorted({*inline, *JOB_TEMPLATES}))},
    )


def _refs(jobs: List[JobRefModel], inline: Dict[str, JobTemplate]) -> List[JobRef]:
    return [dsl.use(_lookup(j.template, inline), **j.parameters) for j in jobs]


def definition_from_dict(data: Dict[str, Any], *, source: str = "<memory>") -> PipelineDefinition:
    """Validate a parsed YAML document and build a PipelineDefinition from it."""
    try:
        model = PipelineModel.model_validate(data)
    except ValidationError as ve:
        messages = [f"{e.get('msg')} at {'.'.join(str(p) for p in e.get('loc', []))}" for e in ve.errors()]
        raise InvalidTemplateError(
            f"Invalid pipeline file {source}",
            details={f"error[{i}]": m for i, m in enumerate(messages)},
        ) from ve

    inline = {name: t.to_template() for name, t in model.templates.items()}

    if model.stages:
        stages = [
            dsl.stage(
                s.stage,
                _refs(s.jobs, inline),
                parameters=s.parameters,
                display_name=s.display_name,
                fail_fast=s.fail_fast,
                depends_on=s.depends_on,
            )
            for s in model.stages
        ]
    else:
        stages = [single_stage("", _refs(model.jobs, inline))]

    trig = model.trigger
    policy = dsl.triggers(
        pr=dsl.on_pr(*trig.pr) if trig.pr else None,
        schedules=[
            dsl.schedule(s.cron, display_name=s.display_name, branches=s.branches, always=s.always)
            for s in trig.schedules
        ],
        required=trig.parameters,
    )
    return dsl.pipeline(
        model.name,
        *stages,
        variables=model.variables,
        trigger=policy,
        description=model.description,
    )


def _load_yaml(path: Path) -> PipelineDefinition:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as ye:
        mark = getattr(ye, "problem_mark", None)
        details = {"line": mark.line + 1, "column": mark.column + 1} if mark is not None else {}
        raise InvalidTemplateError(f"Could not parse {path.name}: {ye}", details=details) from ye
    if not isinstance(data, dict):
        raise InvalidTemplateError(f"Pipeline file {path.name} must contain a mapping")
    return definition_from_dict(data, source=path.name)


def _load_python(path: Path) -> PipelineDefinition:
    module_name = f"gateci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    definition = None
    fn = globals_dict.get("pipeline")
    # ``pipeline`` may be the DSL helper imported into the file, not a factory
    if callable(fn) and fn is not dsl.pipeline:
        definition = fn()
    elif "PIPELINE" in globals_dict:
        definition = globals_dict["PIPELINE"]

    if not isinstance(definition, PipelineDefinition):
        raise TypeError(
            "Pipeline file must return/define a PipelineDefinition. "
            "Define pipeline() -> PipelineDefinition or PIPELINE = pipeline(...)."
        )
    return definition


def load_pipeline(path: Union[str, Path]) -> PipelineDefinition:
    """
    Load a pipeline definition from a file.

    ``.yml``/``.yaml`` files are validated against the pipeline schema;
    ``.py`` files must define either:
      - pipeline() -> PipelineDefinition
      - PIPELINE = PipelineDefinition(...)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix not in PIPELINE_SUFFIXES:
        raise ValueError(f"Pipeline file must be one of {', '.join(PIPELINE_SUFFIXES)}, got: {p.name}")

    logger.debug("loading pipeline from %s", p)
    if p.suffix == ".py":
        return _load_python(p)
    return _load_yaml(p)


def find_pipeline_files(directory: Union[str, Path]) -> List[Path]:
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted(p for p in d.iterdir() if p.suffix in PIPELINE_SUFFIXES and not p.name.startswith("_"))


def resolve_pipeline(name_or_path: str, pipeline_dir: Union[str, Path, None] = None) -> PipelineDefinition:
    """
    Find a pipeline by registered name, file path, or file stem inside
    ``pipeline_dir``, in that order.
    """
    try:
        return get_pipeline(name_or_path)
    except KeyError:
        pass

    candidate = Path(name_or_path)
    if candidate.exists():
        return load_pipeline(candidate)

    if pipeline_dir is not None:
        for suffix in PIPELINE_SUFFIXES:
            p = Path(pipeline_dir) / f"{name_or_path}{suffix}"
            if p.exists():
                return load_pipeline(p)

    raise FileNotFoundError(f"No registered pipeline or pipeline file named '{name_or_path}'")
