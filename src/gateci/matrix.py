# matrix.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .errors import InvalidTemplateError
from .interpolate import interpolate, referenced_names, render_value
from .model import JobSkeleton, JobTemplate, ParameterSet

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Derived names (consumed bit-exact by artifact storage)
# ---------------------------------------------------------------------
# Arguments may be placeholders; the all-tests matrix builds its
# per-version patterns with these.

def freeze_artifact_name(stem: str, platform: str, test_run_type: str, py_version: str) -> str:
    return f"{stem}{platform}{test_run_type}{py_version}"


def freeze_file_name(stem: str, job_name_component: str, py_version: str) -> str:
    return f"{stem}-{job_name_component}{py_version}.txt"


def requirements_file_name(py_version: str) -> str:
    return f"requirements-{py_version}.txt"


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def with_runtime(params: ParameterSet, runtime: Dict[str, Any]) -> ParameterSet:
    """Return a copy of ``params`` with ``runtime`` values layered on top."""
    values = dict(params)
    values.update(runtime)
    return ParameterSet(values, unresolved=tuple(params.unresolved))


def axis_values_of(template: JobTemplate, params: ParameterSet) -> List[str]:
    axis = template.matrix
    raw = params[axis.parameter]
    if isinstance(raw, (list, tuple)):
        return [render_value(v) for v in raw]
    if raw is None or raw == "":
        return []
    return [render_value(raw)]


def _step_texts(template: JobTemplate) -> Iterable[tuple]:
    for idx, step in enumerate(template.steps):
        where = f"{template.name}.steps[{idx}]"
        yield where, step.label
        for key, value in step.args.items():
            yield f"{where}.{key}", value


def check_axis_references(template: JobTemplate, params: ParameterSet) -> None:
    """
    Every ``$(name)`` used by a matrix job's steps must be bound by the axis,
    the template's variables, or the pipeline.
    """
    axis = template.matrix
    bound: Set[str] = {axis.variable, *axis.variables, *(v.name for v in template.variables)}
    bound.update(params)
    bound.update(params.unresolved)
    for where, text in _step_texts(template):
        _tmpl, runtime = referenced_names(text)
        dangling = sorted(runtime - bound)
        if dangling:
            raise InvalidTemplateError(
                f"Step references unbound matrix value(s): {', '.join('$(' + n + ')' for n in dangling)}",
                details={"where": where, "bound": ", ".join(sorted(bound))},
            )


def expand(
    template: JobTemplate,
    params: ParameterSet,
    axis_values: Optional[Sequence[Any]] = None,
    *,
    position: Optional[int] = None,
) -> List[JobSkeleton]:
    """
    Produce one job skeleton per axis value (order preserved).

    Templates without a matrix yield exactly one skeleton. An empty axis
    yields none. ``maxParallel`` is recorded on each skeleton, never enforced.
    Skeletons of one call share a ``group``, the scope of that bound.
    """
    base = template.prefix + interpolate(template.name, params, where=f"{template.name}.name")
    group = base if position is None else f"{base}#{position}"

    if template.matrix is None:
        return [JobSkeleton(template=template, name=base, parameters=params, group=group)]

    axis = template.matrix
    check_axis_references(template, params)

    values = [render_value(v) for v in axis_values] if axis_values is not None else axis_values_of(template, params)
    skeletons: List[JobSkeleton] = []
    for value in values:
        runtime: Dict[str, Any] = {axis.variable: value}
        scope = with_runtime(params, runtime)
        for key, text in axis.variables.items():
            runtime[key] = interpolate(text, scope, where=f"{base}.matrix.{key}")
            scope = with_runtime(params, runtime)

        skeletons.append(
            JobSkeleton(
                template=template,
                name=f"{base}_{value}",
                parameters=scope,
                axis_value=value,
                max_parallel=axis.max_parallel,
                group=group,
            )
        )

    logger.debug("expanded %s over %s=%s -> %d job(s)", base, axis.parameter, values, len(skeletons))
    return skeletons
