# plan.py
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

import yaml

from .errors import DuplicateJobNameError, InvalidTemplateError
from .model import Pipeline

# ---------------------------------------------------------------------
# Plan identity
# ---------------------------------------------------------------------
# fingerprint = sha256(stable json of the executor-facing plan)
# Same definition + same invocation parameters => same fingerprint.
# ---------------------------------------------------------------------


def _sha256_str(s: str) -> str:
    h = hashlib.sha256()
    h.update(s.encode("utf-8"))
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _plain(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, dict) or hasattr(value, "items"):
        return {k: _plain(v) for k, v in value.items()}
    return value


def plan_body(pipeline: Pipeline) -> Dict[str, Any]:
    return {
        "name": pipeline.name,
        "parameters": _plain(pipeline.parameters),
        "variables": _plain(pipeline.variables),
        "stages": [_plain(s.to_dict()) for s in pipeline.stages],
    }


def fingerprint(pipeline: Pipeline) -> str:
    return _sha256_str(_json_dumps_stable(plan_body(pipeline)))


def to_dict(pipeline: Pipeline) -> Dict[str, Any]:
    """Executor-facing plan, with its fingerprint and trigger metadata."""
    out = plan_body(pipeline)
    out["fingerprint"] = fingerprint(pipeline)
    out["triggers"] = pipeline.triggers.to_dict() if pipeline.triggers is not None else None
    return out


def dumps(pipeline: Pipeline, fmt: str = "json") -> str:
    data = to_dict(pipeline)
    if fmt == "json":
        return json.dumps(data, indent=2, sort_keys=False)
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
    raise ValueError(f"Unknown output format {fmt!r}; expected 'json' or 'yaml'")


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def validate(pipeline: Pipeline) -> None:
    """Re-check the structural invariants of an expanded plan."""
    if not pipeline.stages:
        raise InvalidTemplateError(f"Pipeline '{pipeline.name}' has no stages")

    stage_names = [s.name for s in pipeline.stages]
    if len(set(stage_names)) != len(stage_names):
        raise InvalidTemplateError(f"Pipeline '{pipeline.name}' has duplicate stage names: {stage_names}")

    for idx, stage in enumerate(pipeline.stages):
        names = [j.name for j in stage.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise DuplicateJobNameError(
                f"Duplicate job names found in stage '{stage.name}': {dupes}",
                details={"stage": stage.name},
            )
        if stage.depends_on is not None:
            expected = () if idx == 0 else (pipeline.stages[idx - 1].name,)
            if tuple(stage.depends_on) != expected:
                raise InvalidTemplateError(
                    f"Stage '{stage.name}' declares dependsOn {list(stage.depends_on)}; "
                    "stages form a linear chain (no fan-out/fan-in)",
                    details={"depends_on": list(stage.depends_on)},
                )
        for job in stage.jobs:
            if job.max_parallel is not None and job.max_parallel < 1:
                raise InvalidTemplateError(
                    f"Job '{job.name}' has maxParallel {job.max_parallel}; must be >= 1",
                )
