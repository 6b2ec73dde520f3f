# triggers.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import InvalidTemplateError, UnresolvedParameterError

EVENT_KINDS = ("pr", "schedule", "manual")

_CRON_FIELD = re.compile(r"^[\d*/,\-]+$")


@dataclass(frozen=True)
class TriggerEvent:
    """Something that may queue a pipeline: a PR, a cron tick, or a person."""
    kind: str
    branch: Optional[str] = None
    changed: bool = True  # schedule only: did the branch change since the last run

    def __post_init__(self):
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown trigger event kind {self.kind!r}; expected one of {EVENT_KINDS}")


def _branch_matches(branch: Optional[str], patterns: Iterable[str]) -> bool:
    if branch is None:
        return False
    name = branch[len("refs/heads/"):] if branch.startswith("refs/heads/") else branch
    return any(fnmatch(name, p) for p in patterns)


@dataclass(frozen=True)
class PullRequestTrigger:
    branches: Tuple[str, ...]

    kind = "pr"

    def satisfied_by(self, event: TriggerEvent) -> bool:
        return event.kind == "pr" and _branch_matches(event.branch, self.branches)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "branches": list(self.branches)}


@dataclass(frozen=True)
class ScheduleTrigger:
    cron: str
    display_name: str = ""
    branches: Tuple[str, ...] = ("master",)
    always: bool = False

    kind = "schedule"

    def __post_init__(self):
        fields = self.cron.split()
        if len(fields) != 5 or not all(_CRON_FIELD.match(f) for f in fields):
            raise InvalidTemplateError(
                f"Invalid cron expression {self.cron!r}",
                details={"expected": "five fields: minute hour day month weekday"},
            )

    def satisfied_by(self, event: TriggerEvent) -> bool:
        if event.kind != "schedule" or not _branch_matches(event.branch, self.branches):
            return False
        return self.always or event.changed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "cron": self.cron,
            "display_name": self.display_name,
            "branches": list(self.branches),
            "always": self.always,
        }


_COERCE = {
    "int": int,
    "str": str,
    "bool": lambda v: v if isinstance(v, bool) else str(v).strip().lower() in ("1", "true", "yes", "on"),
}


@dataclass(frozen=True)
class ManualTrigger:
    """
    Explicit invocation. ``parameters`` maps required parameter names to a
    type name ("int", "str", "bool").
    """
    parameters: Mapping[str, str] = field(default_factory=dict)

    kind = "manual"

    def satisfied_by(self, event: TriggerEvent) -> bool:
        return event.kind == "manual"

    def require(self, supplied: Mapping[str, Any]) -> Dict[str, Any]:
        """Check and coerce required parameters; fail before anything is composed."""
        out = dict(supplied)
        for name, type_name in self.parameters.items():
            if supplied.get(name) in (None, ""):
                raise UnresolvedParameterError(
                    f"Pipeline requires parameter '{name}' to be supplied at invocation",
                    details={"parameter": name, "type": type_name},
                )
            value = supplied[name]
            try:
                if type_name == "int" and isinstance(value, bool):
                    raise ValueError("bool is not an int")
                out[name] = _COERCE[type_name](value)
            except (TypeError, ValueError) as exc:
                raise UnresolvedParameterError(
                    f"Parameter '{name}' must be {type_name}, got {value!r}",
                    details={"parameter": name, "reason": str(exc)},
                ) from exc
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "parameters": dict(self.parameters)}


Trigger = Union[PullRequestTrigger, ScheduleTrigger, ManualTrigger]


@dataclass(frozen=True)
class TriggerPolicy:
    """
    When a pipeline runs. ``ci`` push builds are never enabled. ``automatic``
    False means the pipeline only runs when someone queues it.
    """
    pr: Optional[PullRequestTrigger] = None
    schedules: Tuple[ScheduleTrigger, ...] = ()
    manual: ManualTrigger = field(default_factory=ManualTrigger)

    @property
    def automatic(self) -> bool:
        return self.pr is not None or bool(self.schedules)

    @property
    def requires_explicit_parameters(self) -> bool:
        return bool(self.manual.parameters)

    def ordered(self) -> List[Trigger]:
        out: List[Trigger] = []
        if self.pr is not None:
            out.append(self.pr)
        out.extend(self.schedules)
        out.append(self.manual)
        return out

    def satisfied(self, events: Iterable[TriggerEvent]) -> List[Trigger]:
        events = list(events)
        return [t for t in self.ordered() if any(t.satisfied_by(e) for e in events)]

    def first_satisfied(self, events: Iterable[TriggerEvent]) -> Optional[Trigger]:
        """Tie-break for simultaneous reasons: the first satisfied trigger wins."""
        hits = self.satisfied(events)
        return hits[0] if hits else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "automatic": self.automatic,
            "triggers": [t.to_dict() for t in self.ordered()],
        }
