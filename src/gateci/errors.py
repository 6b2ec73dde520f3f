# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class ExpansionError(Exception):
    """
    Structured expansion error with enough context for:
      - clean CLI output
      - API error payloads
      - debugging without full tracebacks

    Every subclass aborts expansion of the whole pipeline.
    """
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    kind = "expansion_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": dict(self.details)}


class UnresolvedParameterError(ExpansionError):
    kind = "unresolved_parameter"


class UnboundPlaceholderError(ExpansionError):
    kind = "unbound_placeholder"


class InvalidTemplateError(ExpansionError):
    kind = "invalid_template"


class MalformedConditionError(ExpansionError):
    kind = "malformed_condition"


class AmbiguousConditionError(ExpansionError):
    kind = "ambiguous_condition"


class DuplicateJobNameError(ExpansionError):
    kind = "duplicate_job_name"


class MissingDependencyError(ExpansionError):
    kind = "missing_dependency"
