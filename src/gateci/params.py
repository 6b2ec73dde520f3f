# params.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from .errors import InvalidTemplateError, UnboundPlaceholderError, UnresolvedParameterError
from .interpolate import RUNTIME_EXPR, is_predefined, render_value
from .model import ParameterSet, freeze_value

logger = logging.getLogger(__name__)

MAX_MACRO_DEPTH = 10


def _layer(values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    # an empty value (``freezeArtifactStem:`` in YAML) means "not supplied"
    return {k: freeze_value(v) for k, v in (values or {}).items() if v is not None}


def _expand_macros(values: Dict[str, Any]) -> Dict[str, Any]:
    """Expand ``$(name)`` references between entries until nothing changes."""
    out = dict(values)

    def expand_one(key: str, text: str, seen: tuple) -> str:
        if len(seen) > MAX_MACRO_DEPTH:
            raise InvalidTemplateError(
                "Variable references nest too deeply",
                details={"chain": " -> ".join(seen)},
            )

        def sub(match) -> str:
            name = match.group(1)
            if is_predefined(name):
                return match.group(0)
            if name in seen:
                raise InvalidTemplateError(
                    "Variable references form a cycle",
                    details={"chain": " -> ".join(seen + (name,))},
                )
            if name not in out:
                raise UnboundPlaceholderError(
                    f"'{key}' references unknown variable '$({name})'",
                    details={"name": name, "where": key},
                )
            value = out[name]
            if isinstance(value, str):
                return expand_one(name, value, seen + (name,))
            return render_value(value)

        return RUNTIME_EXPR.sub(sub, text)

    for key, value in values.items():
        if isinstance(value, str) and "$(" in value:
            out[key] = expand_one(key, value, (key,))
        elif isinstance(value, tuple):
            out[key] = tuple(
                expand_one(key, v, (key,)) if isinstance(v, str) and "$(" in v else v
                for v in value
            )
    return out


def resolve(
    template_defaults: Optional[Mapping[str, Any]],
    caller_overrides: Optional[Mapping[str, Any]] = None,
    runtime_variables: Optional[Mapping[str, Any]] = None,
) -> ParameterSet:
    """
    Merge the three parameter layers into one immutable ParameterSet.

    Precedence: runtime variables > caller overrides > template defaults.
    Template parameters declared with no default stay unresolved until a
    layer supplies them; reading one raises UnresolvedParameterError.
    """
    merged: Dict[str, Any] = {}
    merged.update(_layer(template_defaults))
    merged.update(_layer(caller_overrides))
    merged.update(_layer(runtime_variables))

    declared = tuple(template_defaults or {})
    expanded = _expand_macros(merged)
    unresolved = tuple(n for n in declared if n not in expanded)
    if unresolved:
        logger.debug("parameters without a value: %s", ", ".join(sorted(unresolved)))
    return ParameterSet(expanded, unresolved=unresolved)


def require(params: ParameterSet, names: Iterable[str], *, where: str = "") -> None:
    """Fail if any of ``names`` is declared but has no value."""
    for name in sorted(set(names)):
        if name in params and not params.is_resolved(name):
            raise UnresolvedParameterError(
                f"Parameter '{name}' has no default and no supplied value",
                details={"parameter": name, "where": where or "<template>"},
            )


def check_overrides(declared: Iterable[str], overrides: Mapping[str, Any], *, where: str) -> None:
    """Callers may only set parameters the template declares."""
    known = set(declared)
    unknown = sorted(k for k in overrides if k not in known)
    if unknown:
        raise InvalidTemplateError(
            f"Unexpected parameter(s) for template '{where}': {', '.join(unknown)}",
            details={"declared": ", ".join(sorted(known)) or "<none>"},
        )
