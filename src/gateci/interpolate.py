# interpolate.py
from __future__ import annotations

import re
from typing import Any, Mapping, Set, Tuple

from .errors import UnboundPlaceholderError

# Template placeholders:
#   ${{ parameters.name }} / ${{ name }}   compile-time parameter
#   $(name)                                runtime / pipeline / matrix variable
#   $(Agent.JobName)                       executor-predefined (dotted), kept verbatim
TEMPLATE_EXPR = re.compile(r"\$\{\{\s*(?:parameters\.)?([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
RUNTIME_EXPR = re.compile(r"\$\(([A-Za-z_][A-Za-z0-9_.]*)\)")
_ANY_EXPR = re.compile(f"{TEMPLATE_EXPR.pattern}|{RUNTIME_EXPR.pattern}")


def render_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(render_value(v) for v in value)
    return str(value)


def is_predefined(name: str) -> bool:
    return "." in name


def referenced_names(text: str) -> Tuple[Set[str], Set[str]]:
    """Return (template parameter names, runtime variable names) used in ``text``."""
    if not text:
        return set(), set()
    params = set(TEMPLATE_EXPR.findall(text))
    runtime = {n for n in RUNTIME_EXPR.findall(text) if not is_predefined(n)}
    return params, runtime


def interpolate(text: str, values: Mapping[str, Any], *, where: str = "") -> str:
    """
    Substitute every placeholder in ``text`` from ``values``.

    Unknown names raise UnboundPlaceholderError. Names that are known but
    unresolved raise UnresolvedParameterError (from ParameterSet).
    """
    if not isinstance(text, str):
        return render_value(text)

    def lookup(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        if is_predefined(name):
            return match.group(0)
        if name not in values:
            raise UnboundPlaceholderError(
                f"Placeholder '{match.group(0)}' is not bound",
                details={"name": name, "where": where or "<template>"},
            )
        return render_value(values[name])

    # single pass: substituted values are never re-scanned
    return _ANY_EXPR.sub(lookup, text)
