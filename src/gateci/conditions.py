# conditions.py
"""Design-time condition expressions.

Grammar (template-expression style)::

    expr  := call | ref | literal
    call  := NAME "(" [expr ("," expr)*] ")"
    ref   := "parameters." NAME | NAME
    literal := 'quoted' | true | false | integer

Functions: eq, ne, in, notIn, not, and, or. String comparison ignores case.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import AmbiguousConditionError, InvalidTemplateError, MalformedConditionError, UnresolvedParameterError
from .interpolate import render_value
from .model import ConditionalVariable, ParameterSet

logger = logging.getLogger(__name__)

_TOKEN = re.compile(
    r"\s*(?:"
    r"(?P<str>'(?:[^']|'')*')"
    r"|(?P<num>-?\d+)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_.]*)"
    r"|(?P<punct>[(),])"
    r")"
)

# AST nodes are plain tuples: ("lit", value) | ("ref", name) | ("call", fn, args)
Node = Tuple[Any, ...]


def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = expr.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise MalformedConditionError(
                f"Unexpected character at position {pos}",
                details={"expression": expr},
            )
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.i = 0

    def _fail(self, message: str) -> MalformedConditionError:
        return MalformedConditionError(message, details={"expression": self.expr})

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _take(self, value: Optional[str] = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise self._fail("Unexpected end of expression")
        if value is not None and tok[1] != value:
            raise self._fail(f"Expected '{value}' but found '{tok[1]}'")
        self.i += 1
        return tok

    def parse(self) -> Node:
        if not self.tokens:
            raise self._fail("Empty condition")
        node = self._expr()
        if self._peek() is not None:
            raise self._fail(f"Trailing input after expression: '{self._peek()[1]}'")
        return node

    def _expr(self) -> Node:
        kind, value = self._take()
        if kind == "str":
            return ("lit", value[1:-1].replace("''", "'"))
        if kind == "num":
            return ("lit", int(value))
        if kind == "name":
            nxt = self._peek()
            if nxt is not None and nxt[1] == "(":
                return self._call(value)
            lowered = value.lower()
            if lowered in ("true", "false"):
                return ("lit", lowered == "true")
            return ("ref", value[len("parameters."):] if value.startswith("parameters.") else value)
        raise self._fail(f"Unexpected '{value}'")

    def _call(self, fn: str) -> Node:
        if fn not in _FUNCTIONS:
            raise self._fail(f"Unknown function '{fn}'")
        self._take("(")
        args: List[Node] = []
        if self._peek() is not None and self._peek()[1] == ")":
            self._take(")")
        else:
            while True:
                args.append(self._expr())
                kind, value = self._take()
                if value == ")":
                    break
                if value != ",":
                    raise self._fail(f"Expected ',' or ')' but found '{value}'")
        lo, hi = _ARITY[fn]
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise self._fail(f"{fn}() takes {lo}{'+' if hi is None else ''} argument(s), got {len(args)}")
        return ("call", fn, tuple(args))


@lru_cache(maxsize=512)
def parse(expr: str) -> Node:
    return _Parser(expr).parse()


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _norm(value: Any) -> str:
    if value is None:
        return ""
    return render_value(value).lower()


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return _norm(value) not in ("", "false", "0")


def _eq(a, b) -> bool:
    return _norm(a) == _norm(b)


def _in(needle, *hay) -> bool:
    return any(_eq(needle, h) for h in hay)


_FUNCTIONS: Dict[str, Callable[..., bool]] = {
    "eq": _eq,
    "ne": lambda a, b: not _eq(a, b),
    "in": _in,
    "notIn": lambda needle, *hay: not _in(needle, *hay),
    "not": lambda x: not _truthy(x),
    "and": lambda *xs: all(_truthy(x) for x in xs),
    "or": lambda *xs: any(_truthy(x) for x in xs),
}

_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "eq": (2, 2),
    "ne": (2, 2),
    "in": (2, None),
    "notIn": (2, None),
    "not": (1, 1),
    "and": (2, None),
    "or": (2, None),
}


def _eval(node: Node, params: ParameterSet, expr: str) -> Any:
    tag = node[0]
    if tag == "lit":
        return node[1]
    if tag == "ref":
        name = node[1]
        if name not in params:
            raise MalformedConditionError(
                f"Condition references undeclared parameter '{name}'",
                details={"expression": expr},
            )
        if not params.is_resolved(name):
            return None
        return params[name]
    _, fn, args = node
    return _FUNCTIONS[fn](*(_eval(a, params, expr) for a in args))


def evaluate(expr: str, params: ParameterSet) -> bool:
    """Evaluate a condition expression against resolved parameters."""
    result = _truthy(_eval(parse(expr), params, expr))
    logger.debug("condition %r -> %s", expr, result)
    return result


def check_domains(domains: Mapping[str, Sequence[str]], params: ParameterSet, *, where: str = "") -> None:
    """
    Reject a value outside its parameter's closed domain (case-insensitive,
    like the comparisons). Unresolved parameters are left to their readers.
    """
    for name, allowed in domains.items():
        if name not in params or not params.is_resolved(name):
            continue
        value = params[name]
        if _norm(value) not in {_norm(a) for a in allowed}:
            raise InvalidTemplateError(
                f"Parameter '{name}' must be one of {', '.join(allowed)}, got {render_value(value)!r}",
                details={"where": where, "parameter": name},
            )


def select_variable(variable: ConditionalVariable, params: ParameterSet) -> str:
    """
    Pick the value of a derived variable.

    Exactly one branch may hold; more than one is an authoring error.
    """
    hits = [(cond, value) for cond, value in variable.branches if evaluate(cond, params)]
    if len(hits) > 1:
        raise AmbiguousConditionError(
            f"Variable '{variable.name}' has {len(hits)} true branches",
            details={"conditions": "; ".join(c for c, _ in hits)},
        )
    if hits:
        return hits[0][1]
    if variable.fallback is not None:
        return variable.fallback
    raise UnresolvedParameterError(
        f"No branch of variable '{variable.name}' applies",
        details={"conditions": "; ".join(c for c, _ in variable.branches)},
    )
