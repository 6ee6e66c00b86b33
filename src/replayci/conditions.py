# conditions.py
"""
Condition expressions (`if:`) and `${{ }}` interpolation.

Evaluation is pluggable: the scheduler only talks to a `ConditionEvaluator`.
`ExpressionEvaluator` is the default and understands a small expression
language:

    success() failure() always() cancelled()
    contains(a, b) startsWith(a, b) endsWith(a, b)
    ! && || == != ( )
    'strings' 42 true false null
    github.event_name  needs.<job>.result  env.X  vars.X  secrets.X  job.status

An expression that calls none of the status functions is implicitly
combined with `success()`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from .errors import ConditionError

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")
STRING_FUNCTIONS = ("contains", "startsWith", "endsWith")

_INTERPOLATION = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

_TOKEN = re.compile(
    r"""
    \s*(?:
      (?P<string>'(?:[^']|'')*')
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<op>==|!=|&&|\|\||!|\(|\)|,|\.)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    )
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class ConditionContext:
    """
    Read-only snapshot a condition is evaluated against.

    `status` carries the inputs of the status functions: whether everything
    before this point succeeded, whether something failed, and whether the
    run was cancelled.
    """
    values: Mapping[str, Any] = field(default_factory=dict)
    succeeded: bool = True
    failed: bool = False
    cancelled: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def lookup(self, path: List[str]) -> Any:
        cur: Any = self.values
        for part in path:
            if not isinstance(cur, Mapping) or part not in cur:
                return None
            cur = cur[part]
        return cur


class ConditionEvaluator(Protocol):
    def validate(self, expression: str) -> None:
        """Raise ConditionError if the expression is malformed."""

    def evaluate(self, expression: Optional[str], context: ConditionContext) -> bool:
        """Decide whether a job or step should run."""


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

Node = Tuple[Any, ...]


def _strip(expression: str) -> str:
    expr = expression.strip()
    m = re.fullmatch(r"\$\{\{(.*)\}\}", expr, re.DOTALL)
    return m.group(1).strip() if m else expr


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionError(expression, f"Unexpected character at offset {pos}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionError(self.expression, "Empty expression")
        node = self._or()
        if self.pos != len(self.tokens):
            raise ConditionError(self.expression, f"Unexpected token {self.tokens[self.pos][1]!r}")
        return node

    def _peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            raise ConditionError(self.expression, f"Expected {value!r}")

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._unary()
        while self._accept("&&"):
            node = ("and", node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("!"):
            return ("not", self._unary())
        return self._compare()

    def _compare(self) -> Node:
        node = self._primary()
        for op in ("==", "!="):
            if self._accept(op):
                return (op, node, self._primary())
        return node

    def _primary(self) -> Node:
        tok = self._peek()
        if tok is None:
            raise ConditionError(self.expression, "Unexpected end of expression")
        kind, value = tok

        if kind == "op" and value == "(":
            self.pos += 1
            node = self._or()
            self._expect(")")
            return node
        if kind == "string":
            self.pos += 1
            return ("lit", value[1:-1].replace("''", "'"))
        if kind == "number":
            self.pos += 1
            return ("lit", float(value) if "." in value else int(value))
        if kind != "ident":
            raise ConditionError(self.expression, f"Unexpected token {value!r}")

        self.pos += 1
        if value in ("true", "false"):
            return ("lit", value == "true")
        if value == "null":
            return ("lit", None)

        if self._accept("("):
            args: List[Node] = []
            if not self._accept(")"):
                args.append(self._or())
                while self._accept(","):
                    args.append(self._or())
                self._expect(")")
            return self._call(value, args)

        path = [value]
        while self._accept("."):
            nxt = self._peek()
            if nxt is None or nxt[0] != "ident":
                raise ConditionError(self.expression, "Expected property name after '.'")
            path.append(nxt[1])
            self.pos += 1
        return ("ref", tuple(path))

    def _call(self, name: str, args: List[Node]) -> Node:
        if name in STATUS_FUNCTIONS:
            if args:
                raise ConditionError(self.expression, f"{name}() takes no arguments")
            return ("status", name)
        if name in STRING_FUNCTIONS:
            if len(args) != 2:
                raise ConditionError(self.expression, f"{name}() takes exactly two arguments")
            return ("fn", name, args[0], args[1])
        raise ConditionError(self.expression, f"Unknown function {name}()")


@lru_cache(maxsize=512)
def parse(expression: str) -> Node:
    return _Parser(_strip(expression)).parse()


def _uses_status(node: Node) -> bool:
    if node[0] == "status":
        return True
    return any(isinstance(child, tuple) and _uses_status(child) for child in node[1:])


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def _truthy(value: Any) -> bool:
    return value not in (None, False, 0, "")


def _equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    return a == b


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _eval(node: Node, ctx: ConditionContext) -> Any:
    op = node[0]
    if op == "lit":
        return node[1]
    if op == "ref":
        return ctx.lookup(list(node[1]))
    if op == "not":
        return not _truthy(_eval(node[1], ctx))
    if op == "and":
        return _truthy(_eval(node[1], ctx)) and _truthy(_eval(node[2], ctx))
    if op == "or":
        return _truthy(_eval(node[1], ctx)) or _truthy(_eval(node[2], ctx))
    if op == "==":
        return _equal(_eval(node[1], ctx), _eval(node[2], ctx))
    if op == "!=":
        return not _equal(_eval(node[1], ctx), _eval(node[2], ctx))
    if op == "status":
        name = node[1]
        if name == "always":
            return True
        if name == "cancelled":
            return ctx.cancelled
        if name == "failure":
            return ctx.failed and not ctx.cancelled
        return ctx.succeeded and not ctx.failed and not ctx.cancelled
    if op == "fn":
        a, b = _text(_eval(node[2], ctx)).lower(), _text(_eval(node[3], ctx)).lower()
        if node[1] == "contains":
            return b in a
        if node[1] == "startsWith":
            return a.startswith(b)
        return a.endswith(b)
    raise ConditionError(repr(node), f"Unknown node {op!r}")


class ExpressionEvaluator:
    """Default condition evaluator."""

    def validate(self, expression: str) -> None:
        parse(expression)

    def evaluate(self, expression: Optional[str], context: ConditionContext) -> bool:
        if expression is None or not str(expression).strip():
            return _eval(("status", "success"), context)
        if isinstance(expression, bool):
            return expression and _eval(("status", "success"), context)
        node = parse(str(expression))
        if not _uses_status(node):
            node = ("and", ("status", "success"), node)
        return _truthy(_eval(node, context))

    def value(self, expression: str, context: ConditionContext) -> Any:
        return _eval(parse(expression), context)


def interpolate(text: str, context: ConditionContext) -> str:
    """Replace every `${{ expr }}` in `text` with the expression's value."""
    if "${{" not in text:
        return text

    def _sub(m: re.Match) -> str:
        return _text(_eval(parse(m.group(1)), context))

    return _INTERPOLATION.sub(_sub, text)


def validate_template(text: str) -> None:
    for m in _INTERPOLATION.finditer(text):
        parse(m.group(1))


def build_context(
    *,
    github: Dict[str, Any],
    needs: Dict[str, str] | None = None,
    env: Dict[str, str] | None = None,
    vars: Dict[str, str] | None = None,
    secrets: Dict[str, str] | None = None,
    job_status: str | None = None,
    succeeded: bool = True,
    failed: bool = False,
    cancelled: bool = False,
) -> ConditionContext:
    values: Dict[str, Any] = {
        "github": dict(github),
        "needs": {name: {"result": result} for name, result in (needs or {}).items()},
        "env": dict(env or {}),
        "vars": dict(vars or {}),
        "secrets": dict(secrets or {}),
    }
    if job_status is not None:
        values["job"] = {"status": job_status}
    return ConditionContext(values=values, succeeded=succeeded, failed=failed, cancelled=cancelled)
