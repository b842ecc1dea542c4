# conditions.py
"""
Evaluator for `condition:` expressions on stages, jobs and steps.

Expressions use the function syntax of hosted pipeline runners:

    succeeded()
    and(succeeded(), eq(variables['Build.SourceBranch'], 'refs/heads/main'))
    or(failed(), eq(variables.deploy, 'true'))

Status functions look at the statuses of the direct dependencies
(stages for a stage, the job so far for a step). A missing condition
behaves like `succeeded()`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import ConditionError
from .model import FAILED, OK_STATUSES

DEFAULT_CONDITION = "succeeded()"

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_.\-]*)
  | (?P<punct>[(),\[\]])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise ConditionError(f"Unexpected character {text[pos]!r} at {pos} in condition: {text}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(kind), pos))
        pos = m.end()
    return tokens


# Parsed nodes are plain tuples: ("lit", value) | ("var", name) | ("call", name, [args])

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _next(self) -> _Token:
        tok = self._peek()
        if tok is None:
            raise ConditionError(f"Unexpected end of condition: {self.text}")
        self.i += 1
        return tok

    def _expect(self, value: str) -> None:
        tok = self._next()
        if tok.value != value:
            raise ConditionError(f"Expected {value!r} at {tok.pos}, got {tok.value!r} in condition: {self.text}")

    def parse(self) -> tuple:
        node = self._expr()
        if self._peek() is not None:
            tok = self._peek()
            raise ConditionError(f"Unexpected {tok.value!r} at {tok.pos} in condition: {self.text}")
        return node

    def _expr(self) -> tuple:
        tok = self._next()

        if tok.kind == "string":
            return ("lit", tok.value[1:-1].replace("''", "'"))
        if tok.kind == "number":
            return ("lit", float(tok.value) if "." in tok.value else int(tok.value))
        if tok.kind != "name":
            raise ConditionError(f"Unexpected {tok.value!r} at {tok.pos} in condition: {self.text}")

        lowered = tok.value.lower()
        if lowered == "true":
            return ("lit", True)
        if lowered == "false":
            return ("lit", False)

        if lowered == "variables":
            self._expect("[")
            key = self._next()
            if key.kind != "string":
                raise ConditionError(f"variables[...] needs a quoted name in condition: {self.text}")
            self._expect("]")
            return ("var", key.value[1:-1])
        if lowered.startswith("variables."):
            return ("var", tok.value[len("variables."):])

        self._expect("(")
        args: List[tuple] = []
        nxt = self._peek()
        if nxt is not None and nxt.value == ")":
            self._next()
            return ("call", lowered, args)
        while True:
            args.append(self._expr())
            sep = self._next()
            if sep.value == ")":
                break
            if sep.value != ",":
                raise ConditionError(f"Expected ',' or ')' at {sep.pos} in condition: {self.text}")
        return ("call", lowered, args)


def parse(expression: str) -> tuple:
    if not expression or not expression.strip():
        raise ConditionError("Empty condition")
    return _Parser(expression.strip()).parse()


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _as_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _Evaluator:
    def __init__(self, statuses: Mapping[str, str], variables: Mapping[str, str]):
        self.statuses = dict(statuses)
        # variable names are case-insensitive
        self.variables = {k.lower(): v for k, v in variables.items()}
        self.functions: Dict[str, Callable[[List[tuple]], Any]] = {
            "succeeded": self._succeeded,
            "failed": self._failed,
            "succeededorfailed": self._succeeded_or_failed,
            "always": lambda args: True,
            "canceled": lambda args: False,
            "and": lambda args: all(_truthy(self.eval(a)) for a in self._at_least(args, 2, "and")),
            "or": lambda args: any(_truthy(self.eval(a)) for a in self._at_least(args, 2, "or")),
            "not": lambda args: not _truthy(self.eval(self._exactly(args, 1, "not")[0])),
            "eq": lambda args: self._compare(args, "eq") == 0,
            "ne": lambda args: self._compare(args, "ne") != 0,
            "startswith": lambda args: self._strings(args, "startsWith", lambda a, b: a.startswith(b)),
            "endswith": lambda args: self._strings(args, "endsWith", lambda a, b: a.endswith(b)),
            "contains": lambda args: self._strings(args, "contains", lambda a, b: b in a),
        }

    @staticmethod
    def _at_least(args: List[tuple], n: int, name: str) -> List[tuple]:
        if len(args) < n:
            raise ConditionError(f"{name}() takes at least {n} arguments")
        return args

    @staticmethod
    def _exactly(args: List[tuple], n: int, name: str) -> List[tuple]:
        if len(args) != n:
            raise ConditionError(f"{name}() takes exactly {n} argument(s)")
        return args

    def _selected(self, args: List[tuple]) -> List[str]:
        if not args:
            return list(self.statuses.values())
        out = []
        for a in args:
            name = _as_str(self.eval(a))
            if name not in self.statuses:
                raise ConditionError(f"Unknown dependency in condition: {name!r}")
            out.append(self.statuses[name])
        return out

    def _succeeded(self, args: List[tuple]) -> bool:
        return all(s in OK_STATUSES for s in self._selected(args))

    def _failed(self, args: List[tuple]) -> bool:
        return any(s == FAILED for s in self._selected(args))

    def _succeeded_or_failed(self, args: List[tuple]) -> bool:
        return all(s in OK_STATUSES or s == FAILED for s in self._selected(args))

    def _compare(self, args: List[tuple], name: str) -> int:
        a, b = (self.eval(x) for x in self._exactly(args, 2, name))
        left, right = _as_str(a).lower(), _as_str(b).lower()
        return (left > right) - (left < right)

    def _strings(self, args: List[tuple], name: str, fn: Callable[[str, str], bool]) -> bool:
        a, b = (self.eval(x) for x in self._exactly(args, 2, name))
        return fn(_as_str(a).lower(), _as_str(b).lower())

    def eval(self, node: tuple) -> Any:
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "var":
            return self.variables.get(node[1].lower(), "")
        fn = self.functions.get(node[1])
        if fn is None:
            raise ConditionError(f"Unknown function in condition: {node[1]}()")
        return fn(node[2])


def evaluate(
    expression: str | None,
    *,
    dependency_statuses: Mapping[str, str],
    variables: Mapping[str, str] | None = None,
) -> bool:
    """
    Evaluate a condition expression.

    Args:
        expression: Condition text; None or empty means `succeeded()`.
        dependency_statuses: Direct dependency name -> status.
        variables: Variables visible to `variables['...']`.

    Returns:
        Whether the guarded stage/job/step should run.

    Raises:
        ConditionError: On syntax errors or unknown functions.
    """
    text = expression if expression and expression.strip() else DEFAULT_CONDITION
    tree = parse(text)
    return _truthy(_Evaluator(dependency_statuses, variables or {}).eval(tree))
