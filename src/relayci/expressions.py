# expressions.py
"""
``${{ ... }}`` interpolation and ``if:`` conditions.

A deliberately small expression language, enough for matrix-driven names,
cache keys and step/job conditions:

    literals     'text'  42  1.5  true  false  null
    contexts     matrix.os  runner.os  env.HOME  steps.build.outcome  needs.lint
    operators    ==  !=  &&  ||  !  ( )
    functions    success()  failure()  always()  cancelled()
                 hashFiles('Cargo.lock', ...)  contains(a, b)
                 startsWith(a, b)  endsWith(a, b)  format('{0}-{1}', a, b)

A condition that calls none of the status functions is evaluated as
``success() && (<condition>)``.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cache import hash_files
from .errors import ConfigurationError
from .model import Condition, StepContext

_INTERP = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")

_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,|\.|\[|\])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    )
    """,
    re.VERBOSE,
)

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
KNOWN_CONTEXTS = frozenset({"matrix", "env", "runner", "steps", "needs", "job"})


def _tokenize(src: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    src = src.strip()
    while pos < len(src):
        m = _TOKEN.match(src, pos)
        if not m or m.end() == pos:
            raise ConfigurationError(f"Invalid expression {src!r} near position {pos}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
        while pos < len(src) and src[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    """Recursive descent over the token list, evaluating as it goes."""

    def __init__(self, src: str, scope: "Scope"):
        self.src = src
        self.tokens = _tokenize(src)
        self.pos = 0
        self.scope = scope

    # -- token helpers -------------------------------------------------
    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            raise ConfigurationError(f"Expected {value!r} in expression {self.src!r}")

    # -- grammar -------------------------------------------------------
    def parse(self) -> Any:
        value = self._or()
        if self._peek() is not None:
            raise ConfigurationError(f"Unexpected token {self._peek()[1]!r} in expression {self.src!r}")
        return value

    def _or(self) -> Any:
        left = self._and()
        while self._accept("||"):
            right = self._and()
            left = left if truthy(left) else right
        return left

    def _and(self) -> Any:
        left = self._not()
        while self._accept("&&"):
            right = self._not()
            left = right if truthy(left) else left
        return left

    def _not(self) -> Any:
        if self._accept("!"):
            return not truthy(self._not())
        return self._cmp()

    def _cmp(self) -> Any:
        left = self._primary()
        if self._accept("=="):
            return _loose_eq(left, self._primary())
        if self._accept("!="):
            return not _loose_eq(left, self._primary())
        return left

    def _primary(self) -> Any:
        tok = self._peek()
        if tok is None:
            raise ConfigurationError(f"Unexpected end of expression {self.src!r}")
        kind, text = tok

        if kind == "op" and text == "(":
            self.pos += 1
            value = self._or()
            self._expect(")")
            return value
        if kind == "string":
            self.pos += 1
            return text[1:-1].replace("''", "'")
        if kind == "number":
            self.pos += 1
            return float(text) if "." in text else int(text)
        if kind == "ident":
            self.pos += 1
            lowered = text.lower()
            if lowered in ("true", "false"):
                return lowered == "true"
            if lowered == "null":
                return None
            if self._accept("("):
                args: List[Any] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                return self.scope.call(text, args)
            return self._path(self.scope.lookup(text))
        raise ConfigurationError(f"Unexpected token {text!r} in expression {self.src!r}")

    def _path(self, value: Any) -> Any:
        while True:
            if self._accept("."):
                tok = self._peek()
                if tok is None or tok[0] not in ("ident", "number"):
                    raise ConfigurationError(f"Expected property name in expression {self.src!r}")
                self.pos += 1
                value = _member(value, tok[1])
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                value = _member(value, key)
            else:
                return value


def _member(value: Any, key: Any) -> Any:
    if isinstance(value, dict):
        return value.get(key, value.get(str(key)))
    if isinstance(value, (list, tuple)) and isinstance(key, int):
        return value[key] if -len(value) <= key < len(value) else None
    return getattr(value, str(key), None)


def _loose_eq(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    if isinstance(a, str) != isinstance(b, str) and a is not None and b is not None:
        return str(a).lower() == str(b).lower()
    return a == b


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ----------------------------------------------------------------------
# Scope
# ----------------------------------------------------------------------

class Scope:
    """Names and functions visible to an expression."""

    def __init__(
        self,
        contexts: Optional[Dict[str, Any]] = None,
        *,
        job_failed: bool = False,
        satisfied: bool = True,
        cancelled: bool = False,
        workdir: str | Path | None = None,
    ):
        self.contexts = dict(contexts or {})
        self.job_failed = job_failed
        self.satisfied = satisfied
        self.cancelled = cancelled
        self.workdir = Path(workdir) if workdir is not None else None

    @classmethod
    def from_step_context(cls, ctx: StepContext) -> "Scope":
        steps = {
            name: {
                "outcome": res.outcome.value,
                "conclusion": res.conclusion.value,
                "exit_code": res.exit_code,
            }
            for name, res in ctx.steps.items()
        }
        needs = {name: {"result": state.value} for name, state in ctx.needs.items()}
        return cls(
            {
                "matrix": dict(ctx.matrix),
                "env": dict(ctx.env),
                "runner": dict(ctx.runner),
                "steps": steps,
                "needs": needs,
                "job": {"name": ctx.job},
            },
            job_failed=ctx.job_failed,
            satisfied=ctx.needs_satisfied,
            cancelled=ctx.cancelled,
            workdir=ctx.workdir,
        )

    def lookup(self, name: str) -> Any:
        if name not in self.contexts:
            raise ConfigurationError(f"Unknown context {name!r}; known: {sorted(self.contexts)}")
        return self.contexts[name]

    def call(self, name: str, args: List[Any]) -> Any:
        fn = _FUNCTIONS.get(name.lower())
        if fn is None:
            raise ConfigurationError(f"Unknown function {name}()")
        return fn(self, *args)


def _hash_files(scope: Scope, *patterns: Any) -> str:
    root = scope.workdir or Path(".")
    return hash_files(root, [str(p) for p in patterns])


def _format(scope: Scope, template: Any, *args: Any) -> str:
    out = str(template)
    for i, a in enumerate(args):
        out = out.replace("{" + str(i) + "}", _stringify(a))
    return out


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "success": lambda scope: scope.satisfied and not scope.job_failed and not scope.cancelled,
    "failure": lambda scope: scope.job_failed,
    "always": lambda scope: True,
    "cancelled": lambda scope: scope.cancelled,
    "hashfiles": _hash_files,
    "contains": lambda scope, a, b: (
        str(b).lower() in str(a).lower() if isinstance(a, str) else b in (a or [])
    ),
    "startswith": lambda scope, a, b: str(a).lower().startswith(str(b).lower()),
    "endswith": lambda scope, a, b: str(a).lower().endswith(str(b).lower()),
    "format": _format,
}


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def evaluate(expr: str, scope: Scope) -> Any:
    expr = expr.strip()
    m = _INTERP.fullmatch(expr)
    if m:
        expr = m.group(1)
    return _Parser(expr, scope).parse()


def interpolate(text: str, scope: Scope) -> str:
    """Replace every ``${{ expr }}`` in ``text`` with its evaluated value."""
    if not text or "${{" not in text:
        return text
    return _INTERP.sub(lambda m: _stringify(evaluate(m.group(1), scope)), text)


def interpolations(text: str) -> List[str]:
    """The inner expressions of every ``${{ }}`` in ``text``."""
    return [m.group(1) for m in _INTERP.finditer(text or "")]


def uses_status_function(expr: str) -> bool:
    return any(kind == "ident" and text.lower() in STATUS_FUNCTIONS for kind, text in _tokenize(_strip(expr)))


def _strip(expr: str) -> str:
    m = _INTERP.fullmatch(expr.strip())
    return m.group(1) if m else expr


def check_condition(condition: Condition, ctx: StepContext) -> bool:
    """
    Evaluate a step/job condition.

    None means ``success()``. Callables receive the StepContext directly.
    Expressions without a status function get an implicit ``success() &&``.
    """
    default = ctx.needs_satisfied and not ctx.job_failed and not ctx.cancelled
    if condition is None:
        return default
    if callable(condition):
        return bool(condition(ctx))

    scope = Scope.from_step_context(ctx)
    result = truthy(evaluate(condition, scope))
    if not uses_status_function(condition):
        return result and default
    return result


class _SyntaxScope(Scope):
    """Accepts every known context and function without evaluating anything."""

    def lookup(self, name: str) -> Any:
        if name not in KNOWN_CONTEXTS:
            raise ConfigurationError(f"Unknown context {name!r}; known: {sorted(KNOWN_CONTEXTS)}")
        return {}

    def call(self, name: str, args: List[Any]) -> Any:
        if name.lower() not in _FUNCTIONS:
            raise ConfigurationError(f"Unknown function {name}()")
        return None


def validate(expr: str) -> None:
    """
    Check grammar, context names and function names without evaluating;
    raises ConfigurationError.
    """
    _Parser(_strip(expr), _SyntaxScope()).parse()
