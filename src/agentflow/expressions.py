"""Sandboxed expressions, variable paths and templates.

Expressions are parsed with :mod:`ast` in ``eval`` mode and interpreted node by
node against an allow-list; nothing is ever passed to ``eval``. Definitions
written for the JavaScript editor (``===``, ``&&``, ``!x``, ``$.data.x``,
``true``/``null``) are normalized first, outside of string literals.

Variable paths use ``$.a.b[0].c`` syntax and resolve against a *scope*: the
execution's ``data`` keys at top level plus the reserved names ``data``,
``input``, ``node_results``, ``state`` and ``result``.
"""

from __future__ import annotations

import ast
import json
import operator
import re
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Callable, Sequence

from agentflow.errors import ExpressionError

if TYPE_CHECKING:
    from agentflow.models import ExecutionState


# ── Normalization ────────────────────────────────────────────────────────────

_STRING_LITERAL = re.compile(r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')""")

_JS_REWRITES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\$\.?"), ""),
]


def normalize(expression: str) -> str:
    """Rewrite JS-style operators and ``$.`` paths into Python syntax."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):  # even indexes are outside string literals
        segment = parts[i]
        for pattern, replacement in _JS_REWRITES:
            segment = pattern.sub(replacement, segment)
        parts[i] = segment
    return "".join(parts).strip()


# ── Allowed syntax ───────────────────────────────────────────────────────────

# Longest string or list a repetition like "ab" * n may produce
MAX_REPEAT_LENGTH = 100_000


def _multiply(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if len(seq) * count > MAX_REPEAT_LENGTH:
                raise ExpressionError(
                    f"Repetition result exceeds {MAX_REPEAT_LENGTH} items"
                )
    return operator.mul(left, right)


_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_COMPARISONS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda x, y: y is not None and x in y,
    ast.NotIn: lambda x, y: y is None or x not in y,
}

_ALLOWED_NODES: tuple[type, ...] = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.Slice,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.List,
    ast.Tuple,
    ast.Dict,
    *_BIN_OPS,
    *_UNARY_OPS,
    *_COMPARISONS,
)

_CONSTANTS = {"true": True, "false": False, "null": None, "undefined": None, "none": None}


def _length(value: Any) -> int:
    try:
        return len(value)
    except TypeError:
        return 0


def _empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, (str, list, tuple, dict)):
        try:
            return item in container
        except TypeError:
            return False
    return False


def _matches(value: Any, pattern: str) -> bool:
    if not isinstance(value, str):
        return False
    try:
        return re.search(pattern, value) is not None
    except re.error:
        return False


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": _length,
    "length": _length,
    "exists": lambda value: value is not None,
    "empty": _empty,
    "contains": _contains,
    "matches": _matches,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
}


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """Normalize, parse and vet an expression. Results are cached."""
    source = normalize(expression)
    if not source:
        raise ExpressionError("Empty expression", expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Syntax error in expression: {exc.msg}", expression) from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            msg = f"Unsupported syntax '{type(node).__name__}' in expression"
            raise ExpressionError(msg, expression)
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"Access to '{node.attr}' is not allowed", expression)
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                raise ExpressionError("Only built-in helper functions may be called", expression)
            if node.keywords:
                raise ExpressionError("Keyword arguments are not supported", expression)
    return tree


def evaluate(expression: str, context: dict[str, Any]) -> Any:
    """Evaluate an expression against a scope mapping.

    Unknown names evaluate to ``None``; ordering comparisons between
    incompatible types evaluate to ``False``.

    Raises:
        ExpressionError: On parse errors, disallowed syntax, or arithmetic on
            incompatible operands.
    """
    tree = compile_expression(expression)
    try:
        return _eval(tree.body, context)
    except ExpressionError as exc:
        exc.expression = exc.expression or expression
        raise
    except (TypeError, ValueError, ZeroDivisionError, OverflowError, MemoryError) as exc:
        raise ExpressionError(f"Expression evaluation failed: {exc}", expression) from exc


def evaluate_bool(expression: str, context: dict[str, Any]) -> bool:
    return bool(evaluate(expression, context))


def _eval(node: ast.AST, ctx: dict[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in ctx:
            return ctx[node.id]
        lowered = node.id.lower()
        if lowered in _CONSTANTS:
            return _CONSTANTS[lowered]
        if node.id in FUNCTIONS:
            return FUNCTIONS[node.id]
        return None

    if isinstance(node, ast.Attribute):
        obj = _eval(node.value, ctx)
        if isinstance(obj, dict):
            return obj.get(node.attr)
        if node.attr == "length" and isinstance(obj, (str, list, tuple)):
            return len(obj)
        return None

    if isinstance(node, ast.Subscript):
        obj = _eval(node.value, ctx)
        if isinstance(node.slice, ast.Slice):
            key: Any = slice(
                _eval(node.slice.lower, ctx) if node.slice.lower else None,
                _eval(node.slice.upper, ctx) if node.slice.upper else None,
                _eval(node.slice.step, ctx) if node.slice.step else None,
            )
        else:
            key = _eval(node.slice, ctx)
        try:
            return obj[key]
        except (KeyError, IndexError, TypeError):
            return None

    if isinstance(node, ast.BoolOp):
        is_and = isinstance(node.op, ast.And)
        value: Any = None
        for operand in node.values:
            value = _eval(operand, ctx)
            if is_and and not value:
                return value
            if not is_and and value:
                return value
        return value

    if isinstance(node, ast.BinOp):
        return _BIN_OPS[type(node.op)](_eval(node.left, ctx), _eval(node.right, ctx))

    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval(node.operand, ctx))

    if isinstance(node, ast.Compare):
        left = _eval(node.left, ctx)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval(comparator, ctx)
            try:
                ok = _COMPARISONS[type(op)](left, right)
            except TypeError:
                ok = False
            if not ok:
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        return _eval(node.body, ctx) if _eval(node.test, ctx) else _eval(node.orelse, ctx)

    if isinstance(node, ast.Call):
        func = FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        return func(*[_eval(arg, ctx) for arg in node.args])

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(elt, ctx) for elt in node.elts]

    if isinstance(node, ast.Dict):
        return {
            _eval(k, ctx) if k is not None else None: _eval(v, ctx)
            for k, v in zip(node.keys, node.values)
        }

    raise ExpressionError(f"Unsupported syntax '{type(node).__name__}'")


# ── Scopes and paths ─────────────────────────────────────────────────────────


def build_scope(
    state: ExecutionState,
    *,
    result: dict[str, Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the lookup scope for paths, templates and expressions."""
    scope: dict[str, Any] = dict(state.data)
    scope.update(
        data=state.data,
        input=state.input,
        node_results=state.node_results,
        nodeResults=state.node_results,
        execution_id=state.execution_id,
        result=result or {},
        state={"data": state.data, "input": state.input, "node_results": state.node_results},
    )
    if extra:
        scope.update(extra)
    return scope


_PATH_TOKEN = re.compile(r"[^.\[\]]+|\[-?\d+\]")


def _path_tokens(path: str) -> list[str]:
    if path.startswith("$."):
        path = path[2:]
    elif path.startswith("$"):
        path = path[1:]
    return _PATH_TOKEN.findall(path)


def resolve_path(root: Any, path: str) -> Any:
    """Resolve ``$.a.b[0].c`` (or ``a.b.0.c``) against nested dicts/lists.

    Missing segments resolve to ``None``.
    """
    current = root
    for token in _path_tokens(path):
        if current is None:
            return None
        if token.startswith("["):
            index = int(token[1:-1])
            if isinstance(current, list) and -len(current) <= index < len(current):
                current = current[index]
            else:
                return None
        elif isinstance(current, dict):
            current = current.get(token)
        elif isinstance(current, list) and token.lstrip("-").isdigit():
            index = int(token)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
    return current


def path_keys(path: str) -> tuple[str, ...]:
    """Dict keys addressed by a dotted path; list indexes are dropped."""
    return tuple(t for t in _path_tokens(path) if not t.startswith("["))


def set_in(target: dict[str, Any], keys: Sequence[str], value: Any) -> None:
    """Set ``value`` under nested ``keys``, copying intermediate dicts."""
    if not keys:
        return
    current = target
    for key in keys[:-1]:
        child = current.get(key)
        current[key] = dict(child) if isinstance(child, dict) else {}
        current = current[key]
    current[keys[-1]] = value


def remove_in(target: dict[str, Any], keys: Sequence[str]) -> bool:
    """Delete the value under nested ``keys``; returns whether it existed."""
    if not keys:
        return False
    current = target
    for key in keys[:-1]:
        child = current.get(key)
        if not isinstance(child, dict):
            return False
        current[key] = dict(child)
        current = current[key]
    if keys[-1] not in current:
        return False
    del current[keys[-1]]
    return True


def set_path(target: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path inside ``target``, copying intermediate dicts."""
    set_in(target, path_keys(path), value)


_PURE_PATH = re.compile(r"^\$\.[\w.\[\]-]+$")
_DOLLAR_TEMPLATE = re.compile(r"\$\{(\$\.[^}]+)\}")
_MUSTACHE_TEMPLATE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(value: Any, scope: dict[str, Any]) -> Any:
    """Resolve variable references inside strings, lists and dicts.

    A string that is exactly ``$.path`` resolves to the raw value; ``${$.path}``
    and ``{{path}}`` are interpolated as text.
    """
    if isinstance(value, str):
        if _PURE_PATH.match(value):
            return resolve_path(scope, value)

        def _dollar(match: re.Match[str]) -> str:
            resolved = resolve_path(scope, match.group(1))
            return _stringify(resolved) if resolved is not None else match.group(0)

        def _mustache(match: re.Match[str]) -> str:
            resolved = resolve_path(scope, match.group(1))
            return _stringify(resolved) if resolved is not None else ""

        value = _DOLLAR_TEMPLATE.sub(_dollar, value)
        return _MUSTACHE_TEMPLATE.sub(_mustache, value)
    if isinstance(value, list):
        return [render_template(item, scope) for item in value]
    if isinstance(value, dict):
        return {key: render_template(item, scope) for key, item in value.items()}
    return value


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``updates`` into a copy of ``base``.

    Nested dicts are merged and lists are concatenated; everything else is
    replaced.
    """
    merged = dict(base)
    for key, value in updates.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = deep_merge(existing, value)
        elif isinstance(existing, list) and isinstance(value, list):
            merged[key] = existing + value
        else:
            merged[key] = value
    return merged
