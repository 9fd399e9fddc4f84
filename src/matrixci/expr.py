"""
Guard expressions and `${{ ... }}` interpolation.

The accepted language is the small subset workflows actually use:

    matrix.mode == 'release'
    runner.os == 'Linux' && !cancelled()
    contains(github.ref, 'release/') || always()

Literals are single-quoted strings (`''` escapes a quote), numbers, `true`,
`false` and `null`. Property lookups are case-insensitive and missing
properties evaluate to `null`. Equality between strings ignores case;
mixed types are compared numerically, the way GitHub Actions does it.

Expressions are parsed once at load time (syntax errors and unknown
functions become `ConfigError`) and evaluated against a plain dict context.
"""

from __future__ import annotations

import json
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator, List, Tuple

from .errors import ConfigError

STATUS_FUNCTIONS = {"success", "failure", "always", "cancelled"}

_FUNCTION_ARITY = {
    "success": (0, 0),
    "failure": (0, 0),
    "always": (0, 0),
    "cancelled": (0, 0),
    "contains": (2, 2),
    "startswith": (2, 2),
    "endswith": (2, 2),
    "format": (1, None),
    "tojson": (1, 1),
}

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_INTERP = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)
_WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class Expr(ABC):
    """Base class for parsed expressions."""

    @abstractmethod
    def evaluate(self, context: dict[str, Any]) -> Any:
        ...

    def children(self) -> Iterator["Expr"]:
        return iter(())

    def walk(self) -> Iterator["Expr"]:
        yield self
        for child in self.children():
            yield from child.walk()

    def uses_status_function(self) -> bool:
        return any(isinstance(n, CallExpr) and n.name in STATUS_FUNCTIONS for n in self.walk())

    def references(self) -> set[Tuple[str, ...]]:
        """Static property paths such as ('matrix', 'mode')."""
        out: set[Tuple[str, ...]] = set()
        for node in self.walk():
            if isinstance(node, PropertyExpr):
                path = node.path()
                if path is not None:
                    out.add(path)
        return out


@dataclass
class LiteralExpr(Expr):
    value: Any

    def evaluate(self, context: dict[str, Any]) -> Any:
        return self.value


@dataclass
class NameExpr(Expr):
    """A top-level context name (`matrix`, `env`, `runner`, ...)."""
    name: str

    def evaluate(self, context: dict[str, Any]) -> Any:
        return _lookup(context, self.name)


@dataclass
class PropertyExpr(Expr):
    target: Expr
    name: str

    def evaluate(self, context: dict[str, Any]) -> Any:
        return _lookup(self.target.evaluate(context), self.name)

    def children(self) -> Iterator[Expr]:
        yield self.target

    def path(self) -> Tuple[str, ...] | None:
        if isinstance(self.target, NameExpr):
            return (self.target.name.lower(), self.name)
        if isinstance(self.target, PropertyExpr):
            head = self.target.path()
            return None if head is None else head + (self.name,)
        return None


@dataclass
class IndexExpr(Expr):
    target: Expr
    key: Expr

    def evaluate(self, context: dict[str, Any]) -> Any:
        container = self.target.evaluate(context)
        key = self.key.evaluate(context)
        if isinstance(container, (list, tuple)):
            n = _to_number(key)
            if math.isnan(n) or n != int(n) or not 0 <= int(n) < len(container):
                return None
            return container[int(n)]
        return _lookup(container, to_str(key))

    def children(self) -> Iterator[Expr]:
        yield self.target
        yield self.key


@dataclass
class UnaryExpr(Expr):
    operand: Expr

    def evaluate(self, context: dict[str, Any]) -> Any:
        return not truthy(self.operand.evaluate(context))

    def children(self) -> Iterator[Expr]:
        yield self.operand


@dataclass
class BinaryExpr(Expr):
    left: Expr
    op: str
    right: Expr

    def evaluate(self, context: dict[str, Any]) -> Any:
        if self.op == "&&":
            lhs = self.left.evaluate(context)
            return self.right.evaluate(context) if truthy(lhs) else lhs
        if self.op == "||":
            lhs = self.left.evaluate(context)
            return lhs if truthy(lhs) else self.right.evaluate(context)

        lhs = self.left.evaluate(context)
        rhs = self.right.evaluate(context)
        if self.op == "==":
            return _loose_eq(lhs, rhs)
        if self.op == "!=":
            return not _loose_eq(lhs, rhs)
        return _compare(lhs, self.op, rhs)

    def children(self) -> Iterator[Expr]:
        yield self.left
        yield self.right


@dataclass
class CallExpr(Expr):
    name: str
    args: List[Expr]

    def evaluate(self, context: dict[str, Any]) -> Any:
        if self.name in STATUS_FUNCTIONS:
            status = str(_lookup(_lookup(context, "job"), "status") or "success")
            return self.name == "always" or status == self.name

        values = [a.evaluate(context) for a in self.args]
        if self.name == "contains":
            haystack, needle = values
            if isinstance(haystack, (list, tuple)):
                return any(_loose_eq(item, needle) for item in haystack)
            return to_str(needle).casefold() in to_str(haystack).casefold()
        if self.name == "startswith":
            return to_str(values[0]).casefold().startswith(to_str(values[1]).casefold())
        if self.name == "endswith":
            return to_str(values[0]).casefold().endswith(to_str(values[1]).casefold())
        if self.name == "format":
            fmt, *rest = values
            return _format(to_str(fmt), [to_str(v) for v in rest])
        if self.name == "tojson":
            return json.dumps(values[0], indent=2, default=str)
        raise AssertionError(self.name)  # rejected by the parser

    def children(self) -> Iterator[Expr]:
        yield from self.args


# ---------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return 0.0
        try:
            return float(s)
        except ValueError:
            return math.nan
    return math.nan


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def _loose_eq(a: Any, b: Any) -> bool:
    ka, kb = _kind(a), _kind(b)
    if ka == kb:
        if ka == "string":
            return a.casefold() == b.casefold()
        if ka == "number":
            return float(a) == float(b)
        return a == b
    if "object" in (ka, kb):
        return False
    return _to_number(a) == _to_number(b)


def _compare(a: Any, op: str, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        x, y = a.casefold(), b.casefold()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _lookup(container: Any, name: str) -> Any:
    if not isinstance(container, dict):
        return None
    if name in container:
        return container[name]
    folded = name.casefold()
    for key, value in container.items():
        if str(key).casefold() == folded:
            return value
    return None


_FORMAT_REF = re.compile(r"\{\{|\}\}|\{(\d+)\}")


def _format_arity(fmt: str) -> int:
    """Arguments `fmt` needs: one more than its highest {N}."""
    indexes = [int(m.group(1)) for m in _FORMAT_REF.finditer(fmt) if m.group(1) is not None]
    return max(indexes) + 1 if indexes else 0


def _format(fmt: str, args: List[str]) -> str:
    def repl(m: re.Match) -> str:
        if m.group(0) == "{{":
            return "{"
        if m.group(0) == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise ConfigError(f"format(): no argument for {{{idx}}} in {fmt!r}")
        return args[idx]

    return _FORMAT_REF.sub(repl, fmt)


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN.match(source, pos)
        if not m:
            raise ConfigError(f"invalid expression {source!r}: unexpected character {source[pos]!r} at {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def error(self, msg: str) -> ConfigError:
        return ConfigError(f"invalid expression {self.source!r}: {msg}")

    def peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, *ops: str) -> str | None:
        tok = self.peek()
        if tok and tok[0] == "op" and tok[1] in ops:
            self.pos += 1
            return tok[1]
        return None

    def expect(self, op: str) -> None:
        if not self.accept(op):
            tok = self.peek()
            found = tok[1] if tok else "end of input"
            raise self.error(f"expected {op!r}, found {found!r}")

    def parse(self) -> Expr:
        if not self.tokens:
            raise self.error("empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise self.error(f"unexpected {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Expr:
        node = self.parse_and()
        while self.accept("||"):
            node = BinaryExpr(node, "||", self.parse_and())
        return node

    def parse_and(self) -> Expr:
        node = self.parse_equality()
        while self.accept("&&"):
            node = BinaryExpr(node, "&&", self.parse_equality())
        return node

    def parse_equality(self) -> Expr:
        node = self.parse_comparison()
        while True:
            op = self.accept("==", "!=")
            if not op:
                return node
            node = BinaryExpr(node, op, self.parse_comparison())

    def parse_comparison(self) -> Expr:
        node = self.parse_unary()
        while True:
            op = self.accept("<", "<=", ">", ">=")
            if not op:
                return node
            node = BinaryExpr(node, op, self.parse_unary())

    def parse_unary(self) -> Expr:
        if self.accept("!"):
            return UnaryExpr(self.parse_unary())
        return self.parse_postfix(self.parse_primary())

    def parse_primary(self) -> Expr:
        tok = self.peek()
        if tok is None:
            raise self.error("unexpected end of input")
        kind, text = tok
        self.pos += 1

        if kind == "number":
            value = float(text)
            return LiteralExpr(int(value) if value.is_integer() and "." not in text else value)
        if kind == "string":
            return LiteralExpr(text[1:-1].replace("''", "'"))
        if kind == "op" and text == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if kind == "ident":
            lowered = text.lower()
            if lowered == "true":
                return LiteralExpr(True)
            if lowered == "false":
                return LiteralExpr(False)
            if lowered == "null":
                return LiteralExpr(None)
            if self.accept("("):
                return self.parse_call(lowered)
            return NameExpr(text)
        raise self.error(f"unexpected {text!r}")

    def parse_call(self, name: str) -> Expr:
        if name not in _FUNCTION_ARITY:
            raise self.error(f"unknown function {name}()")
        args: List[Expr] = []
        if not self.accept(")"):
            args.append(self.parse_or())
            while self.accept(","):
                args.append(self.parse_or())
            self.expect(")")
        lo, hi = _FUNCTION_ARITY[name]
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise self.error(f"{name}() takes {lo if lo == hi else f'{lo}+'} argument(s), got {len(args)}")
        if name == "format" and isinstance(args[0], LiteralExpr) and isinstance(args[0].value, str):
            needed = _format_arity(args[0].value)
            if needed > len(args) - 1:
                raise self.error(f"format() string uses {{{needed - 1}}} but only {len(args) - 1} argument(s) follow")
        return CallExpr(name, args)

    def parse_postfix(self, node: Expr) -> Expr:
        while True:
            if self.accept("."):
                tok = self.peek()
                if tok is None or tok[0] != "ident":
                    raise self.error("expected property name after '.'")
                self.pos += 1
                node = PropertyExpr(node, tok[1])
            elif self.accept("["):
                key = self.parse_or()
                self.expect("]")
                node = IndexExpr(node, key)
            else:
                return node


def unwrap(source: str) -> str:
    """Strip an optional surrounding `${{ }}`."""
    m = _WRAPPED.match(source)
    return m.group(1) if m else source


def parse(source: str) -> Expr:
    return _Parser(unwrap(source).strip()).parse()


def evaluate(source: str, context: dict[str, Any]) -> Any:
    return parse(source).evaluate(context)


def guard_passes(condition: str | None, context: dict[str, Any]) -> bool:
    """
    Evaluate a step or job `if:`.

    A guard that calls none of success()/failure()/always()/cancelled() only
    runs while the job is still succeeding.
    """
    status_ok = str(_lookup(_lookup(context, "job"), "status") or "success") == "success"
    if condition is None or not condition.strip():
        return status_ok
    node = parse(condition)
    if not node.uses_status_function() and not status_ok:
        return False
    return truthy(node.evaluate(context))


def placeholders(text: str) -> List[Expr]:
    """Parse every `${{ ... }}` inside `text`."""
    return [parse(m.group(1)) for m in _INTERP.finditer(text)]


def interpolate(text: str, context: dict[str, Any]) -> str:
    """Replace every `${{ ... }}` inside `text` with its string value."""
    if "${{" not in text:
        return text
    return _INTERP.sub(lambda m: to_str(parse(m.group(1)).evaluate(context)), text)
