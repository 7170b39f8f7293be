"""Rule condition language.

Conditions are parsed into a small closed AST and evaluated by walking the
tree against an ``EvaluationContext``. Nothing in the condition text is ever
compiled or executed. The grammar::

    expr     := or
    or       := and (("||" | "or") and)*
    and      := compare (("&&" | "and") compare)*
    compare  := unary (("==" | "===" | "!=" | "!==") unary)?
    unary    := ("!" | "not") unary | primary
    primary  := "(" expr ")" | "true" | "false" | "null" | NUMBER | STRING | FIELD
    FIELD    := ["$"] IDENT ("." IDENT)*

Fields resolve against the context: ``action``, ``isExpired``, ``isPending``,
``isApproved`` (snake_case spellings accepted), ``now``,
``contract.<field>`` and ``parameters.<key>``; nested mappings are walked with
further dotted segments. Negation binds tighter than equality:
``!$flag == true`` reads as ``(!$flag) == true``, so a comparison is negated
with parentheses, ``!($action == "write")``. Example::

    $action == "read" && $isApproved && !$isExpired
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Mapping, Union

from core.contract_types import ContractSnapshot
from core.errors import RuleEvaluationError
from models.contract import ContractStatus

MAX_CONDITION_LENGTH = 2000
MAX_NESTING_DEPTH = 32


@dataclass(frozen=True)
class BoolLiteral:
    value: bool


@dataclass(frozen=True)
class Literal:
    value: str | int | float | None


@dataclass(frozen=True)
class FieldRef:
    path: tuple[str, ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Not:
    operand: "Node"


Node = Union[BoolLiteral, Literal, FieldRef, Compare, And, Or, Not]


_TOKEN_RE = re.compile(
    r"""
    (?P<number>-?\d+(?:\.\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<op>===|!==|==|!=|&&|\|\||!|\(|\))
    |(?P<field>\$?[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    """,
    re.VERBOSE,
)
_KEYWORDS = {"and": "&&", "or": "||", "not": "!"}
_EQUALITY_OPS = {"==": "==", "===": "==", "!=": "!=", "!==": "!="}


@dataclass(frozen=True)
class _Token:
    kind: str
    value: Any
    pos: int


def _unquote(raw: str) -> str:
    return re.sub(r"\\(.)", r"\1", raw[1:-1])


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise RuleEvaluationError(f"Unexpected character {text[pos]!r} at position {pos}", condition=text)
        kind = match.lastgroup
        raw = match.group(kind)
        if kind == "number":
            value: Any = float(raw) if "." in raw else int(raw)
            tokens.append(_Token("literal", value, pos))
        elif kind == "string":
            tokens.append(_Token("literal", _unquote(raw), pos))
        elif kind == "op":
            tokens.append(_Token("op", raw, pos))
        else:
            lowered = raw.lower()
            if lowered in _KEYWORDS:
                tokens.append(_Token("op", _KEYWORDS[lowered], pos))
            elif lowered in {"true", "false"}:
                tokens.append(_Token("bool", lowered == "true", pos))
            elif lowered == "null":
                tokens.append(_Token("literal", None, pos))
            else:
                tokens.append(_Token("field", tuple(raw.lstrip("$").split(".")), pos))
        pos = match.end()
    tokens.append(_Token("eof", None, len(text)))
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0
        self.depth = 0

    def _peek(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _error(self, message: str, token: _Token) -> RuleEvaluationError:
        return RuleEvaluationError(f"{message} at position {token.pos}", condition=self.text)

    def _at_op(self, *ops: str) -> bool:
        token = self._peek()
        return token.kind == "op" and token.value in ops

    def parse(self) -> Node:
        node = self._or()
        token = self._peek()
        if token.kind != "eof":
            raise self._error(f"Unexpected token {token.value!r}", token)
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._at_op("||"):
            self._advance()
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._compare()
        while self._at_op("&&"):
            self._advance()
            node = And(node, self._compare())
        return node

    def _compare(self) -> Node:
        left = self._unary()
        token = self._peek()
        if token.kind == "op" and token.value in _EQUALITY_OPS:
            self._advance()
            return Compare(_EQUALITY_OPS[token.value], left, self._unary())
        return left

    def _unary(self) -> Node:
        if self._at_op("!"):
            self._advance()
            self._enter()
            try:
                return Not(self._unary())
            finally:
                self.depth -= 1
        return self._primary()

    def _primary(self) -> Node:
        token = self._advance()
        if token.kind == "op" and token.value == "(":
            self._enter()
            try:
                node = self._or()
            finally:
                self.depth -= 1
            closing = self._advance()
            if closing.kind != "op" or closing.value != ")":
                raise self._error("Expected ')'", closing)
            return node
        if token.kind == "bool":
            return BoolLiteral(token.value)
        if token.kind == "literal":
            return Literal(token.value)
        if token.kind == "field":
            return FieldRef(token.value)
        if token.kind == "eof":
            raise self._error("Unexpected end of condition", token)
        raise self._error(f"Unexpected token {token.value!r}", token)

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise RuleEvaluationError("Condition nesting is too deep", condition=self.text)


@lru_cache(maxsize=1024)
def parse_condition(text: str) -> Node:
    if not isinstance(text, str) or not text.strip():
        raise RuleEvaluationError("Condition is empty", condition=text)
    if len(text) > MAX_CONDITION_LENGTH:
        raise RuleEvaluationError("Condition is too long", condition=text[:64])
    return _Parser(text).parse()


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


@dataclass(frozen=True)
class EvaluationContext:
    contract: ContractSnapshot
    action: str
    parameters: Mapping[str, Any]
    now: datetime

    @property
    def is_expired(self) -> bool:
        return self.contract.expires_at is not None and self.now > self.contract.expires_at

    @property
    def is_pending(self) -> bool:
        return self.contract.status == ContractStatus.PENDING

    @property
    def is_approved(self) -> bool:
        return self.contract.status == ContractStatus.APPROVED

    def lookup(self, path: tuple[str, ...]) -> Any:
        head, rest = path[0], path[1:]
        scalars = {
            "action": lambda: self.action,
            "isExpired": lambda: self.is_expired,
            "isPending": lambda: self.is_pending,
            "isApproved": lambda: self.is_approved,
            "now": lambda: self.now.isoformat(),
        }
        key = head if head in scalars else {"is_expired": "isExpired", "is_pending": "isPending", "is_approved": "isApproved"}.get(head)
        if key is not None:
            if rest:
                raise RuleEvaluationError(f"Field '{head}' has no attribute '{rest[0]}'")
            return scalars[key]()
        if head == "contract":
            return self._walk(self.contract.as_context_dict(), path, normalize=True)
        if head == "parameters":
            return self._walk(self.parameters, path, normalize=False)
        raise RuleEvaluationError(f"Unknown field '{'.'.join(path)}'")

    @staticmethod
    def _walk(root: Mapping[str, Any], path: tuple[str, ...], *, normalize: bool) -> Any:
        value: Any = root
        for depth, segment in enumerate(path[1:], start=1):
            if not isinstance(value, Mapping):
                raise RuleEvaluationError(f"Field '{'.'.join(path[:depth])}' is not a mapping")
            if segment in value:
                value = value[segment]
            elif normalize and depth == 1 and _snake_case(segment) in value:
                value = value[_snake_case(segment)]
            else:
                raise RuleEvaluationError(f"Missing field '{'.'.join(path[:depth + 1])}'")
        return value


def _values_equal(left: Any, right: Any) -> bool:
    # Strict equality: true never equals 1 and "1" never equals 1.
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _value(node: Node, context: EvaluationContext) -> Any:
    if isinstance(node, (BoolLiteral, Literal)):
        return node.value
    if isinstance(node, FieldRef):
        return context.lookup(node.path)
    return _truth(node, context)


def _truth(node: Node, context: EvaluationContext) -> bool:
    if isinstance(node, And):
        return _truth(node.left, context) and _truth(node.right, context)
    if isinstance(node, Or):
        return _truth(node.left, context) or _truth(node.right, context)
    if isinstance(node, Not):
        return not _truth(node.operand, context)
    if isinstance(node, Compare):
        equal = _values_equal(_value(node.left, context), _value(node.right, context))
        return equal if node.op == "==" else not equal
    value = _value(node, context)
    if not isinstance(value, bool):
        raise RuleEvaluationError(f"Expected a boolean, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class ConditionResult:
    matched: bool
    error: RuleEvaluationError | None = None


class ConditionEvaluator:
    """Evaluates rule conditions; failures never escape and count as not matched."""

    def check(self, condition: str, context: EvaluationContext) -> ConditionResult:
        try:
            return ConditionResult(matched=_truth(parse_condition(condition), context))
        except RuleEvaluationError as exc:
            if exc.condition is None:
                exc.condition = condition
            return ConditionResult(matched=False, error=exc)
        except RecursionError:
            return ConditionResult(
                matched=False,
                error=RuleEvaluationError("Condition nesting is too deep", condition=condition),
            )

    def evaluate(self, condition: str, context: EvaluationContext) -> bool:
        return self.check(condition, context).matched
