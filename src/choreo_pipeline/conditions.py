"""Evaluation of resolved ``when`` conditions.

Conditions are evaluated after placeholder resolution, so they only contain
literals. Supported syntax:

    a == b    a != b    a < b    a <= b    a > b    a >= b
    x && y    x || y    !x       ( ... )
    'quoted'  "quoted"  42  3.5  true  false  bare-words

Both sides of a comparison are compared numerically when both parse as
numbers, otherwise as strings. Ordering operators require numbers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from choreo_pipeline.errors import InvalidConditionError

_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "!", "(", ")")
_WORD_STOP = set(" \t\r\n()!<>=&|'\"")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


@dataclass(frozen=True)
class _Token:
    kind: str  # "op" | "literal"
    text: str
    quoted: bool = False


@dataclass(frozen=True)
class _Value:
    text: str
    quoted: bool = False

    @property
    def number(self) -> float | None:
        if not self.quoted and _NUMBER.match(self.text):
            return float(self.text)
        return None

    def as_bool(self, condition: str) -> bool:
        lowered = self.text.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        raise InvalidConditionError(f"'{self.text}' is not a boolean", condition=condition)


def _tokenize(condition: str) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    length = len(condition)
    while i < length:
        ch = condition[i]
        if ch.isspace():
            i += 1
            continue
        if ch in ("'", '"'):
            end = condition.find(ch, i + 1)
            if end == -1:
                raise InvalidConditionError("Unterminated string literal", condition=condition)
            tokens.append(_Token("literal", condition[i + 1 : end], quoted=True))
            i = end + 1
            continue
        op = next((o for o in _OPERATORS if condition.startswith(o, i)), None)
        if op is not None:
            tokens.append(_Token("op", op))
            i += len(op)
            continue
        if ch in ("=", "&", "|"):
            raise InvalidConditionError(f"Unexpected character '{ch}' at {i}", condition=condition)
        start = i
        while i < length and condition[i] not in _WORD_STOP:
            i += 1
        tokens.append(_Token("literal", condition[start:i]))
    return tokens


class _Parser:
    def __init__(self, condition: str) -> None:
        self.condition = condition
        self.tokens = _tokenize(condition)
        self.pos = 0

    def parse(self) -> bool:
        if not self.tokens:
            raise InvalidConditionError("Empty condition", condition=self.condition)
        result = self._or()
        if self.pos != len(self.tokens):
            raise InvalidConditionError(
                f"Unexpected token '{self.tokens[self.pos].text}'", condition=self.condition
            )
        return result

    def _peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, op: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == "op" and token.text == op:
            self.pos += 1
            return True
        return False

    def _or(self) -> bool:
        result = self._and()
        while self._accept("||"):
            right = self._and()
            result = result or right
        return result

    def _and(self) -> bool:
        result = self._unary()
        while self._accept("&&"):
            right = self._unary()
            result = result and right
        return result

    def _unary(self) -> bool:
        if self._accept("!"):
            return not self._unary()
        return self._comparison()

    def _comparison(self) -> bool:
        if self._accept("("):
            result = self._or()
            if not self._accept(")"):
                raise InvalidConditionError("Missing ')'", condition=self.condition)
            return result

        left = self._literal()
        token = self._peek()
        if token is not None and token.kind == "op" and token.text in ("==", "!=", "<", "<=", ">", ">="):
            self.pos += 1
            right = self._literal()
            return self._compare(left, token.text, right)
        return left.as_bool(self.condition)

    def _literal(self) -> _Value:
        token = self._peek()
        if token is None or token.kind != "literal":
            found = token.text if token else "end of condition"
            raise InvalidConditionError(f"Expected a value, found '{found}'", condition=self.condition)
        self.pos += 1
        return _Value(token.text, quoted=token.quoted)

    def _compare(self, left: _Value, op: str, right: _Value) -> bool:
        lnum, rnum = left.number, right.number
        if lnum is not None and rnum is not None:
            a: float | str = lnum
            b: float | str = rnum
        elif op in ("==", "!="):
            a, b = left.text, right.text
        else:
            raise InvalidConditionError(
                f"Operator '{op}' requires numbers, got '{left.text}' and '{right.text}'",
                condition=self.condition,
            )

        if op == "==":
            return a == b
        if op == "!=":
            return a != b
        if op == "<":
            return a < b  # type: ignore[operator]
        if op == "<=":
            return a <= b  # type: ignore[operator]
        if op == ">":
            return a > b  # type: ignore[operator]
        return a >= b  # type: ignore[operator]


def evaluate_condition(condition: str) -> bool:
    """Evaluate a resolved ``when`` condition.

    Raises:
        InvalidConditionError: If the condition cannot be parsed.
    """
    return _Parser(condition).parse()
