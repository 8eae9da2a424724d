"""Clause 演算子の実装"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime

import semver

from .models import Operator
from .value import FlagValue


def _strings(fn: Callable[[str, str], bool]) -> Callable[[FlagValue, FlagValue], bool]:
    def op(user_value: FlagValue, clause_value: FlagValue) -> bool:
        a, b = user_value.string_value(), clause_value.string_value()
        return a is not None and b is not None and fn(a, b)

    return op


def _numbers(fn: Callable[[float, float], bool]) -> Callable[[FlagValue, FlagValue], bool]:
    def op(user_value: FlagValue, clause_value: FlagValue) -> bool:
        if not (user_value.is_number() and clause_value.is_number()):
            return False
        return fn(user_value.float_value(), clause_value.float_value())

    return op


def _to_epoch_millis(value: FlagValue) -> float | None:
    """ISO-8601 文字列またはエポックミリ秒を解釈する。解釈できなければ None。"""
    if value.is_number():
        return value.float_value()
    text = value.string_value()
    if text is None:
        return None
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.timestamp() * 1000.0


def _dates(fn: Callable[[float, float], bool]) -> Callable[[FlagValue, FlagValue], bool]:
    def op(user_value: FlagValue, clause_value: FlagValue) -> bool:
        a, b = _to_epoch_millis(user_value), _to_epoch_millis(clause_value)
        return a is not None and b is not None and fn(a, b)

    return op


def _to_semver(value: FlagValue) -> semver.Version | None:
    text = value.string_value()
    if text is None:
        return None
    try:
        return semver.Version.parse(text, optional_minor_and_patch=True)
    except (ValueError, TypeError):
        return None


def _semvers(fn: Callable[[int], bool]) -> Callable[[FlagValue, FlagValue], bool]:
    def op(user_value: FlagValue, clause_value: FlagValue) -> bool:
        a, b = _to_semver(user_value), _to_semver(clause_value)
        return a is not None and b is not None and fn(a.compare(b))

    return op


def _matches(user_value: FlagValue, clause_value: FlagValue) -> bool:
    text, pattern = user_value.string_value(), clause_value.string_value()
    if text is None or pattern is None:
        return False
    try:
        return re.search(pattern, text) is not None
    except re.error:
        return False


_OPERATORS: dict[Operator, Callable[[FlagValue, FlagValue], bool]] = {
    Operator.IN: lambda a, b: a == b,
    Operator.STARTS_WITH: _strings(str.startswith),
    Operator.ENDS_WITH: _strings(str.endswith),
    Operator.CONTAINS: _strings(lambda a, b: b in a),
    Operator.MATCHES: _matches,
    Operator.LESS_THAN: _numbers(lambda a, b: a < b),
    Operator.LESS_THAN_OR_EQUAL: _numbers(lambda a, b: a <= b),
    Operator.GREATER_THAN: _numbers(lambda a, b: a > b),
    Operator.GREATER_THAN_OR_EQUAL: _numbers(lambda a, b: a >= b),
    Operator.BEFORE: _dates(lambda a, b: a < b),
    Operator.AFTER: _dates(lambda a, b: a > b),
    Operator.SEMVER_EQUAL: _semvers(lambda c: c == 0),
    Operator.SEMVER_LESS_THAN: _semvers(lambda c: c < 0),
    Operator.SEMVER_GREATER_THAN: _semvers(lambda c: c > 0),
}


def apply(op: Operator | None, user_value: FlagValue, clause_value: FlagValue) -> bool:
    """ユーザー属性値と Clause の値 1 つを比較する。

    segmentMatch と未知の演算子は常に False（segmentMatch は評価器側で扱う）。
    """
    fn = _OPERATORS.get(op) if op is not None else None
    if fn is None:
        return False
    return fn(user_value, clause_value)
