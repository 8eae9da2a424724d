"""Clause 演算子のユニットテスト"""

import pytest
from k1s0_featureflag_client import FlagValue, Operator
from k1s0_featureflag_client.operators import apply


@pytest.mark.parametrize(
    ("op", "user_value", "clause_value", "expected"),
    [
        (Operator.IN, "a", "a", True),
        (Operator.IN, 1, 1.0, True),
        (Operator.IN, True, 1, False),
        (Operator.IN, "a", "b", False),
        (Operator.STARTS_WITH, "hello", "he", True),
        (Operator.STARTS_WITH, "hello", "lo", False),
        (Operator.ENDS_WITH, "hello", "lo", True),
        (Operator.CONTAINS, "hello", "ell", True),
        (Operator.CONTAINS, 123, "2", False),
        (Operator.MATCHES, "hello world", "o w", True),
        (Operator.MATCHES, "hello", "^ell", False),
        (Operator.MATCHES, "hello", "(", False),
        (Operator.LESS_THAN, 1, 2, True),
        (Operator.LESS_THAN, 2, 2, False),
        (Operator.LESS_THAN_OR_EQUAL, 2, 2.0, True),
        (Operator.GREATER_THAN, 3, 2, True),
        (Operator.GREATER_THAN_OR_EQUAL, 2, 3, False),
        (Operator.LESS_THAN, "1", 2, False),
        (Operator.LESS_THAN, True, 2, False),
    ],
)
def test_string_and_numeric_operators(
    op: Operator, user_value: object, clause_value: object, expected: bool
) -> None:
    """文字列・数値演算子は型を変換せずに比較すること。"""
    assert apply(op, FlagValue(user_value), FlagValue(clause_value)) is expected


@pytest.mark.parametrize(
    ("op", "user_value", "clause_value", "expected"),
    [
        (Operator.BEFORE, "2020-01-01T00:00:00Z", "2021-01-01T00:00:00Z", True),
        (Operator.AFTER, "2020-01-01T00:00:00Z", "2021-01-01T00:00:00Z", False),
        (Operator.BEFORE, 0, 1000, True),
        (Operator.BEFORE, "1970-01-01T00:00:01Z", 2000, True),
        (Operator.AFTER, "2020-01-01T09:00:00+09:00", "2019-12-31T23:00:00Z", True),
        (Operator.BEFORE, "2020-01-01T00:00:00", "2020-01-01T00:00:01Z", True),
        (Operator.BEFORE, "not a date", 1000, False),
        (Operator.AFTER, True, 0, False),
    ],
)
def test_date_operators(
    op: Operator, user_value: object, clause_value: object, expected: bool
) -> None:
    """日付は ISO-8601 文字列またはエポックミリ秒で比較すること。"""
    assert apply(op, FlagValue(user_value), FlagValue(clause_value)) is expected


@pytest.mark.parametrize(
    ("op", "user_value", "clause_value", "expected"),
    [
        (Operator.SEMVER_EQUAL, "2.0.0", "2.0.0", True),
        (Operator.SEMVER_EQUAL, "2.0.0", "2", True),
        (Operator.SEMVER_EQUAL, "2.1", "2.1.0", True),
        (Operator.SEMVER_EQUAL, "2.0.0+build.1", "2.0.0", True),
        (Operator.SEMVER_LESS_THAN, "2.0.0-rc.1", "2.0.0", True),
        (Operator.SEMVER_LESS_THAN, "2.0.1", "2.0.0", False),
        (Operator.SEMVER_GREATER_THAN, "2.0.1", "2.0.0", True),
        (Operator.SEMVER_EQUAL, "not.a.version", "2.0.0", False),
        (Operator.SEMVER_EQUAL, 2, "2.0.0", False),
    ],
)
def test_semver_operators(
    op: Operator, user_value: object, clause_value: object, expected: bool
) -> None:
    """SemVer 比較はマイナー・パッチの省略を許し、ビルドメタデータを無視すること。"""
    assert apply(op, FlagValue(user_value), FlagValue(clause_value)) is expected


def test_segment_match_and_unknown_operator_never_match() -> None:
    """segmentMatch と未知の演算子は値比較では常に False。"""
    assert apply(Operator.SEGMENT_MATCH, FlagValue("a"), FlagValue("a")) is False
    assert apply(None, FlagValue("a"), FlagValue("a")) is False


def test_unknown_operator_name_parses_to_none() -> None:
    """未知の演算子名は None として解析されること。"""
    assert Operator.parse("whatever") is None
    assert Operator.parse("semVerEqual") == Operator.SEMVER_EQUAL
