"""評価理由と評価結果モデル"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ReasonKind(StrEnum):
    """評価結果に至った理由の種別。"""

    OFF = "OFF"
    FALLTHROUGH = "FALLTHROUGH"
    TARGET_MATCH = "TARGET_MATCH"
    RULE_MATCH = "RULE_MATCH"
    PREREQUISITE_FAILED = "PREREQUISITE_FAILED"
    ERROR = "ERROR"


class ErrorKind(StrEnum):
    """評価エラーの種別。評価境界を越えて例外として送出されることはない。"""

    CLIENT_NOT_READY = "CLIENT_NOT_READY"
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    USER_NOT_SPECIFIED = "USER_NOT_SPECIFIED"
    MALFORMED_FLAG = "MALFORMED_FLAG"
    WRONG_TYPE = "WRONG_TYPE"
    EXCEPTION = "EXCEPTION"


@dataclass(frozen=True)
class EvaluationReason:
    """評価理由。

    インスタンスはファクトリメソッド経由で取得する。同じ引数に対しては
    同一のインスタンスが返る（OFF などの定数、エラー種別ごとのエラー理由、
    ルール番号と ID ごとの RULE_MATCH）。
    """

    kind: ReasonKind
    rule_index: int | None = None
    rule_id: str | None = None
    prerequisite_key: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def off(cls) -> EvaluationReason:
        return _OFF

    @classmethod
    def fallthrough(cls) -> EvaluationReason:
        return _FALLTHROUGH

    @classmethod
    def target_match(cls) -> EvaluationReason:
        return _TARGET_MATCH

    @classmethod
    def rule_match(cls, rule_index: int, rule_id: str | None) -> EvaluationReason:
        return _rule_match(rule_index, rule_id)

    @classmethod
    def prerequisite_failed(cls, prerequisite_key: str) -> EvaluationReason:
        return _prerequisite_failed(prerequisite_key)

    @classmethod
    def error(cls, error_kind: ErrorKind) -> EvaluationReason:
        return _ERRORS[error_kind]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        if self.kind == ReasonKind.RULE_MATCH:
            data["ruleIndex"] = self.rule_index
            if self.rule_id is not None:
                data["ruleId"] = self.rule_id
        elif self.kind == ReasonKind.PREREQUISITE_FAILED:
            data["prerequisiteKey"] = self.prerequisite_key
        elif self.kind == ReasonKind.ERROR and self.error_kind is not None:
            data["errorKind"] = self.error_kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluationReason:
        kind = ReasonKind(data["kind"])
        if kind == ReasonKind.RULE_MATCH:
            return cls.rule_match(int(data.get("ruleIndex", 0)), data.get("ruleId"))
        if kind == ReasonKind.PREREQUISITE_FAILED:
            return cls.prerequisite_failed(data.get("prerequisiteKey", ""))
        if kind == ReasonKind.ERROR:
            return cls.error(ErrorKind(data.get("errorKind", ErrorKind.EXCEPTION)))
        return {
            ReasonKind.OFF: _OFF,
            ReasonKind.FALLTHROUGH: _FALLTHROUGH,
            ReasonKind.TARGET_MATCH: _TARGET_MATCH,
        }[kind]

    def __str__(self) -> str:
        if self.kind == ReasonKind.RULE_MATCH:
            return f"{self.kind}({self.rule_index},{self.rule_id})"
        if self.kind == ReasonKind.PREREQUISITE_FAILED:
            return f"{self.kind}({self.prerequisite_key})"
        if self.kind == ReasonKind.ERROR:
            return f"{self.kind}({self.error_kind})"
        return self.kind.value


_OFF = EvaluationReason(ReasonKind.OFF)
_FALLTHROUGH = EvaluationReason(ReasonKind.FALLTHROUGH)
_TARGET_MATCH = EvaluationReason(ReasonKind.TARGET_MATCH)
_ERRORS: dict[ErrorKind, EvaluationReason] = {
    kind: EvaluationReason(ReasonKind.ERROR, error_kind=kind) for kind in ErrorKind
}


@functools.lru_cache(maxsize=4096)
def _rule_match(rule_index: int, rule_id: str | None) -> EvaluationReason:
    return EvaluationReason(ReasonKind.RULE_MATCH, rule_index=rule_index, rule_id=rule_id)


@functools.lru_cache(maxsize=4096)
def _prerequisite_failed(prerequisite_key: str) -> EvaluationReason:
    return EvaluationReason(ReasonKind.PREREQUISITE_FAILED, prerequisite_key=prerequisite_key)


@dataclass(frozen=True)
class EvaluationDetail(Generic[T]):
    """フラグ評価の結果。値・バリエーション番号・理由の組。"""

    value: T
    variation_index: int | None
    reason: EvaluationReason

    def is_default_value(self) -> bool:
        """既定値が返された（バリエーションが選ばれなかった）場合に True。"""
        return self.variation_index is None

    @classmethod
    def error(cls, error_kind: ErrorKind, default_value: T) -> EvaluationDetail[T]:
        return cls(default_value, None, EvaluationReason.error(error_kind))
