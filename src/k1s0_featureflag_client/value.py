"""フラグ値（JSON 相当の動的型）モデル"""

from __future__ import annotations

import copy
import json
from collections.abc import Iterator
from enum import StrEnum
from typing import Any


class ValueType(StrEnum):
    """FlagValue の型タグ。"""

    NULL = "null"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def _type_of(raw: Any) -> ValueType:
    if raw is None:
        return ValueType.NULL
    # bool は int のサブクラスなので先に判定する
    if isinstance(raw, bool):
        return ValueType.BOOLEAN
    if isinstance(raw, (int, float)):
        return ValueType.NUMBER
    if isinstance(raw, str):
        return ValueType.STRING
    if isinstance(raw, (list, tuple)):
        return ValueType.ARRAY
    if isinstance(raw, dict):
        return ValueType.OBJECT
    raise TypeError(f"unsupported flag value type: {type(raw).__name__}")


def _normalize(raw: Any) -> Any:
    """FlagValue や tuple を含む入力を素の JSON 構造に変換する。"""
    if isinstance(raw, FlagValue):
        return raw.to_json()
    kind = _type_of(raw)
    if kind == ValueType.ARRAY:
        return [_normalize(v) for v in raw]
    if kind == ValueType.OBJECT:
        return {str(k): _normalize(v) for k, v in raw.items()}
    return raw


def _equal(a: Any, b: Any) -> bool:
    ta, tb = _type_of(a), _type_of(b)
    if ta != tb:
        return False
    if ta == ValueType.ARRAY:
        return len(a) == len(b) and all(_equal(x, y) for x, y in zip(a, b))
    if ta == ValueType.OBJECT:
        return a.keys() == b.keys() and all(_equal(a[k], b[k]) for k in a)
    return bool(a == b)


def _freeze(raw: Any) -> Any:
    kind = _type_of(raw)
    if kind == ValueType.ARRAY:
        return ("a", tuple(_freeze(v) for v in raw))
    if kind == ValueType.OBJECT:
        return ("o", frozenset((k, _freeze(v)) for k, v in raw.items()))
    if kind == ValueType.NUMBER:
        return ("n", float(raw))
    return (kind.value, raw)


class FlagValue:
    """フラグのバリエーション値やユーザー属性値を表す不変のタグ付き値。

    型ごとの取り出しメソッドは例外を送出せず、型が合わない場合は既定値を返す。
    型の確認は ``type`` / ``is_xxx`` で行う。
    """

    __slots__ = ("_raw", "_type")

    def __init__(self, raw: Any = None) -> None:
        normalized = _normalize(raw)
        self._type = _type_of(normalized)
        self._raw = normalized

    @classmethod
    def of(cls, raw: Any) -> FlagValue:
        """任意の JSON 互換値から FlagValue を生成する。FlagValue はそのまま返す。"""
        if isinstance(raw, FlagValue):
            return raw
        return cls(raw)

    @classmethod
    def null(cls) -> FlagValue:
        return _NULL

    @classmethod
    def parse(cls, text: str) -> FlagValue:
        """JSON 文字列を解析する。"""
        return cls(json.loads(text))

    @property
    def type(self) -> ValueType:
        return self._type

    def is_null(self) -> bool:
        return self._type == ValueType.NULL

    def is_bool(self) -> bool:
        return self._type == ValueType.BOOLEAN

    def is_number(self) -> bool:
        return self._type == ValueType.NUMBER

    def is_int(self) -> bool:
        """整数として表現できる数値なら True（2.0 も含む）。"""
        if self._type != ValueType.NUMBER:
            return False
        return isinstance(self._raw, int) or float(self._raw).is_integer()

    def is_string(self) -> bool:
        return self._type == ValueType.STRING

    def is_array(self) -> bool:
        return self._type == ValueType.ARRAY

    def is_object(self) -> bool:
        return self._type == ValueType.OBJECT

    def bool_value(self) -> bool:
        return self._raw if self._type == ValueType.BOOLEAN else False

    def int_value(self) -> int:
        """数値を整数に切り捨てて返す。数値でなければ 0。"""
        if self._type != ValueType.NUMBER:
            return 0
        return int(self._raw)

    def float_value(self) -> float:
        if self._type != ValueType.NUMBER:
            return 0.0
        return float(self._raw)

    def string_value(self) -> str | None:
        return self._raw if self._type == ValueType.STRING else None

    def values(self) -> Iterator[FlagValue]:
        """配列の要素を FlagValue として列挙する。配列以外は空。"""
        if self._type == ValueType.ARRAY:
            for item in self._raw:
                yield FlagValue(item)

    def keys(self) -> list[str]:
        return list(self._raw.keys()) if self._type == ValueType.OBJECT else []

    def get(self, key: str) -> FlagValue:
        """オブジェクトのプロパティを返す。存在しなければ null。"""
        if self._type == ValueType.OBJECT and key in self._raw:
            return FlagValue(self._raw[key])
        return _NULL

    def size(self) -> int:
        if self._type in (ValueType.ARRAY, ValueType.OBJECT):
            return len(self._raw)
        return 0

    def to_json(self) -> Any:
        """素の Python JSON 構造（コピー）を返す。"""
        if self._type in (ValueType.ARRAY, ValueType.OBJECT):
            return copy.deepcopy(self._raw)
        return self._raw

    def to_json_string(self) -> str:
        return json.dumps(self._raw, separators=(",", ":"))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FlagValue):
            return NotImplemented
        return _equal(self._raw, other._raw)

    def __hash__(self) -> int:
        return hash(_freeze(self._raw))

    def __repr__(self) -> str:
        return f"FlagValue({self.to_json_string()})"


_NULL = FlagValue(None)
