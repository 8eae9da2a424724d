"""評価対象ユーザーモデル"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .value import FlagValue

# 組み込み属性名 -> User のフィールド名
BUILTIN_ATTRIBUTES: dict[str, str] = {
    "key": "key",
    "secondary": "secondary",
    "ip": "ip",
    "email": "email",
    "name": "name",
    "avatar": "avatar",
    "firstName": "first_name",
    "lastName": "last_name",
    "country": "country",
    "anonymous": "anonymous",
}

# プライベート属性として秘匿できない属性
NON_PRIVATE_ATTRIBUTES: frozenset[str] = frozenset({"key", "anonymous"})


@dataclass(frozen=True)
class User:
    """フラグ評価対象のユーザー。

    key はターゲティングとロールアウトのバケット分けに使う一意な識別子。
    custom には文字列・数値・真偽値、またはそれらのリストを格納する。
    """

    key: str | None
    secondary: str | None = None
    ip: str | None = None
    email: str | None = None
    name: str | None = None
    avatar: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    country: str | None = None
    anonymous: bool | None = None
    custom: dict[str, Any] = field(default_factory=dict)
    private_attribute_names: frozenset[str] = field(default_factory=frozenset)

    def get_value_for_evaluation(self, attribute: str) -> FlagValue:
        """属性値を FlagValue で返す。組み込み属性がカスタム属性より優先される。"""
        field_name = BUILTIN_ATTRIBUTES.get(attribute)
        if field_name is not None:
            value = getattr(self, field_name)
            if value is not None:
                return FlagValue(value)
            return FlagValue.null()
        if attribute in self.custom:
            return FlagValue.of(self.custom[attribute])
        return FlagValue.null()

    def to_dict(self) -> dict[str, Any]:
        """秘匿処理なしの辞書表現を返す。"""
        data: dict[str, Any] = {}
        for attr, field_name in BUILTIN_ATTRIBUTES.items():
            value = getattr(self, field_name)
            if value is not None:
                data[attr] = value
        if self.custom:
            data["custom"] = {k: FlagValue.of(v).to_json() for k, v in self.custom.items()}
        if self.private_attribute_names:
            data["privateAttributeNames"] = sorted(self.private_attribute_names)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> User:
        kwargs: dict[str, Any] = {"key": None}
        for attr, field_name in BUILTIN_ATTRIBUTES.items():
            if attr in data:
                kwargs[field_name] = data[attr]
        return cls(
            custom=dict(data.get("custom") or {}),
            private_attribute_names=frozenset(data.get("privateAttributeNames") or ()),
            **kwargs,
        )
