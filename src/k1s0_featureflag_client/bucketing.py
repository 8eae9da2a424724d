"""パーセンテージロールアウトのバケット計算"""

from __future__ import annotations

import hashlib

from .models import VariationOrRollout
from .user import User

_LONG_SCALE = float(0xFFFFFFFFFFFFFFF)


def bucket_user(user: User, key: str, attribute: str, salt: str) -> float:
    """ユーザーを [0, 1) のバケット値に割り当てる。

    sha1("{key}.{salt}.{bucketing_key}") の先頭 15 桁（16 進）を 0xFFFFFFFFFFFFFFF で割る。
    属性が未設定またはバケット分けできない値ならユーザーキーを使う。
    キーも無ければ 0 を返す。
    """
    id_hash = _bucketable_string(user, attribute)
    if id_hash is None:
        id_hash = user.key
    if id_hash is None:
        return 0.0
    if user.secondary is not None:
        id_hash = f"{id_hash}.{user.secondary}"
    digest = hashlib.sha1(f"{key}.{salt}.{id_hash}".encode()).hexdigest()
    return int(digest[:15], 16) / _LONG_SCALE


def _bucketable_string(user: User, attribute: str) -> str | None:
    value = user.get_value_for_evaluation(attribute)
    if value.is_string():
        return value.string_value()
    if value.is_int():
        return str(value.int_value())
    return None


def variation_index_for_user(
    vr: VariationOrRollout, user: User, key: str, salt: str
) -> int | None:
    """固定バリエーションまたはロールアウトからバリエーション番号を決める。

    どちらも指定されていなければ None。
    """
    if vr.variation is not None:
        return vr.variation
    rollout = vr.rollout
    if rollout is None or not rollout.variations:
        return None
    bucket = bucket_user(user, key, rollout.bucket_by or "key", salt)
    total = 0.0
    for wv in rollout.variations:
        total += wv.weight / 100000.0
        if bucket < total:
            return wv.variation
    # 重みの合計が 100000 未満の場合は最後のバリエーション
    return rollout.variations[-1].variation
