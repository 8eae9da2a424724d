"""フラグ評価エンジン"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from . import operators
from .bucketing import bucket_user, variation_index_for_user
from .events import EventFactory, FeatureRequestEvent
from .models import Clause, FeatureFlag, Operator, Rule, Segment, SegmentRule
from .reason import ErrorKind, EvaluationDetail, EvaluationReason
from .user import User
from .value import FlagValue

logger = logging.getLogger(__name__)

FlagGetter = Callable[[str], Awaitable[FeatureFlag | None]]
SegmentGetter = Callable[[str], Awaitable[Segment | None]]


@dataclass(frozen=True)
class EvalResult:
    """評価結果と、評価中に発生した前提条件フラグのイベント。"""

    detail: EvaluationDetail[FlagValue]
    prerequisite_events: tuple[FeatureRequestEvent, ...] = field(default=())


class Evaluator:
    """フラグをユーザーに対して評価する。

    評価は読み取り専用で、複数のコルーチンから同時に呼び出せる。
    評価中のエラーは例外ではなく ERROR 理由として返す。
    """

    def __init__(self, get_flag: FlagGetter, get_segment: SegmentGetter) -> None:
        self._get_flag = get_flag
        self._get_segment = get_segment

    async def evaluate(
        self, flag: FeatureFlag, user: User, event_factory: EventFactory | None = None
    ) -> EvalResult:
        """フラグを評価する。event_factory が None なら前提条件イベントを生成しない。"""
        events: list[FeatureRequestEvent] = []
        detail = await self._evaluate(flag, user, event_factory, events, {flag.key})
        return EvalResult(detail, tuple(events))

    async def _evaluate(
        self,
        flag: FeatureFlag,
        user: User,
        event_factory: EventFactory | None,
        events: list[FeatureRequestEvent],
        in_progress: set[str],
    ) -> EvaluationDetail[FlagValue]:
        if not flag.on:
            return _off_value(flag, EvaluationReason.off())

        failed = await self._check_prerequisites(flag, user, event_factory, events, in_progress)
        if failed is not None:
            return _off_value(flag, failed)

        if user.key is not None:
            for target in flag.targets:
                if user.key in target.values:
                    return _variation(flag, target.variation, EvaluationReason.target_match())

        for index, rule in enumerate(flag.rules):
            if await self._rule_matches(rule, user):
                return _variation(
                    flag,
                    variation_index_for_user(rule, user, flag.key, flag.salt),
                    EvaluationReason.rule_match(index, rule.id),
                )

        return _variation(
            flag,
            variation_index_for_user(flag.fallthrough, user, flag.key, flag.salt),
            EvaluationReason.fallthrough(),
        )

    async def _check_prerequisites(
        self,
        flag: FeatureFlag,
        user: User,
        event_factory: EventFactory | None,
        events: list[FeatureRequestEvent],
        in_progress: set[str],
    ) -> EvaluationReason | None:
        """前提条件を順に評価し、失敗した場合はその理由を返す。"""
        for prereq in flag.prerequisites:
            if prereq.key in in_progress:
                logger.warning(
                    "Prerequisite cycle detected; treating prerequisite as missing",
                    extra={"flag_key": flag.key, "prerequisite_key": prereq.key},
                )
                prereq_flag = None
            else:
                prereq_flag = await self._safe_get_flag(prereq.key)

            ok = False
            if prereq_flag is None:
                logger.warning(
                    "Missing prerequisite flag",
                    extra={"flag_key": flag.key, "prerequisite_key": prereq.key},
                )
            else:
                in_progress.add(prereq_flag.key)
                try:
                    prereq_detail = await self._evaluate(
                        prereq_flag, user, event_factory, events, in_progress
                    )
                finally:
                    in_progress.discard(prereq_flag.key)
                ok = prereq_flag.on and prereq_detail.variation_index == prereq.variation
                if event_factory is not None:
                    events.append(
                        event_factory.new_prerequisite_event(prereq_flag, user, prereq_detail, flag)
                    )
            if not ok:
                return EvaluationReason.prerequisite_failed(prereq.key)
        return None

    async def _rule_matches(self, rule: Rule, user: User) -> bool:
        for clause in rule.clauses:
            if not await self._clause_matches(clause, user):
                return False
        return True

    async def _clause_matches(self, clause: Clause, user: User) -> bool:
        if clause.op != Operator.SEGMENT_MATCH:
            return clause_matches_no_segments(clause, user)
        matched = False
        for value in clause.values:
            segment_key = value.string_value()
            if segment_key is None:
                continue
            segment = await self._safe_get_segment(segment_key)
            if segment is not None and segment_matches_user(segment, user):
                matched = True
                break
        return _maybe_negate(clause, matched)

    async def _safe_get_flag(self, key: str) -> FeatureFlag | None:
        try:
            return await self._get_flag(key)
        except Exception as e:
            logger.error("Failed to get flag", extra={"flag_key": key, "error": str(e)})
            return None

    async def _safe_get_segment(self, key: str) -> Segment | None:
        try:
            return await self._get_segment(key)
        except Exception as e:
            logger.error("Failed to get segment", extra={"segment_key": key, "error": str(e)})
            return None


def clause_matches_no_segments(clause: Clause, user: User) -> bool:
    """segmentMatch 以外の Clause をユーザーに適用する。

    属性が無い場合は negate に関わらず False。属性がリストの場合は
    いずれかの要素がマッチすればマッチとする。
    """
    user_value = user.get_value_for_evaluation(clause.attribute)
    if user_value.is_null() or user_value.is_object():
        return False
    if user_value.is_array():
        for element in user_value.values():
            if element.is_array() or element.is_object():
                return False
            if _match_any(clause, element):
                return _maybe_negate(clause, True)
        return _maybe_negate(clause, False)
    return _maybe_negate(clause, _match_any(clause, user_value))


def segment_matches_user(segment: Segment, user: User) -> bool:
    """included > excluded > ルールの順でセグメント所属を判定する。"""
    if user.key is None:
        return False
    if user.key in segment.included:
        return True
    if user.key in segment.excluded:
        return False
    return any(_segment_rule_matches(rule, user, segment) for rule in segment.rules)


def _segment_rule_matches(rule: SegmentRule, user: User, segment: Segment) -> bool:
    if not all(clause_matches_no_segments(c, user) for c in rule.clauses):
        return False
    if rule.weight is None:
        return True
    bucket = bucket_user(user, segment.key, rule.bucket_by or "key", segment.salt)
    return bucket < rule.weight / 100000.0


def _match_any(clause: Clause, user_value: FlagValue) -> bool:
    return any(operators.apply(clause.op, user_value, v) for v in clause.values)


def _maybe_negate(clause: Clause, matched: bool) -> bool:
    return not matched if clause.negate else matched


def _variation(
    flag: FeatureFlag, index: int | None, reason: EvaluationReason
) -> EvaluationDetail[FlagValue]:
    if index is None or index < 0 or index >= len(flag.variations):
        logger.error(
            "Invalid variation index in flag",
            extra={"flag_key": flag.key, "variation_index": index},
        )
        return EvaluationDetail.error(ErrorKind.MALFORMED_FLAG, FlagValue.null())
    return EvaluationDetail(flag.variations[index], index, reason)


def _off_value(flag: FeatureFlag, reason: EvaluationReason) -> EvaluationDetail[FlagValue]:
    if flag.off_variation is None:
        return EvaluationDetail(FlagValue.null(), None, reason)
    return _variation(flag, flag.off_variation, reason)
