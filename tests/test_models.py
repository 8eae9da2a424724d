"""データモデル・評価理由・ユーザーのユニットテスト"""

from k1s0_featureflag_client import (
    ErrorKind,
    EvaluationDetail,
    EvaluationReason,
    FeatureFlag,
    FlagValue,
    Operator,
    ReasonKind,
    Segment,
    User,
)


def test_feature_flag_from_dict() -> None:
    """API 形式の辞書から FeatureFlag を生成できること。"""
    flag = FeatureFlag.from_dict({
        "key": "flag",
        "version": 3,
        "on": True,
        "prerequisites": [{"key": "p", "variation": 1}],
        "targets": [{"values": ["a", "b"], "variation": 0}],
        "rules": [{
            "id": "r",
            "clauses": [{"attribute": "email", "op": "unknownOp", "values": ["x"]}],
            "rollout": {"variations": [{"variation": 0, "weight": 100000}], "bucketBy": "email"},
            "trackEvents": True,
        }],
        "fallthrough": {"variation": 1},
        "offVariation": 0,
        "variations": [True, False],
        "salt": "s",
        "trackEventsFallthrough": True,
        "debugEventsUntilDate": 1000,
        "clientSide": True,
    })
    assert flag.version == 3
    assert flag.prerequisites[0].key == "p"
    assert flag.targets[0].values == frozenset({"a", "b"})
    assert flag.rules[0].clauses[0].op is None
    assert flag.rules[0].rollout is not None
    assert flag.rules[0].rollout.bucket_by == "email"
    assert flag.rules[0].track_events is True
    assert flag.variations == (FlagValue(True), FlagValue(False))
    assert flag.client_side is True
    assert flag.debug_events_until_date == 1000


def test_feature_flag_to_dict_round_trip() -> None:
    """to_dict の結果から同じ FeatureFlag を復元できること。"""
    flag = FeatureFlag.from_dict({
        "key": "flag",
        "version": 2,
        "on": True,
        "rules": [{"clauses": [{"attribute": "key", "op": "in", "values": ["u"]}],
                   "variation": 0}],
        "fallthrough": {"variation": 0},
        "variations": [{"a": 1}],
    })
    assert FeatureFlag.from_dict(flag.to_dict()) == flag
    assert flag.rules[0].clauses[0].op == Operator.IN


def test_segment_from_dict() -> None:
    """Segment を辞書から生成できること。"""
    segment = Segment.from_dict({
        "key": "seg",
        "version": 4,
        "included": ["a"],
        "excluded": ["b"],
        "rules": [{"clauses": [], "weight": 5000, "bucketBy": "email"}],
        "salt": "x",
    })
    assert segment.included == frozenset({"a"})
    assert segment.rules[0].weight == 5000
    assert Segment.from_dict(segment.to_dict()) == segment


def test_reason_singletons_and_interning() -> None:
    """固定の理由は単一インスタンスで、ルール・前提条件の理由も再利用されること。"""
    assert EvaluationReason.off() is EvaluationReason.off()
    assert EvaluationReason.fallthrough() is EvaluationReason.fallthrough()
    assert EvaluationReason.target_match() is EvaluationReason.target_match()
    assert EvaluationReason.error(ErrorKind.WRONG_TYPE) is EvaluationReason.error(
        ErrorKind.WRONG_TYPE
    )
    assert EvaluationReason.rule_match(2, "id") is EvaluationReason.rule_match(2, "id")
    assert EvaluationReason.prerequisite_failed("p") is EvaluationReason.prerequisite_failed("p")


def test_reason_to_dict_and_back() -> None:
    """理由の辞書表現。"""
    reason = EvaluationReason.rule_match(1, "r1")
    assert reason.to_dict() == {"kind": "RULE_MATCH", "ruleIndex": 1, "ruleId": "r1"}
    assert EvaluationReason.from_dict(reason.to_dict()) is reason
    error = EvaluationReason.error(ErrorKind.FLAG_NOT_FOUND)
    assert error.to_dict() == {"kind": "ERROR", "errorKind": "FLAG_NOT_FOUND"}
    assert EvaluationReason.from_dict({"kind": "OFF"}) is EvaluationReason.off()
    assert str(EvaluationReason.prerequisite_failed("p")) == "PREREQUISITE_FAILED(p)"


def test_evaluation_detail_error() -> None:
    """エラー結果は既定値とエラー理由を持つこと。"""
    detail = EvaluationDetail.error(ErrorKind.CLIENT_NOT_READY, "dflt")
    assert detail.value == "dflt"
    assert detail.is_default_value()
    assert detail.reason.kind == ReasonKind.ERROR
    assert detail.reason.error_kind == ErrorKind.CLIENT_NOT_READY


def test_user_builtin_attributes_shadow_custom() -> None:
    """組み込み属性は同名のカスタム属性より優先されること。"""
    user = User(key="u", email="real@example.com", custom={"email": "fake", "plan": "pro"})
    assert user.get_value_for_evaluation("email") == FlagValue("real@example.com")
    assert user.get_value_for_evaluation("plan") == FlagValue("pro")
    assert user.get_value_for_evaluation("firstName").is_null()
    assert user.get_value_for_evaluation("missing").is_null()


def test_user_dict_round_trip() -> None:
    """User の辞書表現から同じユーザーを復元できること。"""
    user = User(
        key="u",
        first_name="Ann",
        anonymous=True,
        custom={"groups": ["a", "b"]},
        private_attribute_names=frozenset({"firstName"}),
    )
    data = user.to_dict()
    assert data["firstName"] == "Ann"
    assert data["privateAttributeNames"] == ["firstName"]
    assert User.from_dict(data) == user
    assert User.from_dict({}).key is None
