"""設定ローダーのユニットテスト"""

from datetime import timedelta
from pathlib import Path

import pytest
from k1s0_featureflag_client import (
    FeatureFlagClientError,
    FeatureFlagClientErrorCodes,
    StaleValuesPolicy,
    load_config,
)
from k1s0_featureflag_client.config import Config, overlay_sections
from pydantic import ValidationError


def test_load_minimal_config(tmp_path: Path) -> None:
    """最小設定ファイルの読み込み。"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("sdk_key: sdk-123\n")
    config = load_config(config_file)
    assert config.sdk_key == "sdk-123"
    assert config.stream is True
    assert config.poll_interval == 30.0
    assert config.events.capacity == 10000
    assert config.events.flush_interval == 5.0
    assert config.http.connect_timeout == 2.0


def test_load_with_env_override(tmp_path: Path) -> None:
    """環境別設定のマージ確認。"""
    base_file = tmp_path / "base.yaml"
    base_file.write_text(
        "sdk_key: base\nevents:\n  capacity: 500\n  flush_interval: 2\nstream: true\n"
    )
    env_file = tmp_path / "prod.yaml"
    env_file.write_text("stream: false\nevents:\n  flush_interval: 10\n")
    config = load_config(base_file, env_file)
    assert config.sdk_key == "base"
    assert config.stream is False
    assert config.events.capacity == 500
    assert config.events.flush_interval == 10


def test_load_env_not_exists(tmp_path: Path) -> None:
    """env_path が存在しない場合は base のみ使用。"""
    base_file = tmp_path / "base.yaml"
    base_file.write_text("sdk_key: fallback\n")
    config = load_config(base_file, tmp_path / "nonexistent.yaml")
    assert config.sdk_key == "fallback"


def test_load_file_not_found(tmp_path: Path) -> None:
    """存在しないファイルで CONFIG_ERROR が発生すること。"""
    with pytest.raises(FeatureFlagClientError) as exc_info:
        load_config(tmp_path / "missing.yaml")
    assert exc_info.value.code == FeatureFlagClientErrorCodes.CONFIG_ERROR


def test_load_invalid_yaml(tmp_path: Path) -> None:
    """不正 YAML で CONFIG_ERROR が発生すること。"""
    bad_file = tmp_path / "bad.yaml"
    bad_file.write_text("sdk_key: {invalid: yaml: content:\n")
    with pytest.raises(FeatureFlagClientError) as exc_info:
        load_config(bad_file)
    assert exc_info.value.code == FeatureFlagClientErrorCodes.CONFIG_ERROR


@pytest.mark.parametrize(
    "content",
    [
        "stream: true\n",
        "sdk_key: k\npoll_interval: 5\n",
        "sdk_key: k\nevents:\n  capacity: 0\n",
        "sdk_key: k\nlog:\n  format: xml\n",
        "sdk_key: \"\"\n",
        "sdk_key: k\nbase_uri: ftp://flags.example.com\n",
        "sdk_key: k\nevents_uri: /relative/path\n",
        "sdk_key: k\nfile_paths: [flags.txt]\n",
        "sdk_key: k\nevents:\n  diagnostic_recording_interval: 10\n",
        "- sdk_key\n",
    ],
)
def test_load_validation_error(tmp_path: Path, content: str) -> None:
    """バリデーション失敗で CONFIG_ERROR が発生すること。"""
    bad_config = tmp_path / "bad_config.yaml"
    bad_config.write_text(content)
    with pytest.raises(FeatureFlagClientError) as exc_info:
        load_config(bad_config)
    assert exc_info.value.code == FeatureFlagClientErrorCodes.CONFIG_ERROR


def test_cache_section_to_cache_config(tmp_path: Path) -> None:
    """キャッシュ設定が DataStoreCacheConfig に変換されること。"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "sdk_key: k\ncache:\n  ttl_seconds: 30\n  stale_values_policy: refresh_async\n"
    )
    cache = load_config(config_file).cache.to_cache_config()
    assert cache.ttl == timedelta(seconds=30)
    assert cache.stale_values_policy == StaleValuesPolicy.REFRESH_ASYNC
    config_file.write_text("sdk_key: k\ncache:\n  ttl_seconds: null\n")
    assert load_config(config_file).cache.to_cache_config().is_infinite()


def test_service_uris_drop_trailing_slash() -> None:
    """サービス URI の末尾の "/" が取り除かれること。"""
    config = Config(
        sdk_key="k",
        base_uri="https://flags.example.com/",
        stream_uri="https://stream.example.com/sdk/",
        events_uri="http://events.example.com:8080",
    )
    assert config.base_uri == "https://flags.example.com"
    assert config.stream_uri == "https://stream.example.com/sdk"
    assert config.events_uri == "http://events.example.com:8080"


def test_invalid_service_uri_is_rejected() -> None:
    """http(s) 以外やホストの無い URI は拒否されること。"""
    with pytest.raises(ValidationError):
        Config(sdk_key="k", stream_uri="flags.example.com")
    with pytest.raises(ValidationError):
        Config(sdk_key="k", base_uri="http://")


def test_file_paths_resolve_relative_to_config_file(tmp_path: Path) -> None:
    """file_paths の相対パスは記述した設定ファイルの場所を起点に解決されること。"""
    env_dir = tmp_path / "env"
    env_dir.mkdir()
    base_file = tmp_path / "base.yaml"
    base_file.write_text("sdk_key: k\nfile_paths: [flags.json, /data/segments.yaml]\n")
    config = load_config(base_file)
    assert config.file_paths == [str(tmp_path / "flags.json"), "/data/segments.yaml"]

    env_file = env_dir / "dev.yaml"
    env_file.write_text("file_paths: [local.yml]\n")
    config = load_config(base_file, env_file)
    assert config.file_paths == [str(env_dir / "local.yml")]


def test_empty_config_file_requires_sdk_key(tmp_path: Path) -> None:
    """空の設定ファイルは sdk_key 不足で CONFIG_ERROR になること。"""
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    with pytest.raises(FeatureFlagClientError) as exc_info:
        load_config(empty)
    assert exc_info.value.code == FeatureFlagClientErrorCodes.CONFIG_ERROR


def test_overlay_sections_replaces_lists() -> None:
    """セクションはキー単位で上書きし、リストは置換すること。"""
    base = {"sdk_key": "k", "events": {"capacity": 5, "private_attribute_names": ["a"]}}
    override = {"events": {"private_attribute_names": ["b"]}, "stream": False}
    assert overlay_sections(base, override) == {
        "sdk_key": "k",
        "events": {"capacity": 5, "private_attribute_names": ["b"]},
        "stream": False,
    }
    assert base["events"] == {"capacity": 5, "private_attribute_names": ["a"]}
