"""エンジン設定 (pydantic BaseModel) と YAML ローダー"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import FeatureFlagError, FeatureFlagErrorCodes


class CacheSection(BaseModel):
    """評価キャッシュ設定。"""

    ttl_seconds: float = Field(default=300.0, gt=0)
    max_entries: int = Field(default=10_000, ge=1)
    # 0 で自動リフレッシュ無効
    auto_refresh_seconds: float = Field(default=0.0, ge=0)
    # 評価エラー結果の保持期間。0 でキャッシュしない
    error_ttl_seconds: float = Field(default=5.0, ge=0)


class EvaluationSection(BaseModel):
    """評価設定。"""

    lookup_timeout_seconds: float = Field(default=2.0, gt=0)
    max_batch_size: int = Field(default=50, ge=1)
    default_environment: str = "production"


class RegistrySection(BaseModel):
    """フラグレジストリ接続設定。"""

    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = Field(default=5.0, gt=0)
    # 0 で変更ポーリング無効
    poll_interval_seconds: float = Field(default=30.0, ge=0)


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    stream: Literal["stdout", "stderr"] = "stdout"
    # False なら start 時に structlog を設定しない (組み込み先の設定を使う)
    configure: bool = True


class EngineConfig(BaseModel):
    """エンジン設定全体。"""

    cache: CacheSection = Field(default_factory=CacheSection)
    evaluation: EvaluationSection = Field(default_factory=EvaluationSection)
    registry: RegistrySection = Field(default_factory=RegistrySection)
    log: LogSection = Field(default_factory=LogSection)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """base と override をディープマージして新しい辞書を返す。

    override の値が優先される。リストは置換（マージしない）。
    """
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_ERROR,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_ERROR,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_ERROR,
            message=f"Config root must be a mapping: {path}",
        )
    return data


def load_config(base_path: Path, env_path: Path | None = None) -> EngineConfig:
    """設定ファイルを読み込んで EngineConfig を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースにマージ。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.CONFIG_ERROR,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
