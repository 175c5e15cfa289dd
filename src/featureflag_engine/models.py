"""featureflag_engine データモデル"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Mapping

from .exceptions import FeatureFlagError, FeatureFlagErrorCodes

FlagValueType = bool | str | int | float | dict[str, Any] | list[Any] | None


class FlagType(StrEnum):
    """フラグ値の型。値のタグ付きユニオンの判別子として使う。"""

    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    JSON = "json"

    def validate(self, value: Any) -> FlagValueType:
        """値がこの型に適合するか検証して返す。

        Raises:
            FeatureFlagError: 型が一致しない場合 (INVALID_FLAG)
        """
        if self is FlagType.BOOLEAN:
            ok = isinstance(value, bool)
        elif self is FlagType.STRING:
            ok = isinstance(value, str)
        elif self is FlagType.NUMBER:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        else:
            ok = _is_json_value(value)
        if not ok:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"value {value!r} does not match flag type '{self.value}'",
            )
        return value


def _is_json_value(value: Any) -> bool:
    if value is None or isinstance(value, (bool, int, float, str)):
        return True
    if isinstance(value, list):
        return all(_is_json_value(v) for v in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and _is_json_value(v) for k, v in value.items())
    return False


class FlagStatus(StrEnum):
    """フラグのライフサイクルステータス。"""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class DependencyType(StrEnum):
    """フラグ依存関係の種別。"""

    REQUIRES = "requires"
    CONFLICTS = "conflicts"
    # 書き込み時のみ検証される。評価時は無視する。
    IMPLIES = "implies"


class EvaluationReason(StrEnum):
    """評価結果の理由。"""

    DEFAULT = "DEFAULT"
    RULE_MATCH = "RULE_MATCH"
    ROLLOUT_INCLUDED = "ROLLOUT_INCLUDED"
    ROLLOUT_EXCLUDED = "ROLLOUT_EXCLUDED"
    DEPENDENCY_NOT_MET = "DEPENDENCY_NOT_MET"
    DISABLED = "DISABLED"
    EVALUATION_ERROR = "EVALUATION_ERROR"


@dataclass(frozen=True)
class FlagDependency:
    """前提フラグへの依存。"""

    flag_key: str
    dependency_type: DependencyType = DependencyType.REQUIRES
    condition_value: FlagValueType = None

    @classmethod
    def from_raw(cls, raw: str | Mapping[str, Any]) -> FlagDependency:
        """レジストリのレコード (キー文字列または辞書) から生成する。"""
        if isinstance(raw, str):
            return cls(flag_key=raw)
        try:
            return cls(
                flag_key=raw["flag_key"],
                dependency_type=DependencyType(raw.get("dependency_type", "requires")),
                condition_value=raw.get("condition_value"),
            )
        except (KeyError, ValueError) as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"Malformed dependency record: {raw!r}",
                cause=e,
            ) from e


@dataclass(frozen=True)
class FeatureFlag:
    """フィーチャーフラグ定義。レジストリが所有し、エンジンは読み取り専用。"""

    id: str
    key: str
    flag_type: FlagType = FlagType.BOOLEAN
    default_value: FlagValueType = False
    name: str = ""
    description: str = ""
    is_global: bool = True
    tenant_id: str | None = None
    dependencies: tuple[FlagDependency, ...] = ()
    status: FlagStatus = FlagStatus.ACTIVE
    environments: tuple[str, ...] = ()
    # 空でなければ列挙したユーザーだけが対象
    target_users: tuple[str, ...] = ()
    # 空でなければいずれかのセグメントに一致する対象だけが対象
    target_segments: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.flag_type.validate(self.default_value)
        if self.is_global and self.tenant_id is not None:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"Global flag '{self.key}' must not have a tenant_id",
            )
        if not self.is_global and self.tenant_id is None:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"Tenant flag '{self.key}' requires a tenant_id",
            )
        seen: set[str] = set()
        deduped: list[FlagDependency] = []
        for dep in self.dependencies:
            if dep.flag_key not in seen:
                seen.add(dep.flag_key)
                deduped.append(dep)
        object.__setattr__(self, "dependencies", tuple(deduped))

    @property
    def dependency_keys(self) -> tuple[str, ...]:
        return tuple(dep.flag_key for dep in self.dependencies)

    def applies_to(self, environment: str) -> bool:
        """environments が空なら全環境に適用される。"""
        return not self.environments or environment in self.environments

    @property
    def has_targeting(self) -> bool:
        return bool(self.target_users or self.target_segments)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FeatureFlag:
        """レジストリのレコード辞書から FeatureFlag を生成する。

        Raises:
            FeatureFlagError: レコードが不正な場合 (INVALID_FLAG)
        """
        try:
            tenant_id = data.get("tenant_id")
            return cls(
                id=str(data["id"]),
                key=data["key"],
                flag_type=FlagType(data.get("flag_type", "boolean")),
                default_value=data.get("default_value", False),
                name=data.get("name", ""),
                description=data.get("description") or "",
                is_global=data.get("is_global", tenant_id is None),
                tenant_id=tenant_id,
                dependencies=tuple(
                    FlagDependency.from_raw(d) for d in data.get("dependencies") or []
                ),
                status=FlagStatus(data.get("status", "active")),
                environments=tuple(data.get("environments") or ()),
                target_users=tuple(str(u) for u in data.get("target_users") or ()),
                target_segments=tuple(data.get("target_segments") or ()),
            )
        except FeatureFlagError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"Malformed flag record: {e}",
                cause=e,
            ) from e


@dataclass(frozen=True)
class FlagValue:
    """環境ごとのフラグ上書き設定。"""

    flag_id: str
    environment: str
    enabled: bool = True
    rollout_percentage: float = 100.0
    value: FlagValueType = True
    conditions: Mapping[str, Any] | None = None
    tenant_id: str | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.rollout_percentage <= 100:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=(
                    f"rollout_percentage must be within [0, 100]: {self.rollout_percentage}"
                ),
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], flag_type: FlagType) -> FlagValue:
        """レコード辞書から生成し、値を所有フラグの型で検証する。"""
        try:
            conditions = data.get("conditions")
            if conditions is not None and not isinstance(conditions, Mapping):
                raise TypeError(f"conditions must be a mapping, got {type(conditions).__name__}")
            return cls(
                flag_id=str(data["flag_id"]),
                environment=data["environment"],
                enabled=bool(data.get("enabled", True)),
                rollout_percentage=float(data.get("rollout_percentage", 100)),
                value=flag_type.validate(data.get("value")),
                conditions=conditions or None,
                tenant_id=data.get("tenant_id"),
            )
        except FeatureFlagError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"Malformed flag value record: {e}",
                cause=e,
            ) from e


@dataclass(frozen=True)
class Segment:
    """ユーザーセグメント。条件に一致する対象の集合。

    tenant_id が None のセグメントは全テナントで共有される。
    """

    name: str
    conditions: Mapping[str, Any] = field(default_factory=dict)
    tenant_id: str | None = None
    is_active: bool = True
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Segment:
        """レコード辞書から生成する。

        Raises:
            FeatureFlagError: レコードが不正な場合 (INVALID_FLAG)
        """
        try:
            conditions = data.get("conditions") or {}
            if not isinstance(conditions, Mapping):
                raise TypeError(f"conditions must be a mapping, got {type(conditions).__name__}")
            return cls(
                name=data["name"],
                conditions=conditions,
                tenant_id=data.get("tenant_id"),
                is_active=bool(data.get("is_active", True)),
                description=data.get("description") or "",
            )
        except (KeyError, TypeError) as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"Malformed segment record: {e}",
                cause=e,
            ) from e


@dataclass(frozen=True)
class EvaluationContext:
    """フラグ評価コンテキスト。リクエストごとに生成される。"""

    environment: str
    user_id: str | None = None
    tenant_id: str | None = None
    anonymous_id: str | None = None
    user_properties: Mapping[str, Any] = field(default_factory=dict)
    custom_properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def subject_id(self) -> str | None:
        """ロールアウトのバケット計算に使う識別子。"""
        return self.user_id or self.anonymous_id or None

    def fingerprint(self) -> str:
        """キャッシュキー用のハッシュ。

        プロパティマップは含めない (カーディナリティを抑えるため)。
        anonymous_id はバケット計算に使われる場合 (user_id が無い場合) だけ含める。
        """
        anonymous_id = None if self.user_id else self.anonymous_id
        raw = json.dumps([self.user_id, self.tenant_id, self.environment, anonymous_id])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EvaluationResult:
    """フラグ評価結果。生成後は不変。"""

    flag_key: str
    value: FlagValueType
    enabled: bool
    reason: EvaluationReason
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "flag_key": self.flag_key,
            "value": self.value,
            "enabled": self.enabled,
            "reason": self.reason.value,
        }
        if self.error_code is not None:
            data["error_code"] = self.error_code
        return data


@dataclass(frozen=True)
class FlagChangeSet:
    """レジストリの変更通知 (ポーリング結果)。"""

    cursor: int
    keys: tuple[str, ...] = ()
    reset: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FlagChangeSet:
        return cls(
            cursor=int(data.get("cursor", 0)),
            keys=tuple(data.get("keys") or ()),
            reset=bool(data.get("reset", False)),
        )
