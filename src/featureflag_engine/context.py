"""評価コンテキストの組み立て"""

from __future__ import annotations

from typing import Any, Mapping

from .exceptions import FeatureFlagError, FeatureFlagErrorCodes
from .models import EvaluationContext

# 呼び出し元の ID 情報からユーザープロパティへの対応表
_IDENTITY_PROPERTIES: dict[str, str] = {
    "email": "email",
    "subscription_plan": "plan",
    "role": "role",
    "company": "company",
    "created_at": "created_at",
    "last_login": "last_login",
}


def _clean(properties: Mapping[str, Any] | None) -> dict[str, Any]:
    if not properties:
        return {}
    return {k: v for k, v in properties.items() if v is not None}


def build_context(
    environment: str | None,
    user_id: str | None = None,
    tenant_id: str | None = None,
    anonymous_id: str | None = None,
    user_properties: Mapping[str, Any] | None = None,
    custom_properties: Mapping[str, Any] | None = None,
) -> EvaluationContext:
    """EvaluationContext を組み立てる。

    environment 以外の欠損フィールドは空として扱い、エラーにしない。

    Raises:
        FeatureFlagError: environment が未指定の場合 (MISSING_ENVIRONMENT)
    """
    if environment is None or not environment.strip():
        raise FeatureFlagError(
            code=FeatureFlagErrorCodes.MISSING_ENVIRONMENT,
            message="environment is required to evaluate feature flags",
        )
    return EvaluationContext(
        environment=environment.strip(),
        user_id=user_id or None,
        tenant_id=tenant_id or None,
        anonymous_id=anonymous_id or None,
        user_properties=_clean(user_properties),
        custom_properties=_clean(custom_properties),
    )


def context_from_identity(
    identity: Mapping[str, Any] | None,
    environment: str | None,
    custom_properties: Mapping[str, Any] | None = None,
) -> EvaluationContext:
    """認証済みユーザー情報の辞書からコンテキストを組み立てる。

    identity が None の場合は匿名コンテキストになる。
    """
    identity = identity or {}
    user_properties = {
        prop: identity.get(source) for source, prop in _IDENTITY_PROPERTIES.items()
    }
    user_properties.update(identity.get("properties") or {})
    return build_context(
        environment,
        user_id=_as_str(identity.get("id")),
        tenant_id=_as_str(identity.get("tenant_id")),
        anonymous_id=_as_str(identity.get("session_id")),
        user_properties=user_properties,
        custom_properties=custom_properties,
    )


def _as_str(value: Any) -> str | None:
    return None if value is None else str(value)
