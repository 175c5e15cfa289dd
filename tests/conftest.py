"""テスト共通のレジストリ実装とフィクスチャ"""

import asyncio
from collections import Counter
from typing import Iterable

import pytest
from featureflag_engine import (
    EvaluationContext,
    FeatureFlag,
    FlagDependency,
    FlagStatus,
    FlagType,
    FlagValue,
    FlagValueType,
    InMemoryFlagRegistry,
    build_context,
)


def make_flag(
    key: str,
    default: FlagValueType = False,
    flag_type: FlagType = FlagType.BOOLEAN,
    dependencies: Iterable[str | FlagDependency] = (),
    tenant_id: str | None = None,
    status: FlagStatus = FlagStatus.ACTIVE,
    environments: Iterable[str] = (),
    target_users: Iterable[str] = (),
    target_segments: Iterable[str] = (),
) -> FeatureFlag:
    return FeatureFlag(
        id=f"id-{key}",
        key=key,
        name=key.replace("_", " ").title(),
        flag_type=flag_type,
        default_value=default,
        is_global=tenant_id is None,
        tenant_id=tenant_id,
        dependencies=tuple(
            FlagDependency(d) if isinstance(d, str) else d for d in dependencies
        ),
        status=status,
        environments=tuple(environments),
        target_users=tuple(target_users),
        target_segments=tuple(target_segments),
    )


def make_value(
    key: str,
    environment: str = "production",
    enabled: bool = True,
    rollout: float = 100.0,
    value: FlagValueType = True,
    conditions: dict | None = None,
    tenant_id: str | None = None,
) -> FlagValue:
    return FlagValue(
        flag_id=f"id-{key}",
        environment=environment,
        enabled=enabled,
        rollout_percentage=rollout,
        value=value,
        conditions=conditions,
        tenant_id=tenant_id,
    )


class CountingRegistry(InMemoryFlagRegistry):
    """呼び出し回数を記録するインメモリレジストリ。"""

    def __init__(self) -> None:
        super().__init__()
        self.calls: Counter[str] = Counter()
        self.value_calls: Counter[str] = Counter()
        self.batches: list[list[str]] = []

    async def get_flag(self, key: str) -> FeatureFlag | None:
        self.calls["get_flag"] += 1
        return await super().get_flag(key)

    async def get_flag_value(
        self, flag_id: str, environment: str, tenant_id: str | None = None
    ) -> FlagValue | None:
        self.calls["get_flag_value"] += 1
        self.value_calls[flag_id] += 1
        return await super().get_flag_value(flag_id, environment, tenant_id)

    async def get_flags_batch(self, keys: Iterable[str]) -> dict[str, FeatureFlag]:
        key_list = list(keys)
        self.calls["get_flags_batch"] += 1
        self.batches.append(key_list)
        return await super().get_flags_batch(key_list)


class GatedRegistry(CountingRegistry):
    """gate が開くまでレジストリ呼び出しを止めるレジストリ。"""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def get_flag_value(
        self, flag_id: str, environment: str, tenant_id: str | None = None
    ) -> FlagValue | None:
        self.entered.set()
        await self.gate.wait()
        return await super().get_flag_value(flag_id, environment, tenant_id)

    async def get_flags_batch(self, keys: Iterable[str]) -> dict[str, FeatureFlag]:
        self.entered.set()
        await self.gate.wait()
        return await super().get_flags_batch(keys)


class FakeClock:
    """手動で進める単調時計。"""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def registry() -> CountingRegistry:
    return CountingRegistry()


@pytest.fixture
def gated_registry() -> GatedRegistry:
    return GatedRegistry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ctx() -> EvaluationContext:
    return build_context("production", user_id="u1", tenant_id="t1")
