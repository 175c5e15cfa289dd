"""フラグ依存関係の解決"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from .models import (
    DependencyType,
    EvaluationContext,
    EvaluationResult,
    FeatureFlag,
    FlagDependency,
)

logger = structlog.stdlib.get_logger(__name__)

# (flag_key, in_progress) -> (評価結果, 循環を検出したか)
DependencyEvaluator = Callable[
    [str, frozenset[str]], Awaitable[tuple[EvaluationResult, bool]]
]


@dataclass(frozen=True)
class DependencyResolution:
    """依存関係の解決結果。"""

    satisfied: bool
    cycle_detected: bool = False
    failed_key: str | None = None


def dependency_met(dependency: FlagDependency, result: EvaluationResult) -> bool:
    """前提フラグの評価結果が依存条件を満たすか判定する。"""
    matches_value = (
        dependency.condition_value is None or result.value == dependency.condition_value
    )
    if dependency.dependency_type is DependencyType.CONFLICTS:
        return not (result.enabled and matches_value)
    return result.enabled and matches_value


class DependencyResolver:
    """前提フラグを同じコンテキストで再帰的に評価して依存条件を確認する。

    in_progress には現在の呼び出しチェーンで解決中のフラグキーが入る。
    同じキーが再登場した場合は再帰せず、不成立 (fail closed) とする。
    """

    def __init__(self, evaluate: DependencyEvaluator) -> None:
        self._evaluate = evaluate

    async def resolve(
        self,
        flag: FeatureFlag,
        context: EvaluationContext,
        in_progress: frozenset[str],
    ) -> DependencyResolution:
        chain = in_progress | {flag.key}
        cycle_detected = False
        for dependency in flag.dependencies:
            if dependency.dependency_type is DependencyType.IMPLIES:
                continue
            if dependency.flag_key in chain:
                logger.warning(
                    "flag dependency cycle detected",
                    flag_key=flag.key,
                    dependency=dependency.flag_key,
                    chain=sorted(chain),
                    environment=context.environment,
                )
                return DependencyResolution(
                    satisfied=False, cycle_detected=True, failed_key=dependency.flag_key
                )
            result, tainted = await self._evaluate(dependency.flag_key, chain)
            cycle_detected = cycle_detected or tainted
            if not dependency_met(dependency, result):
                return DependencyResolution(
                    satisfied=False,
                    cycle_detected=cycle_detected,
                    failed_key=dependency.flag_key,
                )
        return DependencyResolution(satisfied=True, cycle_detected=cycle_detected)

    async def satisfied(
        self,
        flag: FeatureFlag,
        context: EvaluationContext,
        in_progress: frozenset[str] = frozenset(),
    ) -> bool:
        """すべての依存条件を満たす場合に True。最初の不成立で打ち切る。"""
        resolution = await self.resolve(flag, context, in_progress)
        return resolution.satisfied
