"""フラグ評価器

評価手順 (各段階で打ち切りあり):

1. レジストリからフラグを取得する。存在しない/active でなければ DISABLED。
2. テナント・環境のスコープを確認し、環境ごとの設定値を取得する。
   スコープ外または設定値が無ければ DEFAULT。
3. 依存関係が満たされなければ DEPENDENCY_NOT_MET。
4. 設定値が無効なら DISABLED。
5. target_users / target_segments の対象外なら ROLLOUT_EXCLUDED。
6. 条件が一致すれば RULE_MATCH。
7. それ以外はロールアウト判定 (ROLLOUT_INCLUDED / ROLLOUT_EXCLUDED)。

レジストリ呼び出しで発生した例外はすべて EVALUATION_ERROR に変換され、
呼び出し元へは送出されない。
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Iterable, TypeVar

import structlog

from .bucketing import is_subject_included
from .conditions import AttributeConditionMatcher, ConditionMatcher
from .dependencies import DependencyResolver
from .exceptions import FeatureFlagError, FeatureFlagErrorCodes
from .metrics import flag_evaluations_total, flag_registry_errors_total
from .models import (
    DependencyType,
    EvaluationContext,
    EvaluationReason,
    EvaluationResult,
    FeatureFlag,
    FlagStatus,
    FlagValue,
    FlagValueType,
    Segment,
)
from .registry import FlagRegistry

logger = structlog.stdlib.get_logger(__name__)

T = TypeVar("T")

_NOT_LOADED = object()


class _EvaluationRun:
    """1 回の評価呼び出し (単一またはバッチ) の間だけ有効な状態。

    取得済みのフラグ・設定値と、循環の影響を受けていない評価結果を保持する。
    """

    def __init__(self, evaluator: Evaluator, context: EvaluationContext) -> None:
        self._evaluator = evaluator
        self.context = context
        self.flags: dict[str, FeatureFlag | None] = {}
        self._values: dict[str, FlagValue | None] = {}
        self._results: dict[str, EvaluationResult] = {}
        self._segments: dict[tuple[str, ...], list[Segment]] = {}
        self._resolver = DependencyResolver(self.evaluate)

    async def prefetch(self, keys: Iterable[str]) -> None:
        """要求キーと推移的な依存フラグを get_flags_batch でまとめて取得する。"""
        pending = [key for key in dict.fromkeys(keys) if key not in self.flags]
        while pending:
            fetched = await self._evaluator._lookup(
                self._evaluator.registry.get_flags_batch(pending)
            )
            next_wave: list[str] = []
            for key in pending:
                flag = fetched.get(key)
                self.flags[key] = flag
                if flag is None:
                    continue
                self._evaluator.record_dependencies(flag)
                for dep_key in flag.dependency_keys:
                    if dep_key not in self.flags and dep_key not in next_wave:
                        next_wave.append(dep_key)
            pending = [key for key in next_wave if key not in self.flags]

    async def flag(self, key: str) -> FeatureFlag | None:
        cached = self.flags.get(key, _NOT_LOADED)
        if cached is not _NOT_LOADED:
            return cached  # type: ignore[return-value]
        flag = await self._evaluator._lookup(self._evaluator.registry.get_flag(key))
        self.flags[key] = flag
        if flag is not None:
            self._evaluator.record_dependencies(flag)
        return flag

    async def flag_value(self, flag: FeatureFlag) -> FlagValue | None:
        cached = self._values.get(flag.id, _NOT_LOADED)
        if cached is not _NOT_LOADED:
            return cached  # type: ignore[return-value]
        value = await self._evaluator._lookup(
            self._evaluator.registry.get_flag_value(
                flag.id, self.context.environment, tenant_id=self.context.tenant_id
            )
        )
        if value is not None:
            # 型の不一致は不正なレコードとして扱う
            flag.flag_type.validate(value.value)
        self._values[flag.id] = value
        return value

    async def targeted(self, flag: FeatureFlag) -> bool:
        """ユーザー・セグメント指定がある場合、対象に含まれるか判定する。"""
        context = self.context
        if flag.target_users and context.user_id not in flag.target_users:
            return False
        if not flag.target_segments:
            return True
        names = tuple(sorted(flag.target_segments))
        segments = self._segments.get(names)
        if segments is None:
            segments = await self._evaluator._lookup(
                self._evaluator.registry.get_segments(names, tenant_id=context.tenant_id)
            )
            self._segments[names] = segments
        matcher = self._evaluator.matcher
        return any(matcher.matches(segment.conditions, context) for segment in segments)

    def known_default(self, key: str) -> FlagValueType:
        flag = self.flags.get(key)
        return flag.default_value if isinstance(flag, FeatureFlag) else None

    async def evaluate(
        self, key: str, in_progress: frozenset[str] = frozenset()
    ) -> tuple[EvaluationResult, bool]:
        """フラグを評価して (結果, 循環を検出したか) を返す。

        レジストリの例外はそのまま送出する。
        """
        memo = self._results.get(key)
        if memo is not None:
            return memo, False
        result, tainted = await self._evaluate(key, in_progress)
        if not tainted:
            self._results[key] = result
        return result, tainted

    async def _evaluate(
        self, key: str, in_progress: frozenset[str]
    ) -> tuple[EvaluationResult, bool]:
        flag = await self.flag(key)
        if flag is None or flag.status is not FlagStatus.ACTIVE:
            default = flag.default_value if flag is not None else None
            return _result(key, default, False, EvaluationReason.DISABLED), False

        context = self.context
        in_scope = flag.applies_to(context.environment) and (
            flag.is_global or flag.tenant_id == context.tenant_id
        )
        flag_value = await self.flag_value(flag) if in_scope else None
        if flag_value is None:
            return _result(key, flag.default_value, False, EvaluationReason.DEFAULT), False

        resolution = await self._resolver.resolve(flag, context, in_progress)
        tainted = resolution.cycle_detected
        if not resolution.satisfied:
            return (
                _result(key, flag.default_value, False, EvaluationReason.DEPENDENCY_NOT_MET),
                tainted,
            )

        if not flag_value.enabled:
            return _result(key, flag.default_value, False, EvaluationReason.DISABLED), tainted

        if flag.has_targeting and not await self.targeted(flag):
            return (
                _result(key, flag.default_value, False, EvaluationReason.ROLLOUT_EXCLUDED),
                tainted,
            )

        if flag_value.conditions and self._evaluator.matcher.matches(
            flag_value.conditions, context
        ):
            return _result(key, flag_value.value, True, EvaluationReason.RULE_MATCH), tainted

        if is_subject_included(key, context.subject_id, flag_value.rollout_percentage):
            return (
                _result(key, flag_value.value, True, EvaluationReason.ROLLOUT_INCLUDED),
                tainted,
            )
        return (
            _result(key, flag.default_value, False, EvaluationReason.ROLLOUT_EXCLUDED),
            tainted,
        )


def _result(
    key: str, value: FlagValueType, enabled: bool, reason: EvaluationReason
) -> EvaluationResult:
    return EvaluationResult(flag_key=key, value=value, enabled=enabled, reason=reason)


def _error_code(error: Exception) -> str:
    if isinstance(error, FeatureFlagError):
        return error.code
    return FeatureFlagErrorCodes.CONNECTION_ERROR


class Evaluator:
    """フラグ評価器。evaluate / evaluate_many は例外を送出しない。"""

    def __init__(
        self,
        registry: FlagRegistry,
        matcher: ConditionMatcher | None = None,
        lookup_timeout: float | None = 2.0,
    ) -> None:
        self.registry = registry
        self.matcher: ConditionMatcher = matcher or AttributeConditionMatcher()
        self._lookup_timeout = lookup_timeout
        # 前提フラグ -> それに依存するフラグ (評価中に観測した辺)
        self._dependents: dict[str, set[str]] = {}

    def record_dependencies(self, flag: FeatureFlag) -> None:
        """フラグの依存辺を逆引き索引に記録する。"""
        for dependency in flag.dependencies:
            if dependency.dependency_type is DependencyType.IMPLIES:
                continue
            self._dependents.setdefault(dependency.flag_key, set()).add(flag.key)

    def dependents_of(self, flag_key: str) -> set[str]:
        """flag_key に推移的に依存するフラグキーを返す。flag_key 自身は含まない。"""
        found: set[str] = set()
        pending = [flag_key]
        while pending:
            for dependent in self._dependents.get(pending.pop(), ()):
                if dependent not in found and dependent != flag_key:
                    found.add(dependent)
                    pending.append(dependent)
        return found

    async def evaluate(self, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        """単一フラグを評価する。"""
        run = _EvaluationRun(self, context)
        return await self._evaluate_top(run, flag_key)

    async def evaluate_many(
        self, flag_keys: Iterable[str], context: EvaluationContext
    ) -> dict[str, EvaluationResult]:
        """同一コンテキストで複数フラグを評価する。

        フラグ定義は get_flags_batch でまとめて取得する。結果は evaluate を
        キーごとに呼んだ場合と同じになる。
        """
        keys = list(dict.fromkeys(flag_keys))
        if not keys:
            return {}
        run = _EvaluationRun(self, context)
        try:
            await run.prefetch(keys)
        except Exception as e:
            return {key: self._error_result(run, key, e) for key in keys}
        results = await asyncio.gather(*(self._evaluate_top(run, key) for key in keys))
        return dict(zip(keys, results))

    async def _evaluate_top(self, run: _EvaluationRun, flag_key: str) -> EvaluationResult:
        try:
            result, _ = await run.evaluate(flag_key)
        except Exception as e:
            result = self._error_result(run, flag_key, e)
        flag_evaluations_total.add(1, {"reason": result.reason.value})
        return result

    def _error_result(
        self, run: _EvaluationRun, flag_key: str, error: Exception
    ) -> EvaluationResult:
        code = _error_code(error)
        flag_registry_errors_total.add(1, {"code": code})
        logger.warning(
            "feature flag evaluation failed",
            flag_key=flag_key,
            environment=run.context.environment,
            error_code=code,
            error=str(error),
        )
        return EvaluationResult(
            flag_key=flag_key,
            value=run.known_default(flag_key),
            enabled=False,
            reason=EvaluationReason.EVALUATION_ERROR,
            error_code=code,
        )

    async def _lookup(self, call: Awaitable[T]) -> T:
        """レジストリ呼び出しをタイムアウト付きで実行する。"""
        if self._lookup_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._lookup_timeout)
        except asyncio.TimeoutError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.REGISTRY_TIMEOUT,
                message=f"Flag registry lookup timed out after {self._lookup_timeout:.1f}s",
                cause=e,
            ) from e
