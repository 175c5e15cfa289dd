"""FeatureFlagClient プロトコル"""

from __future__ import annotations

from typing import Iterable, Protocol

from .models import EvaluationContext, EvaluationResult, FlagValueType


class FeatureFlagClientProtocol(Protocol):
    """フィーチャーフラグ評価クライアントプロトコル。

    evaluate / evaluate_batch は例外を送出せず、常に利用可能な結果を返す。
    """

    async def evaluate(
        self, flag_key: str, context: EvaluationContext
    ) -> EvaluationResult: ...

    async def evaluate_batch(
        self, flag_keys: Iterable[str], context: EvaluationContext, fresh: bool = False
    ) -> dict[str, EvaluationResult]: ...

    async def is_enabled(self, flag_key: str, context: EvaluationContext) -> bool: ...

    async def get_value(
        self,
        flag_key: str,
        context: EvaluationContext,
        default: FlagValueType = None,
    ) -> FlagValueType: ...

    def invalidate(self, flag_key: str) -> None: ...

    def invalidate_all(self) -> None: ...
