"""バッチ評価器"""

from __future__ import annotations

import asyncio
from typing import Iterable

from .cache import EvaluationCache
from .evaluator import Evaluator
from .models import EvaluationContext, EvaluationResult

_BatchKey = tuple[frozenset[str], str, bool]


class BatchEvaluator:
    """同一コンテキストの複数フラグ評価を 1 回の論理呼び出しにまとめる。

    同じ (キー集合, フィンガープリント) のバッチが実行中の場合、後続の
    呼び出しは新たに取得せず、実行中の結果を待って共有する。

    Args:
        evaluator: 評価器
        cache: 評価結果キャッシュ。指定時はヒットを再利用し、結果を格納する
        max_batch_size: 1 回のレジストリ呼び出しで扱うキー数の上限。
            超えた分は分割して評価する
    """

    def __init__(
        self,
        evaluator: Evaluator,
        cache: EvaluationCache | None = None,
        max_batch_size: int = 50,
    ) -> None:
        self._evaluator = evaluator
        self._cache = cache
        self._max_batch_size = max_batch_size
        self._inflight: dict[_BatchKey, asyncio.Task[dict[str, EvaluationResult]]] = {}

    @property
    def in_flight(self) -> int:
        """実行中のバッチ数。"""
        return len(self._inflight)

    async def evaluate_all(
        self,
        flag_keys: Iterable[str],
        context: EvaluationContext,
        fresh: bool = False,
    ) -> dict[str, EvaluationResult]:
        """全キーを評価して flag_key -> EvaluationResult を返す。

        fresh=True の場合はキャッシュを読まずに評価する (結果は格納する)。
        例外は送出しない。
        """
        keys = list(dict.fromkeys(flag_keys))
        if not keys:
            return {}
        batch_key: _BatchKey = (frozenset(keys), context.fingerprint(), fresh)
        task = self._inflight.get(batch_key)
        if task is None:
            task = asyncio.create_task(self._run(keys, context, fresh))
            self._inflight[batch_key] = task
            task.add_done_callback(lambda t: self._forget(batch_key, t))
        # 待機側のキャンセルで共有中の取得を止めない
        results = await asyncio.shield(task)
        return {key: results[key] for key in keys}

    def _forget(
        self, batch_key: _BatchKey, task: asyncio.Task[dict[str, EvaluationResult]]
    ) -> None:
        if self._inflight.get(batch_key) is task:
            del self._inflight[batch_key]

    async def _run(
        self, keys: list[str], context: EvaluationContext, fresh: bool
    ) -> dict[str, EvaluationResult]:
        results: dict[str, EvaluationResult] = {}
        misses = keys
        cache = self._cache
        if cache is not None and not fresh:
            misses = []
            for key in keys:
                hit = cache.lookup(key, context)
                if hit is None:
                    misses.append(key)
                else:
                    results[key] = hit
        if not misses:
            return results

        generations = {key: cache.generation(key) for key in misses} if cache else {}
        chunks = [
            misses[i : i + self._max_batch_size]
            for i in range(0, len(misses), self._max_batch_size)
        ]
        evaluated = await asyncio.gather(
            *(self._evaluator.evaluate_many(chunk, context) for chunk in chunks)
        )
        for chunk_results in evaluated:
            for key, result in chunk_results.items():
                if cache is not None:
                    cache.put(result, context, generations[key])
                results[key] = result
        return results
