"""評価結果キャッシュ

(flag_key, コンテキストのフィンガープリント) をキーに評価結果を保持する。
キャッシュの変更はすべて await を挟まない同期区間で行うため、同じイベント
ループ上の他のコルーチンから途中状態が見えることはない。エントリは
置き換えのみで、書き換えはしない。
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Callable, Mapping

import structlog

from .evaluator import Evaluator
from .metrics import flag_cache_hits_total, flag_cache_misses_total
from .models import EvaluationContext, EvaluationReason, EvaluationResult, FlagValueType

logger = structlog.stdlib.get_logger(__name__)

Listener = Callable[[str, EvaluationContext, EvaluationResult], None]

_CacheKey = tuple[str, str]


@dataclass(frozen=True)
class _CacheEntry:
    result: EvaluationResult
    context: EvaluationContext
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    """キャッシュ統計。"""

    hits: int
    misses: int
    size: int


class EvaluationCache:
    """評価結果キャッシュ。サービス起動時に生成し、停止時に close する。

    Args:
        evaluator: キャッシュミス時に使う評価器
        ttl: エントリの有効期限（秒）
        max_entries: 最大エントリ数。超えた場合は最も古いエントリを破棄する
        defaults: 未評価フラグの既知のデフォルト値 (get_nowait の即時応答に使う)
        clock: 単調増加する時刻関数
        error_ttl: EVALUATION_ERROR の結果の有効期限（秒）。0 以下なら格納しない
    """

    def __init__(
        self,
        evaluator: Evaluator,
        ttl: float = 300.0,
        max_entries: int = 10_000,
        defaults: Mapping[str, FlagValueType] | None = None,
        clock: Callable[[], float] = time.monotonic,
        error_ttl: float = 5.0,
    ) -> None:
        self._evaluator = evaluator
        self._ttl = ttl
        self._error_ttl = min(error_ttl, ttl)
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[_CacheKey, _CacheEntry] = {}
        self._by_flag: dict[str, set[str]] = {}
        self._generations: dict[str, int] = {}
        self._global_generation = 0
        self._inflight: dict[_CacheKey, asyncio.Task[EvaluationResult]] = {}
        self._listeners: list[Listener] = []
        self._defaults: dict[str, FlagValueType] = dict(defaults or {})
        self._refresh_task: asyncio.Task[None] | None = None
        self._hits = 0
        self._misses = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    def add_listener(self, listener: Listener) -> None:
        """評価結果がキャッシュに格納されたときの通知先を登録する。"""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def lookup(self, flag_key: str, context: EvaluationContext) -> EvaluationResult | None:
        """有効期限内のエントリがあれば返す。評価は行わない。"""
        cache_key = (flag_key, context.fingerprint())
        entry = self._entries.get(cache_key)
        if entry is not None and self._clock() < entry.expires_at:
            self._hits += 1
            flag_cache_hits_total.add(1)
            return entry.result
        if entry is not None:
            self._remove(cache_key)
        self._misses += 1
        flag_cache_misses_total.add(1)
        return None

    async def get(self, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        """キャッシュ済みの結果を返す。ミス時は評価して格納してから返す。

        同じ (flag_key, フィンガープリント) の同時ミスは 1 回の評価を共有する。
        """
        hit = self.lookup(flag_key, context)
        if hit is not None:
            return hit
        task = self._ensure_population(flag_key, context)
        return await asyncio.shield(task)

    def get_nowait(self, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        """ブロックせずに結果を返す。

        ミス時は既知のデフォルト値 (reason=DEFAULT) を即座に返し、
        バックグラウンドで評価してキャッシュへ格納する。格納後にリスナーへ
        通知する。実行中のイベントループ内から呼び出すこと。
        """
        hit = self.lookup(flag_key, context)
        if hit is not None:
            return hit
        self._ensure_population(flag_key, context)
        return EvaluationResult(
            flag_key=flag_key,
            value=self._defaults.get(flag_key),
            enabled=False,
            reason=EvaluationReason.DEFAULT,
        )

    def put(
        self,
        result: EvaluationResult,
        context: EvaluationContext,
        generation: tuple[int, int] | None = None,
    ) -> bool:
        """評価結果を格納する。

        generation を指定した場合、その後に無効化が行われていれば格納しない。
        格納できたら True。
        """
        flag_key = result.flag_key
        if generation is not None and generation != self.generation(flag_key):
            return False
        if result.reason is EvaluationReason.EVALUATION_ERROR:
            if self._error_ttl <= 0:
                return False
            ttl = self._error_ttl
        else:
            ttl = self._ttl
            if not result.enabled:
                self._defaults[flag_key] = result.value
        fingerprint = context.fingerprint()
        cache_key = (flag_key, fingerprint)
        if cache_key in self._entries:
            self._remove(cache_key)
        while len(self._entries) >= self._max_entries:
            self._remove(next(iter(self._entries)))
        self._entries[cache_key] = _CacheEntry(result, context, self._clock() + ttl)
        self._by_flag.setdefault(flag_key, set()).add(fingerprint)
        return True

    def generation(self, flag_key: str) -> tuple[int, int]:
        """無効化の世代番号。評価開始時に取得して put に渡す。"""
        return (self._global_generation, self._generations.get(flag_key, 0))

    def invalidate(self, flag_key: str) -> int:
        """フラグと、それに推移的に依存するフラグの全エントリを破棄する。

        破棄した件数を返す。無効化前に開始した評価の結果は格納されない。
        """
        dependents = sorted(self._evaluator.dependents_of(flag_key))
        dropped = self._invalidate_key(flag_key)
        for dependent in dependents:
            dropped += self._invalidate_key(dependent)
        logger.debug(
            "evaluation cache invalidated",
            flag_key=flag_key,
            dependents=dependents,
            dropped=dropped,
        )
        return dropped

    def _invalidate_key(self, flag_key: str) -> int:
        self._generations[flag_key] = self._generations.get(flag_key, 0) + 1
        fingerprints = self._by_flag.pop(flag_key, set())
        for fingerprint in fingerprints:
            self._entries.pop((flag_key, fingerprint), None)
        for cache_key in [k for k in self._inflight if k[0] == flag_key]:
            del self._inflight[cache_key]
        return len(fingerprints)

    def invalidate_all(self) -> int:
        """全エントリを破棄する。破棄した件数を返す。"""
        self._global_generation += 1
        dropped = len(self._entries)
        self._entries.clear()
        self._by_flag.clear()
        self._inflight.clear()
        logger.debug("evaluation cache cleared", dropped=dropped)
        return dropped

    async def refresh(self) -> int:
        """キャッシュ済みの全エントリを再評価する。再評価した件数を返す。"""
        groups: dict[str, tuple[EvaluationContext, list[str]]] = {}
        for (flag_key, fingerprint), entry in list(self._entries.items()):
            groups.setdefault(fingerprint, (entry.context, []))[1].append(flag_key)
        refreshed = 0
        for context, flag_keys in groups.values():
            generations = {key: self.generation(key) for key in flag_keys}
            results = await self._evaluator.evaluate_many(flag_keys, context)
            for key, result in results.items():
                if self.put(result, context, generations[key]):
                    refreshed += 1
                    self._notify(key, context, result)
        return refreshed

    def start_auto_refresh(self, interval: float) -> None:
        """interval 秒ごとに refresh するタスクを開始する。"""
        if self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop(interval))

    async def stop_auto_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None

    async def close(self) -> None:
        """自動リフレッシュと実行中の評価を停止し、全エントリを破棄する。"""
        await self.stop_auto_refresh()
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.invalidate_all()
        self._listeners.clear()

    def stats(self) -> CacheStats:
        return CacheStats(hits=self._hits, misses=self._misses, size=len(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def _ensure_population(
        self, flag_key: str, context: EvaluationContext
    ) -> asyncio.Task[EvaluationResult]:
        cache_key = (flag_key, context.fingerprint())
        task = self._inflight.get(cache_key)
        if task is None:
            task = asyncio.create_task(
                self._populate(flag_key, context, self.generation(flag_key))
            )
            self._inflight[cache_key] = task
            task.add_done_callback(lambda t: self._forget_inflight(cache_key, t))
        return task

    def _forget_inflight(self, cache_key: _CacheKey, task: asyncio.Task[EvaluationResult]) -> None:
        if self._inflight.get(cache_key) is task:
            del self._inflight[cache_key]

    async def _populate(
        self, flag_key: str, context: EvaluationContext, generation: tuple[int, int]
    ) -> EvaluationResult:
        result = await self._evaluator.evaluate(flag_key, context)
        if self.put(result, context, generation):
            self._notify(flag_key, context, result)
        return result

    def _notify(self, flag_key: str, context: EvaluationContext, result: EvaluationResult) -> None:
        for listener in list(self._listeners):
            try:
                listener(flag_key, context, result)
            except Exception as e:
                logger.warning(
                    "evaluation cache listener failed", flag_key=flag_key, error=str(e)
                )

    def _remove(self, cache_key: _CacheKey) -> None:
        self._entries.pop(cache_key, None)
        fingerprints = self._by_flag.get(cache_key[0])
        if fingerprints is not None:
            fingerprints.discard(cache_key[1])
            if not fingerprints:
                del self._by_flag[cache_key[0]]

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except Exception as e:
                logger.error("evaluation cache refresh failed", error=str(e))
