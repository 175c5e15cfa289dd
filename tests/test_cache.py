"""EvaluationCache のユニットテスト"""

import asyncio

from conftest import CountingRegistry, FakeClock, GatedRegistry, make_flag, make_value
from featureflag_engine import (
    EvaluationCache,
    EvaluationContext,
    EvaluationReason,
    Evaluator,
    bucket,
    build_context,
)


def make_cache(registry: CountingRegistry, clock: FakeClock, **kwargs) -> EvaluationCache:
    return EvaluationCache(Evaluator(registry), ttl=60.0, clock=clock, **kwargs)


def seed(registry: CountingRegistry) -> None:
    registry.set_flag(make_flag("new_ui"))
    registry.set_flag_value(make_value("new_ui"))
    registry.set_flag(make_flag("dark_mode"))
    registry.set_flag_value(make_value("dark_mode"))


async def test_hit_and_miss(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """2 回目の取得はキャッシュから返ること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    first = await cache.get("new_ui", ctx)
    second = await cache.get("new_ui", ctx)
    assert first == second
    assert registry.calls["get_flag"] == 1
    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.size) == (1, 1, 1)


async def test_ttl_expiry(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """TTL を過ぎたエントリは再評価されること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    await cache.get("new_ui", ctx)
    clock.advance(59)
    await cache.get("new_ui", ctx)
    assert registry.calls["get_flag"] == 1
    clock.advance(2)
    await cache.get("new_ui", ctx)
    assert registry.calls["get_flag"] == 2


async def test_fingerprint_ignores_properties(
    registry: CountingRegistry, clock: FakeClock
) -> None:
    """プロパティだけが異なるコンテキストは同じエントリを共有すること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    await cache.get("new_ui", build_context("production", user_id="u1", user_properties={"a": 1}))
    await cache.get("new_ui", build_context("production", user_id="u1", user_properties={"a": 2}))
    assert registry.calls["get_flag"] == 1
    await cache.get("new_ui", build_context("production", user_id="u2"))
    assert registry.calls["get_flag"] == 2


async def test_invalidate_returns_fresh_result(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """無効化後の取得はレジストリの最新状態を反映すること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    assert (await cache.get("new_ui", ctx)).enabled is True

    registry.set_flag_value(make_value("new_ui", enabled=False))
    assert (await cache.get("new_ui", ctx)).enabled is True

    assert cache.invalidate("new_ui") == 1
    result = await cache.get("new_ui", ctx)
    assert result.enabled is False
    assert result.reason is EvaluationReason.DISABLED


async def test_invalidate_only_drops_that_flag(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """他のフラグのエントリは残ること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    await cache.get("new_ui", ctx)
    await cache.get("dark_mode", ctx)
    await cache.get("new_ui", build_context("staging", user_id="u1"))
    assert cache.invalidate("new_ui") == 2
    assert len(cache) == 1
    assert cache.lookup("dark_mode", ctx) is not None
    assert cache.invalidate("new_ui") == 0


async def test_invalidate_during_evaluation_is_not_stored(
    gated_registry: GatedRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """評価中に無効化された場合、その結果はキャッシュに格納されないこと。"""
    seed(gated_registry)
    cache = make_cache(gated_registry, clock)
    task = asyncio.create_task(cache.get("new_ui", ctx))
    await gated_registry.entered.wait()

    cache.invalidate("new_ui")
    gated_registry.gate.set()
    result = await task
    assert result.enabled is True
    assert len(cache) == 0

    await cache.get("new_ui", ctx)
    assert len(cache) == 1


async def test_invalidate_all_during_evaluation_is_not_stored(
    gated_registry: GatedRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """全体の無効化でも評価中の結果は格納されないこと。"""
    seed(gated_registry)
    cache = make_cache(gated_registry, clock)
    task = asyncio.create_task(cache.get("new_ui", ctx))
    await gated_registry.entered.wait()

    assert cache.invalidate_all() == 0
    gated_registry.gate.set()
    await task
    assert len(cache) == 0


async def test_concurrent_misses_share_evaluation(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """同時のキャッシュミスは 1 回の評価を共有すること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    results = await asyncio.gather(*(cache.get("new_ui", ctx) for _ in range(5)))
    assert all(r == results[0] for r in results)
    assert registry.calls["get_flag"] == 1


async def test_get_nowait_returns_default_then_populates(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """ミス時は既知のデフォルト値を即座に返し、格納後にリスナーへ通知すること。"""
    seed(registry)
    cache = make_cache(registry, clock, defaults={"new_ui": False})
    notified = asyncio.Event()
    seen: list[tuple[str, EvaluationReason]] = []

    def on_result(flag_key, context, result) -> None:
        seen.append((flag_key, result.reason))
        notified.set()

    cache.add_listener(on_result)
    placeholder = cache.get_nowait("new_ui", ctx)
    assert placeholder.reason is EvaluationReason.DEFAULT
    assert placeholder.enabled is False
    assert placeholder.value is False

    await asyncio.wait_for(notified.wait(), timeout=1)
    assert seen == [("new_ui", EvaluationReason.ROLLOUT_INCLUDED)]
    assert cache.get_nowait("new_ui", ctx).enabled is True


async def test_get_nowait_unknown_default_is_none(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """デフォルト値が不明なら None を返すこと。"""
    cache = make_cache(registry, clock)
    assert cache.get_nowait("unknown_flag", ctx).value is None
    await cache.close()


async def test_put_with_stale_generation_is_rejected(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """無効化前の世代番号での put は拒否されること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    result = await Evaluator(registry).evaluate("new_ui", ctx)
    generation = cache.generation("new_ui")
    cache.invalidate("new_ui")
    assert cache.put(result, ctx, generation) is False
    assert cache.put(result, ctx, cache.generation("new_ui")) is True
    assert cache.lookup("new_ui", ctx) == result


async def test_eviction_drops_oldest_entry(
    registry: CountingRegistry, clock: FakeClock
) -> None:
    """最大件数を超えたら最も古いエントリを破棄すること。"""
    seed(registry)
    cache = make_cache(registry, clock, max_entries=2)
    contexts = [build_context("production", user_id=f"u{i}") for i in range(3)]
    for context in contexts:
        await cache.get("new_ui", context)
    assert len(cache) == 2
    assert cache.lookup("new_ui", contexts[0]) is None
    assert cache.lookup("new_ui", contexts[2]) is not None


async def test_refresh_reevaluates_entries(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """refresh はキャッシュ済みの全エントリを再評価すること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    await cache.get("new_ui", ctx)
    await cache.get("dark_mode", ctx)
    refreshed: list[str] = []
    cache.add_listener(lambda key, context, result: refreshed.append(key))

    registry.set_flag_value(make_value("new_ui", enabled=False))
    assert await cache.refresh() == 2
    assert sorted(refreshed) == ["dark_mode", "new_ui"]
    assert cache.lookup("new_ui", ctx).reason is EvaluationReason.DISABLED
    assert registry.calls["get_flags_batch"] == 1


async def test_auto_refresh(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """自動リフレッシュがバックグラウンドで再評価すること。"""
    seed(registry)
    cache = make_cache(registry, clock)
    await cache.get("new_ui", ctx)
    refreshed = asyncio.Event()
    cache.add_listener(lambda key, context, result: refreshed.set())
    registry.set_flag_value(make_value("new_ui", enabled=False))

    cache.start_auto_refresh(0.01)
    await asyncio.wait_for(refreshed.wait(), timeout=1)
    assert cache.lookup("new_ui", ctx).enabled is False
    await cache.close()


async def test_listener_errors_are_isolated(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """リスナーの例外は取得結果や他のリスナーに影響しないこと。"""
    seed(registry)
    cache = make_cache(registry, clock)
    calls: list[str] = []

    def broken(flag_key, context, result) -> None:
        raise RuntimeError("listener failed")

    cache.add_listener(broken)
    cache.add_listener(lambda key, context, result: calls.append(key))
    result = await cache.get("new_ui", ctx)
    assert result.enabled is True
    assert calls == ["new_ui"]
    assert len(cache) == 1

    cache.remove_listener(broken)
    cache.invalidate("new_ui")
    await cache.get("new_ui", ctx)
    assert calls == ["new_ui", "new_ui"]


async def test_close_clears_everything(
    gated_registry: GatedRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """close は実行中の評価を止めて全エントリを破棄すること。"""
    seed(gated_registry)
    cache = make_cache(gated_registry, clock)
    gated_registry.gate.set()
    await cache.get("dark_mode", ctx)
    gated_registry.gate.clear()
    gated_registry.entered.clear()

    cache.get_nowait("new_ui", ctx)
    await gated_registry.entered.wait()
    await cache.close()
    assert len(cache) == 0
    gated_registry.gate.set()
    await asyncio.sleep(0)
    assert len(cache) == 0


async def test_anonymous_subjects_do_not_share_rollout_decision(
    registry: CountingRegistry, clock: FakeClock
) -> None:
    """匿名の対象はロールアウトの判定結果をキャッシュで共有しないこと。"""
    registry.set_flag(make_flag("promo"))
    registry.set_flag_value(make_value("promo", rollout=50))
    sessions = [f"session-{i}" for i in range(200)]
    inside = next(s for s in sessions if bucket("promo", s) < 5000)
    outside = next(s for s in sessions if bucket("promo", s) >= 5000)
    cache = make_cache(registry, clock)

    first = await cache.get("promo", build_context("production", anonymous_id=inside))
    second = await cache.get("promo", build_context("production", anonymous_id=outside))
    assert first.reason is EvaluationReason.ROLLOUT_INCLUDED
    assert second.reason is EvaluationReason.ROLLOUT_EXCLUDED
    assert len(cache) == 2


async def test_invalidate_drops_dependent_flags(
    registry: CountingRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """前提フラグの無効化で、依存するフラグのエントリも破棄されること。"""
    seed(registry)
    registry.set_flag(make_flag("beta_export", dependencies=["new_ui"]))
    registry.set_flag_value(make_value("beta_export"))
    registry.set_flag(make_flag("bulk_export", dependencies=["beta_export"]))
    registry.set_flag_value(make_value("bulk_export"))
    evaluator = Evaluator(registry)
    cache = EvaluationCache(evaluator, ttl=60.0, clock=clock)

    assert (await cache.get("beta_export", ctx)).enabled is True
    assert (await cache.get("bulk_export", ctx)).enabled is True
    assert (await cache.get("dark_mode", ctx)).enabled is True
    assert evaluator.dependents_of("new_ui") == {"beta_export", "bulk_export"}

    registry.set_flag_value(make_value("new_ui", enabled=False))
    assert cache.invalidate("new_ui") == 2
    assert cache.lookup("dark_mode", ctx) is not None

    beta = await cache.get("beta_export", ctx)
    assert beta.enabled is False
    assert beta.reason is EvaluationReason.DEPENDENCY_NOT_MET
    bulk = await cache.get("bulk_export", ctx)
    assert bulk.reason is EvaluationReason.DEPENDENCY_NOT_MET


async def test_invalidate_dependent_during_evaluation_is_not_stored(
    gated_registry: GatedRegistry, clock: FakeClock, ctx: EvaluationContext
) -> None:
    """依存するフラグの評価中に前提フラグが無効化されたら結果を格納しないこと。"""
    seed(gated_registry)
    gated_registry.set_flag(make_flag("beta_export", dependencies=["new_ui"]))
    gated_registry.set_flag_value(make_value("beta_export"))
    evaluator = Evaluator(gated_registry)
    cache = EvaluationCache(evaluator, ttl=60.0, clock=clock)
    gated_registry.gate.set()
    await cache.get("beta_export", ctx)
    cache.invalidate_all()

    gated_registry.gate.clear()
    gated_registry.entered.clear()
    task = asyncio.create_task(cache.get("beta_export", ctx))
    await gated_registry.entered.wait()
    cache.invalidate("new_ui")
    gated_registry.gate.set()
    await task
    assert len(cache) == 0


class FlakyRegistry(CountingRegistry):
    """fail が True の間 get_flag が失敗するレジストリ。"""

    def __init__(self) -> None:
        super().__init__()
        self.fail = True

    async def get_flag(self, key: str):
        if self.fail:
            self.calls["get_flag"] += 1
            raise RuntimeError("registry unavailable")
        return await super().get_flag(key)


async def test_error_result_expires_after_error_ttl(
    clock: FakeClock, ctx: EvaluationContext
) -> None:
    """評価エラーの結果は短い期間だけ保持され、その後は再評価されること。"""
    registry = FlakyRegistry()
    seed(registry)
    cache = make_cache(registry, clock, error_ttl=5.0, defaults={"new_ui": False})

    first = await cache.get("new_ui", ctx)
    assert first.reason is EvaluationReason.EVALUATION_ERROR
    clock.advance(4)
    assert (await cache.get("new_ui", ctx)) == first
    assert registry.calls["get_flag"] == 1

    registry.fail = False
    clock.advance(2)
    recovered = await cache.get("new_ui", ctx)
    assert recovered.reason is EvaluationReason.ROLLOUT_INCLUDED
    assert registry.calls["get_flag"] == 2


async def test_error_result_not_stored_when_error_ttl_is_zero(
    clock: FakeClock, ctx: EvaluationContext
) -> None:
    """error_ttl が 0 なら評価エラーの結果は格納されないこと。"""
    registry = FlakyRegistry()
    seed(registry)
    cache = make_cache(registry, clock, error_ttl=0)
    result = await cache.get("new_ui", ctx)
    assert result.reason is EvaluationReason.EVALUATION_ERROR
    assert len(cache) == 0
    assert cache.put(result, ctx) is False
