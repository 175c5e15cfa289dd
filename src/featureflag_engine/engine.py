"""評価・キャッシュ・バッチ・変更監視をまとめた FeatureFlagEngine"""

from __future__ import annotations

import time
from types import TracebackType
from typing import Any, Callable, Iterable, Mapping

import structlog

from .batch import BatchEvaluator
from .cache import EvaluationCache
from .conditions import ConditionMatcher
from .config import EngineConfig
from .context import build_context
from .evaluator import Evaluator
from .exceptions import FeatureFlagError, FeatureFlagErrorCodes
from .http_client import HttpFlagRegistry
from .logger import configure_logging
from .models import EvaluationContext, EvaluationResult, FeatureFlag, FlagValueType
from .registry import FlagRegistry
from .watcher import RegistryChangeWatcher

logger = structlog.stdlib.get_logger(__name__)


class FeatureFlagEngine:
    """フィーチャーフラグ評価エンジン。

    サービス起動時に生成して start し、停止時に stop する。
    ``async with`` でも利用できる。
    """

    def __init__(
        self,
        registry: FlagRegistry,
        config: EngineConfig | None = None,
        matcher: ConditionMatcher | None = None,
        defaults: Mapping[str, FlagValueType] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or EngineConfig()
        self._registry = registry
        self.evaluator = Evaluator(
            registry,
            matcher=matcher,
            lookup_timeout=self._config.evaluation.lookup_timeout_seconds,
        )
        self.cache = EvaluationCache(
            self.evaluator,
            ttl=self._config.cache.ttl_seconds,
            max_entries=self._config.cache.max_entries,
            defaults=defaults,
            clock=clock,
            error_ttl=self._config.cache.error_ttl_seconds,
        )
        self.batch = BatchEvaluator(
            self.evaluator,
            cache=self.cache,
            max_batch_size=self._config.evaluation.max_batch_size,
        )
        self._watcher: RegistryChangeWatcher | None = None
        if self._config.registry.poll_interval_seconds > 0:
            self._watcher = RegistryChangeWatcher(
                registry,
                on_change=self.invalidate,
                on_reset=self.invalidate_all,
                poll_interval=self._config.registry.poll_interval_seconds,
            )

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs: Any) -> FeatureFlagEngine:
        """設定の registry セクションから HTTP レジストリを使うエンジンを生成する。"""
        if not config.registry.base_url:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.CONFIG_ERROR,
                message="registry.base_url is required",
            )
        return cls(HttpFlagRegistry(config.registry), config=config, **kwargs)

    @property
    def config(self) -> EngineConfig:
        return self._config

    def build_context(
        self,
        environment: str | None = None,
        user_id: str | None = None,
        tenant_id: str | None = None,
        anonymous_id: str | None = None,
        user_properties: Mapping[str, Any] | None = None,
        custom_properties: Mapping[str, Any] | None = None,
    ) -> EvaluationContext:
        """environment 省略時は設定の default_environment を使う。"""
        return build_context(
            environment if environment is not None else self._config.evaluation.default_environment,
            user_id=user_id,
            tenant_id=tenant_id,
            anonymous_id=anonymous_id,
            user_properties=user_properties,
            custom_properties=custom_properties,
        )

    async def evaluate(self, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        """キャッシュ経由で単一フラグを評価する。"""
        return await self.cache.get(flag_key, context)

    async def evaluate_batch(
        self,
        flag_keys: Iterable[str],
        context: EvaluationContext,
        fresh: bool = False,
    ) -> dict[str, EvaluationResult]:
        """複数フラグを評価する。fresh=True でキャッシュを読まずに評価する。"""
        return await self.batch.evaluate_all(flag_keys, context, fresh=fresh)

    def evaluate_nowait(self, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        """キャッシュ済みの結果、またはデフォルト値を即座に返す。"""
        return self.cache.get_nowait(flag_key, context)

    async def is_enabled(self, flag_key: str, context: EvaluationContext) -> bool:
        result = await self.evaluate(flag_key, context)
        return result.enabled

    def is_enabled_nowait(self, flag_key: str, context: EvaluationContext) -> bool:
        return self.evaluate_nowait(flag_key, context).enabled

    async def get_value(
        self,
        flag_key: str,
        context: EvaluationContext,
        default: FlagValueType = None,
    ) -> FlagValueType:
        """有効ならフラグ値を、無効なら default (未指定ならフラグのデフォルト値) を返す。"""
        result = await self.evaluate(flag_key, context)
        if result.enabled or default is None:
            return result.value
        return default

    async def get_flag(self, flag_key: str) -> FeatureFlag:
        """レジストリからフラグ定義を取得する。

        Raises:
            FeatureFlagError: フラグが存在しない場合 (FLAG_NOT_FOUND)
        """
        flag = await self._registry.get_flag(flag_key)
        if flag is None:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.FLAG_NOT_FOUND,
                message=f"Flag not found: {flag_key}",
            )
        return flag

    def invalidate(self, flag_key: str) -> None:
        """フラグのキャッシュを破棄する。レジストリの変更通知から呼ばれる。"""
        self.cache.invalidate(flag_key)

    def invalidate_all(self) -> None:
        """環境・テナント全体の変更時に全キャッシュを破棄する。"""
        self.cache.invalidate_all()

    async def start(self) -> None:
        """ログを設定し、自動リフレッシュと変更ポーリングを開始する。"""
        if self._config.log.configure:
            configure_logging(self._config.log)
        if self._config.cache.auto_refresh_seconds > 0:
            self.cache.start_auto_refresh(self._config.cache.auto_refresh_seconds)
        if self._watcher is not None:
            await self._watcher.start()
        logger.info(
            "feature flag engine started",
            cache_ttl=self._config.cache.ttl_seconds,
            poll_interval=self._config.registry.poll_interval_seconds,
        )

    async def stop(self) -> None:
        """バックグラウンド処理を停止してキャッシュを破棄する。"""
        if self._watcher is not None:
            await self._watcher.stop()
        await self.cache.close()
        logger.info("feature flag engine stopped")

    async def __aenter__(self) -> FeatureFlagEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
