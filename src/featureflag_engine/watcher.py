"""asyncio Task ベースのレジストリ変更ポーリング"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Callable

import structlog

from .models import FlagChangeSet
from .registry import FlagRegistry

logger = structlog.stdlib.get_logger(__name__)


class RegistryChangeWatcher:
    """レジストリの変更をポーリングしてキャッシュ無効化フックを呼び出す。"""

    def __init__(
        self,
        registry: FlagRegistry,
        on_change: Callable[[str], object],
        on_reset: Callable[[], object],
        poll_interval: float = 30.0,
        cursor: int = 0,
    ) -> None:
        self._registry = registry
        self._on_change = on_change
        self._on_reset = on_reset
        self._poll_interval = poll_interval
        self._cursor = cursor
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """ポーリングタスクを開始する。"""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """ポーリングタスクを停止する。"""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def poll_once(self) -> FlagChangeSet:
        """1 回ポーリングして変更を反映する。

        Returns:
            取得した変更セット
        """
        changes = await self._registry.fetch_changes(self._cursor)
        if changes.reset:
            self._on_reset()
        else:
            for key in changes.keys:
                self._on_change(key)
        self._cursor = changes.cursor
        return changes

    async def _poll_loop(self) -> None:
        """ポーリングループ。"""
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("flag change polling failed", cursor=self._cursor, error=str(e))
            await asyncio.sleep(self._poll_interval)
