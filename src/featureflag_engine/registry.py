"""FlagRegistry 抽象基底クラス"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from .models import FeatureFlag, FlagChangeSet, FlagValue, Segment


class FlagRegistry(ABC):
    """フラグ定義ストアへの読み取り契約。

    エンジンは評価経路から書き込みを行わない。
    """

    @abstractmethod
    async def get_flag(self, key: str) -> FeatureFlag | None:
        """キーに対応するフラグを取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def get_flag_value(
        self, flag_id: str, environment: str, tenant_id: str | None = None
    ) -> FlagValue | None:
        """環境ごとの設定値を取得する。テナント固有の値を優先する。"""
        ...

    @abstractmethod
    async def get_flags_batch(self, keys: Iterable[str]) -> dict[str, FeatureFlag]:
        """複数のフラグを一度に取得する。存在しないキーは結果に含まれない。"""
        ...

    @abstractmethod
    async def get_segments(
        self, names: Iterable[str], tenant_id: str | None = None
    ) -> list[Segment]:
        """名前に一致する有効なセグメントを返す。

        共有セグメントと tenant_id のセグメントが対象。
        """
        ...

    @abstractmethod
    async def fetch_changes(self, cursor: int) -> FlagChangeSet:
        """cursor 以降に変更されたフラグキーを返す。"""
        ...
