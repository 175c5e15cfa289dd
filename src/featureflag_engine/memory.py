"""InMemoryFlagRegistry 実装"""

from __future__ import annotations

from typing import Callable, Iterable

from .models import FeatureFlag, FlagChangeSet, FlagValue, Segment
from .registry import FlagRegistry

_MAX_CHANGE_LOG = 1000


class InMemoryFlagRegistry(FlagRegistry):
    """テスト・組み込み用インメモリフラグレジストリ。

    書き込みごとに変更ログへ記録し、購読者へ変更キーを通知する。
    """

    def __init__(self, flags: Iterable[FeatureFlag] | None = None) -> None:
        self._flags: dict[str, FeatureFlag] = {}
        self._values: dict[tuple[str, str, str | None], FlagValue] = {}
        self._segments: dict[tuple[str, str | None], Segment] = {}
        self._changes: list[tuple[int, str]] = []
        self._revision = 0
        self._floor = 0
        self._subscribers: list[Callable[[str], None]] = []
        for flag in flags or []:
            self.set_flag(flag)

    @property
    def revision(self) -> int:
        return self._revision

    def subscribe(self, callback: Callable[[str], None]) -> None:
        """変更通知 (push) を購読する。"""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[str], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def set_flag(self, flag: FeatureFlag) -> None:
        """フラグを設定する。"""
        self._flags[flag.key] = flag
        self._record_change(flag.key)

    def remove_flag(self, key: str) -> bool:
        """フラグと紐づく設定値を削除する。削除できたら True。"""
        flag = self._flags.pop(key, None)
        if flag is None:
            return False
        for value_key in [k for k in self._values if k[0] == flag.id]:
            del self._values[value_key]
        self._record_change(key)
        return True

    def set_flag_value(self, value: FlagValue) -> None:
        """環境ごとの設定値を設定する。"""
        self._values[(value.flag_id, value.environment, value.tenant_id)] = value
        key = self._key_for_id(value.flag_id)
        if key is not None:
            self._record_change(key)

    def remove_flag_value(
        self, flag_id: str, environment: str, tenant_id: str | None = None
    ) -> bool:
        if self._values.pop((flag_id, environment, tenant_id), None) is None:
            return False
        key = self._key_for_id(flag_id)
        if key is not None:
            self._record_change(key)
        return True

    def set_segment(self, segment: Segment) -> None:
        """セグメントを設定する。参照しているフラグの変更として記録する。"""
        self._segments[(segment.name, segment.tenant_id)] = segment
        self._record_segment_change(segment.name)

    def remove_segment(self, name: str, tenant_id: str | None = None) -> bool:
        if self._segments.pop((name, tenant_id), None) is None:
            return False
        self._record_segment_change(name)
        return True

    async def get_flag(self, key: str) -> FeatureFlag | None:
        return self._flags.get(key)

    async def get_flag_value(
        self, flag_id: str, environment: str, tenant_id: str | None = None
    ) -> FlagValue | None:
        if tenant_id is not None:
            value = self._values.get((flag_id, environment, tenant_id))
            if value is not None:
                return value
        return self._values.get((flag_id, environment, None))

    async def get_flags_batch(self, keys: Iterable[str]) -> dict[str, FeatureFlag]:
        return {key: self._flags[key] for key in keys if key in self._flags}

    async def get_segments(
        self, names: Iterable[str], tenant_id: str | None = None
    ) -> list[Segment]:
        wanted = set(names)
        return [
            segment
            for (name, owner), segment in self._segments.items()
            if name in wanted
            and segment.is_active
            and (owner is None or owner == tenant_id)
        ]

    async def fetch_changes(self, cursor: int) -> FlagChangeSet:
        if cursor > self._revision or cursor < self._floor:
            return FlagChangeSet(cursor=self._revision, reset=True)
        keys: list[str] = []
        for revision, key in self._changes:
            if revision > cursor and key not in keys:
                keys.append(key)
        return FlagChangeSet(cursor=self._revision, keys=tuple(keys))

    def _key_for_id(self, flag_id: str) -> str | None:
        for flag in self._flags.values():
            if flag.id == flag_id:
                return flag.key
        return None

    def _record_segment_change(self, name: str) -> None:
        for flag in list(self._flags.values()):
            if name in flag.target_segments:
                self._record_change(flag.key)

    def _record_change(self, key: str) -> None:
        self._revision += 1
        self._changes.append((self._revision, key))
        if len(self._changes) > _MAX_CHANGE_LOG:
            dropped = self._changes[: len(self._changes) - _MAX_CHANGE_LOG]
            self._changes = self._changes[len(dropped):]
            self._floor = dropped[-1][0]
        for callback in list(self._subscribers):
            callback(key)
