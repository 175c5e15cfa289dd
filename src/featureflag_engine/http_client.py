"""フラグレジストリ HTTP クライアント実装"""

from __future__ import annotations

from typing import Any, Iterable
from urllib.parse import quote

import httpx

from .config import RegistrySection
from .exceptions import FeatureFlagError, FeatureFlagErrorCodes
from .models import FeatureFlag, FlagChangeSet, FlagType, FlagValue, Segment
from .registry import FlagRegistry


class HttpFlagRegistry(FlagRegistry):
    """httpx を使ったフラグレジストリ HTTP クライアント。"""

    def __init__(self, config: RegistrySection) -> None:
        self._config = config
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if config.api_key:
            headers["X-API-Key"] = config.api_key
        self._headers = headers
        # 設定値の型検証に使う flag_id -> FlagType
        self._flag_types: dict[str, FlagType] = {}

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.base_url,
            headers=self._headers,
            timeout=self._config.timeout_seconds,
        )

    def _handle_error(self, resp: httpx.Response, context: str) -> None:
        if resp.status_code >= 400:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.HTTP_ERROR,
                message=f"{context}: HTTP {resp.status_code}: {resp.text}",
            )

    def _remember(self, flag: FeatureFlag) -> FeatureFlag:
        self._flag_types[flag.id] = flag.flag_type
        return flag

    async def _request(
        self, method: str, url: str, context: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            async with self._make_client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.REGISTRY_TIMEOUT,
                message=f"{context}: request timed out",
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.CONNECTION_ERROR,
                message=f"{context}: {e}",
                cause=e,
            ) from e

    def _json(self, resp: httpx.Response, context: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.INVALID_FLAG,
                message=f"{context}: response is not valid JSON",
                cause=e,
            ) from e

    async def get_flag(self, key: str) -> FeatureFlag | None:
        context = f"get_flag({key})"
        resp = await self._request("GET", f"/api/v1/flags/{quote(key, safe='')}", context)
        if resp.status_code == 404:
            return None
        self._handle_error(resp, context)
        return self._remember(FeatureFlag.from_dict(self._json(resp, context)))

    async def get_flag_value(
        self, flag_id: str, environment: str, tenant_id: str | None = None
    ) -> FlagValue | None:
        context = f"get_flag_value({flag_id}, {environment})"
        params = {"tenant_id": tenant_id} if tenant_id is not None else None
        resp = await self._request(
            "GET",
            f"/api/v1/flags/{quote(flag_id, safe='')}/values/{quote(environment, safe='')}",
            context,
            params=params,
        )
        if resp.status_code == 404:
            return None
        self._handle_error(resp, context)
        # 型が未知の場合は JSON として受け取り、評価器側で検証する
        flag_type = self._flag_types.get(flag_id, FlagType.JSON)
        return FlagValue.from_dict(self._json(resp, context), flag_type)

    async def get_flags_batch(self, keys: Iterable[str]) -> dict[str, FeatureFlag]:
        key_list = list(keys)
        if not key_list:
            return {}
        context = f"get_flags_batch({len(key_list)} keys)"
        resp = await self._request(
            "POST", "/api/v1/flags/batch", context, json={"keys": key_list}
        )
        self._handle_error(resp, context)
        data: dict[str, Any] = self._json(resp, context)
        flags = [self._remember(FeatureFlag.from_dict(item)) for item in data.get("flags", [])]
        return {flag.key: flag for flag in flags}

    async def get_segments(
        self, names: Iterable[str], tenant_id: str | None = None
    ) -> list[Segment]:
        name_list = list(names)
        if not name_list:
            return []
        context = f"get_segments({', '.join(name_list)})"
        params: dict[str, Any] = {"names": name_list}
        if tenant_id is not None:
            params["tenant_id"] = tenant_id
        resp = await self._request("GET", "/api/v1/segments", context, params=params)
        self._handle_error(resp, context)
        data: dict[str, Any] = self._json(resp, context)
        segments = [Segment.from_dict(item) for item in data.get("segments", [])]
        # 無効なセグメントと他テナントのセグメントは返さない
        return [
            s
            for s in segments
            if s.is_active and s.name in name_list and s.tenant_id in (None, tenant_id)
        ]

    async def fetch_changes(self, cursor: int) -> FlagChangeSet:
        context = f"fetch_changes({cursor})"
        resp = await self._request(
            "GET", "/api/v1/flags/changes", context, params={"since": cursor}
        )
        self._handle_error(resp, context)
        return FlagChangeSet.from_dict(self._json(resp, context))
