"""
ソースアダプター
外部カレンダーシステムとの取得・送信契約と、JSON REST 実装
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp

from ...core.exceptions import (
    AdapterError,
    SourceAuthenticationError,
    SourceRateLimitError,
    SourceTimeoutError,
    SourceUnavailableError,
)
from ...core.models import Event, EventSource, PushResult

logger = logging.getLogger(__name__)


class SourceAdapter(ABC):
    """
    ソースアダプター基底クラス

    pull は生レコード（ソース固有形式の辞書）を返す。失敗時は
    AdapterError のサブクラスを送出し、「データなし」（空リスト）とは区別する。
    """

    source: EventSource

    @abstractmethod
    async def pull(self, user_id: Optional[str], start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """期間内の生レコードを取得"""

    @abstractmethod
    async def push(self, user_id: str, events: List[Event]) -> PushResult:
        """正規化済みイベントを外部カレンダーへ送信"""

    @abstractmethod
    async def authenticate(self, user_id: str) -> str:
        """認可URLを返す"""

    @abstractmethod
    async def disconnect(self, user_id: str) -> None:
        """ユーザーの接続を解除"""


class HttpSourceAdapter(SourceAdapter):
    """JSON REST エンドポイントに対するアダプター実装"""

    def __init__(self, source: EventSource, base_url: str,
                 api_token: Optional[str] = None, timeout_seconds: float = 30.0):
        self.source = source
        self.base_url = base_url.rstrip('/')
        self.api_token = api_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _user_url(self, user_id: Optional[str], suffix: str) -> str:
        if user_id:
            return f"{self.base_url}/users/{user_id}/{suffix}"
        return f"{self.base_url}/{suffix}"

    async def _request(self, method: str, url: str,
                       data: Optional[dict] = None,
                       params: Optional[dict] = None) -> Any:
        """認証付きリクエストを送信し、JSONを返す"""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=self._get_headers(),
                                           json=data, params=params) as resp:
                    return await self._handle_response(resp)
        except AdapterError:
            raise
        except aiohttp.ServerTimeoutError as e:
            raise SourceTimeoutError(self.source.value, f"Request timed out: {e}") from e
        except aiohttp.ClientError as e:
            raise SourceUnavailableError(self.source.value, f"Request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise SourceTimeoutError(self.source.value, "Request timed out") from e

    async def _handle_response(self, resp: aiohttp.ClientResponse) -> Any:
        """ステータスコードをアダプター例外へ対応付け"""
        if resp.status == 204:
            return None

        if resp.status in (401, 403):
            raise SourceAuthenticationError(self.source.value, f"HTTP {resp.status}: authentication failed")
        if resp.status == 429:
            retry_after = resp.headers.get("Retry-After")
            raise SourceRateLimitError(
                self.source.value, "HTTP 429: rate limited",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if resp.status >= 500:
            raise SourceUnavailableError(self.source.value, f"HTTP {resp.status}: server error")
        if resp.status >= 400:
            raise AdapterError(self.source.value, f"HTTP {resp.status}: request rejected")

        try:
            return await resp.json(content_type=None)
        except ValueError as e:
            raise SourceUnavailableError(self.source.value, f"Invalid JSON response: {e}") from e

    async def pull(self, user_id: Optional[str], start: datetime, end: datetime) -> List[Dict[str, Any]]:
        params = {"start": start.isoformat(), "end": end.isoformat()}
        data = await self._request("GET", self._user_url(user_id, "events"), params=params)

        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("events", [])
        if not isinstance(data, list):
            raise SourceUnavailableError(self.source.value, "Unexpected payload shape for events")

        logger.debug(f"Pulled {len(data)} records from {self.source.value}")
        return data

    async def push(self, user_id: str, events: List[Event]) -> PushResult:
        if not events:
            return PushResult(success=True, synced=0)

        payload = {"events": [event.to_dict() for event in events]}
        data = await self._request("POST", self._user_url(user_id, "events"), data=payload) or {}

        errors = [str(error) for error in data.get("errors", [])]
        synced = int(data.get("synced", len(events) - len(errors)))
        return PushResult(success=not errors, synced=synced, errors=errors)

    async def authenticate(self, user_id: str) -> str:
        data = await self._request("POST", self._user_url(user_id, "authenticate")) or {}
        auth_url = data.get("authUrl") or data.get("auth_url")
        if not auth_url:
            raise SourceAuthenticationError(self.source.value, "No authorization URL returned")
        return auth_url

    async def disconnect(self, user_id: str) -> None:
        await self._request("DELETE", self._user_url(user_id, "connection"))
        logger.info(f"Disconnected {self.source.value} for user {user_id}")


def build_http_adapters(sources_config: Dict[str, Any],
                        timeout_seconds: float = 30.0) -> Dict[EventSource, SourceAdapter]:
    """sources.yaml の有効なエントリからアダプターを構築"""
    adapters: Dict[EventSource, SourceAdapter] = {}

    for name, endpoint in sources_config.items():
        try:
            source = EventSource(name)
        except ValueError:
            logger.warning(f"Unknown source in configuration: {name}")
            continue

        if not endpoint.enabled or not endpoint.base_url:
            continue

        adapters[source] = HttpSourceAdapter(
            source, endpoint.base_url,
            api_token=endpoint.api_token,
            timeout_seconds=timeout_seconds
        )

    return adapters
