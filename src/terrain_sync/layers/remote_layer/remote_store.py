"""
リモートストア（Supabase / PostgREST）
所有者スコープでの行の取得・upsert・削除を提供する
アクセス制御（所有者以外の行は見えない）はサーバー側の行レベルセキュリティに依存する
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from ...core.errors import RemoteAuthError, RemoteNetworkError, RemoteRequestError, SerializationError
from ...core.models import Session
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

OWNER_COLUMN = "user_id"


class RemoteStore(ABC):
    """リモートストア抽象基底クラス"""

    @abstractmethod
    async def fetch_rows(self, table: str, session: Session,
                         filters: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """所有者の全行を取得"""
        pass

    @abstractmethod
    async def upsert_row(self, table: str, session: Session, row: Dict[str, Any]):
        """行の作成・更新"""
        pass

    @abstractmethod
    async def delete_row(self, table: str, session: Session, row_id: str):
        """行の削除"""
        pass


class PostgrestRemoteStore(RemoteStore):
    """PostgREST（Supabase REST API）クライアント"""

    def __init__(self, base_url: str, api_key: str,
                 timeout_seconds: float = 15.0,
                 rate_limiter: Optional[RateLimiter] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.rate_limiter = rate_limiter

        # 統計情報
        self.total_requests = 0
        self.total_failures = 0

    def _headers(self, session: Session, prefer: Optional[str] = None) -> Dict[str, str]:
        if not session.access_token:
            raise RemoteAuthError("Session has no access token")
        if session.is_expired():
            raise RemoteAuthError("Session expired", status=401)

        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {session.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(self, method: str, table: str, session: Session,
                       params: Optional[Dict[str, str]] = None,
                       body: Optional[Any] = None,
                       prefer: Optional[str] = None) -> str:
        """HTTPリクエスト送信（失敗は同期エンジンの例外に変換）"""
        headers = self._headers(session, prefer)
        url = f"{self.base_url}/rest/v1/{table}"

        if self.rate_limiter:
            await self.rate_limiter.wait_for_slot()

        self.total_requests += 1
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as http:
                async with http.request(method, url, params=params, json=body, headers=headers) as response:
                    response_text = await response.text()
                    status = response.status

        except asyncio.TimeoutError:
            self.total_failures += 1
            raise RemoteNetworkError(f"{method} {table} timed out after {self.timeout.total}s")
        except aiohttp.ClientError as e:
            self.total_failures += 1
            raise RemoteNetworkError(f"{method} {table} failed: {e}")

        if status in (401, 403):
            self.total_failures += 1
            raise RemoteAuthError(f"{method} {table} rejected ({status}): {response_text}", status=status)
        if status == 429 or status >= 500:
            self.total_failures += 1
            raise RemoteNetworkError(f"{method} {table} returned {status}: {response_text}", status=status)
        if status >= 400:
            self.total_failures += 1
            raise RemoteRequestError(f"{method} {table} returned {status}: {response_text}", status=status)

        return response_text

    async def fetch_rows(self, table: str, session: Session,
                         filters: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        params = {"select": "*", OWNER_COLUMN: f"eq.{session.identity}"}
        params.update(filters or {})

        response_text = await self._request("GET", table, session, params=params)

        try:
            rows = json.loads(response_text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Malformed response from {table}: {e}")

        if not isinstance(rows, list):
            raise SerializationError(f"Expected a row list from {table}, got {type(rows).__name__}")

        logger.debug(f"Fetched {len(rows)} rows from {table}")
        return rows

    async def upsert_row(self, table: str, session: Session, row: Dict[str, Any]):
        await self._request(
            "POST", table, session,
            params={"on_conflict": "id"},
            body=row,
            prefer="resolution=merge-duplicates,return=minimal"
        )

    async def delete_row(self, table: str, session: Session, row_id: str):
        await self._request(
            "DELETE", table, session,
            params={"id": f"eq.{row_id}", OWNER_COLUMN: f"eq.{session.identity}"},
            prefer="return=minimal"
        )

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "rate_limited": self.rate_limiter is not None,
        }
