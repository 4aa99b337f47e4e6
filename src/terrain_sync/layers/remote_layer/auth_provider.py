"""
外部認証プロバイダー（Supabase Auth / GoTrue）
同期コアは認証を実装せず、ここで得たSessionのidentityだけを利用する
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Optional

import aiohttp

from ...core.errors import RemoteAuthError, RemoteNetworkError, SerializationError
from ...core.models import Session, utc_now

logger = logging.getLogger(__name__)


class AuthProvider(ABC):
    """認証プロバイダー抽象基底クラス"""

    @abstractmethod
    async def current_session(self) -> Optional[Session]:
        """現在サインイン中のセッション（なければNone）"""
        pass

    @abstractmethod
    async def sign_out(self):
        pass


class SupabaseAuthProvider(AuthProvider):
    """Supabase Auth クライアント"""

    def __init__(self, base_url: str, api_key: str, timeout_seconds: float = 15.0):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[Session] = None

    async def current_session(self) -> Optional[Session]:
        if self._session and self._session.is_expired() and self._session.refresh_token:
            try:
                await self.refresh()
            except RemoteAuthError as e:
                logger.warning(f"Session refresh failed: {e}")
                self._session = None
        return self._session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """メールアドレス・パスワードでサインイン"""
        data = await self._post("/auth/v1/token", {"email": email, "password": password},
                                params={"grant_type": "password"})
        self._session = self._session_from_response(data)
        logger.info(f"Signed in as {self._session.identity}")
        return self._session

    async def sign_in_with_id_token(self, id_token: str, nonce: Optional[str] = None,
                                    provider: str = "apple") -> Session:
        """外部IDプロバイダー（Sign in with Apple等）のIDトークンでサインイン"""
        body = {"provider": provider, "id_token": id_token}
        if nonce:
            body["nonce"] = nonce

        data = await self._post("/auth/v1/token", body, params={"grant_type": "id_token"})
        self._session = self._session_from_response(data)
        logger.info(f"Signed in with {provider} as {self._session.identity}")
        return self._session

    async def sign_up(self, email: str, password: str) -> Session:
        """新規登録"""
        data = await self._post("/auth/v1/signup", {"email": email, "password": password})
        self._session = self._session_from_response(data)
        return self._session

    async def refresh(self) -> Session:
        """トークン更新"""
        if not self._session or not self._session.refresh_token:
            raise RemoteAuthError("No refresh token available")

        data = await self._post("/auth/v1/token", {"refresh_token": self._session.refresh_token},
                                params={"grant_type": "refresh_token"})
        self._session = self._session_from_response(data)
        return self._session

    async def sign_out(self):
        """サインアウト（サーバー側の失敗はローカル状態の破棄を妨げない）"""
        session, self._session = self._session, None
        if not session or not session.access_token:
            return

        try:
            await self._post("/auth/v1/logout", None, access_token=session.access_token)
        except (RemoteAuthError, RemoteNetworkError) as e:
            logger.warning(f"Remote sign-out failed: {e}")

    async def _post(self, path: str, body: Optional[Dict[str, Any]],
                    params: Optional[Dict[str, str]] = None,
                    access_token: Optional[str] = None) -> Dict[str, Any]:
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as http:
                async with http.post(f"{self.base_url}{path}", json=body,
                                     params=params, headers=headers) as response:
                    response_text = await response.text()
                    status = response.status
        except asyncio.TimeoutError:
            raise RemoteNetworkError(f"Auth request {path} timed out")
        except aiohttp.ClientError as e:
            raise RemoteNetworkError(f"Auth request {path} failed: {e}")

        if status in (400, 401, 403, 422):
            raise RemoteAuthError(f"Authentication rejected ({status}): {response_text}", status=status)
        if status >= 400:
            raise RemoteNetworkError(f"Auth request {path} returned {status}", status=status)

        if not response_text:
            return {}
        try:
            return json.loads(response_text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Malformed auth response: {e}")

    @staticmethod
    def _session_from_response(data: Dict[str, Any]) -> Session:
        user = data.get("user") or {}
        if not user.get("id") or not data.get("access_token"):
            raise RemoteAuthError("Auth response did not contain a session")

        expires_in = data.get("expires_in")
        return Session(
            identity=str(user["id"]),
            email=user.get("email"),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None,
        )
