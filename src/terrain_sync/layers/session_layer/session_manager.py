"""
セッション管理
リモート操作を行ってよい認証済みidentityがあるかどうかを保持する
"""

import logging
from typing import Callable, List, Optional

from ...core.models import Session
from ..remote_layer.auth_provider import AuthProvider

logger = logging.getLogger(__name__)


class SessionManager:
    """セッション管理"""

    def __init__(self, session: Optional[Session] = None):
        self._session = session
        self._listeners: List[Callable[[Optional[Session]], None]] = []

    def sign_in(self, session: Session):
        """サインイン"""
        if not session.identity:
            raise ValueError("Session identity must not be empty")

        previous = self._session
        self._session = session

        if previous and previous.identity != session.identity:
            logger.warning(f"Session switched from {previous.identity} to {session.identity} without sign-out")
        logger.info(f"Session established for {session.identity}")
        self._notify()

    def sign_out(self) -> Optional[Session]:
        """サインアウト（直前のセッションを返す）"""
        previous, self._session = self._session, None
        if previous:
            logger.info(f"Session cleared for {previous.identity}")
            self._notify()
        return previous

    def current_identity(self) -> Optional[str]:
        return self._session.identity if self._session else None

    def current_session(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    async def restore(self, provider: AuthProvider) -> Optional[Session]:
        """起動時に認証プロバイダーからセッションを復元"""
        session = await provider.current_session()
        if session:
            self.sign_in(session)
        else:
            self.sign_out()
        return session

    def add_listener(self, listener: Callable[[Optional[Session]], None]):
        """セッション変化の通知先を登録"""
        self._listeners.append(listener)

    def _notify(self):
        for listener in self._listeners:
            listener(self._session)
