"""
セッション層 - 認証状態・同期頻度の制御・サインアウト時のデータ削除
"""

from .session_manager import SessionManager
from .debounce_scheduler import DebounceScheduler
from .sign_out_purger import SignOutPurger

__all__ = ['SessionManager', 'DebounceScheduler', 'SignOutPurger']
