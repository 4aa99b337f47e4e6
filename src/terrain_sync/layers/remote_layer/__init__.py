"""
リモート層 - Supabase（PostgREST / Auth）との通信とエラー集計
"""

from .remote_store import RemoteStore, PostgrestRemoteStore
from .auth_provider import AuthProvider, SupabaseAuthProvider
from .rate_limiter import RateLimiter
from .error_handler import ErrorHandler

__all__ = [
    'RemoteStore', 'PostgrestRemoteStore',
    'AuthProvider', 'SupabaseAuthProvider',
    'RateLimiter', 'ErrorHandler'
]
