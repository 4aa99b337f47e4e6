"""
同期エンジンの例外体系とエラー分類
ネットワーク・認証・リクエスト拒否・シリアライズ・ローカルストレージの5系統に分類する
"""

import asyncio
import json
import sqlite3
from enum import Enum
from typing import Optional

import aiohttp


class SyncErrorKind(Enum):
    """エラー種別"""
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    REQUEST = "request"
    SERIALIZATION = "serialization"
    LOCAL_STORAGE = "local_storage"
    UNKNOWN = "unknown"


class SyncEngineError(Exception):
    """同期エンジン例外の基底クラス"""
    kind = SyncErrorKind.UNKNOWN

    def __init__(self, message: str, collection: Optional[str] = None):
        super().__init__(message)
        self.collection = collection


class RemoteNetworkError(SyncEngineError):
    """タイムアウト・接続断・サーバーエラー"""
    kind = SyncErrorKind.NETWORK

    def __init__(self, message: str, collection: Optional[str] = None,
                 status: Optional[int] = None):
        super().__init__(message, collection)
        self.status = status


class RemoteAuthError(SyncEngineError):
    """セッション期限切れ・アクセス拒否"""
    kind = SyncErrorKind.AUTHENTICATION

    def __init__(self, message: str, collection: Optional[str] = None,
                 status: Optional[int] = None):
        super().__init__(message, collection)
        self.status = status


class RemoteRequestError(SyncEngineError):
    """その他の4xx応答（一意制約違反・スキーマ不一致など、レコード単位の拒否）"""
    kind = SyncErrorKind.REQUEST

    def __init__(self, message: str, collection: Optional[str] = None,
                 status: Optional[int] = None):
        super().__init__(message, collection)
        self.status = status


class SerializationError(SyncEngineError):
    """リモート行・ペイロードの形式不正"""
    kind = SyncErrorKind.SERIALIZATION


class LocalStorageError(SyncEngineError):
    """ローカル永続化層のエラー"""
    kind = SyncErrorKind.LOCAL_STORAGE


def classify_error(error: BaseException) -> SyncErrorKind:
    """例外を分類して種別を返す"""
    if isinstance(error, SyncEngineError):
        return error.kind

    # ライブラリ由来の例外
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        if isinstance(error, aiohttp.ClientResponseError) and error.status in (401, 403):
            return SyncErrorKind.AUTHENTICATION
        return SyncErrorKind.NETWORK

    if isinstance(error, sqlite3.Error):
        return SyncErrorKind.LOCAL_STORAGE

    if isinstance(error, (json.JSONDecodeError, KeyError, TypeError, ValueError)):
        return SyncErrorKind.SERIALIZATION

    # メッセージによる推定
    error_message = str(error).lower()

    if any(keyword in error_message for keyword in ['connection', 'timeout', 'network']):
        return SyncErrorKind.NETWORK

    if any(keyword in error_message for keyword in ['unauthorized', '401', '403', 'jwt expired']):
        return SyncErrorKind.AUTHENTICATION

    return SyncErrorKind.UNKNOWN
