"""
Terrain Sync - オフラインファーストの双方向同期エンジン
ローカルSQLiteとSupabaseの間で5つのユーザーデータコレクションを同期する
"""

from .core.models import COLLECTIONS, Session, SyncedEntity, SyncSummary, SyncTrigger
from .layers.sync_layer.orchestrator import SyncOrchestrator

__version__ = "1.0.0"

__all__ = [
    'COLLECTIONS', 'Session', 'SyncedEntity', 'SyncSummary', 'SyncTrigger',
    'SyncOrchestrator',
]
