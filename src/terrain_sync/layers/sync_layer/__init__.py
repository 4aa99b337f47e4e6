"""
同期層 - ローカルストアとリモートストアの双方向同期を管理
"""

from .timestamp_normalizer import FAR_PAST, format_timestamp, parse, try_parse
from .conflict_resolver import ConflictResolver, ConflictStrategy
from .local_store import LocalStore, SyncLog
from .collection_synchronizer import CollectionSynchronizer

__all__ = [
    'FAR_PAST', 'format_timestamp', 'parse', 'try_parse',
    'ConflictResolver', 'ConflictStrategy',
    'LocalStore', 'SyncLog',
    'CollectionSynchronizer'
]
