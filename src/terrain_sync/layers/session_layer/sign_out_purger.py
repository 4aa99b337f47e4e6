"""
サインアウト時のローカルデータ削除
共有端末で前のユーザーのデータが残らないよう、全コレクションのローカル行を削除する
リモートのコピーには一切触れない
"""

import logging

from ...core.models import COLLECTIONS, PurgeResult
from ...core.errors import LocalStorageError
from ..sync_layer.local_store import LocalStore

logger = logging.getLogger(__name__)


class SignOutPurger:
    """ローカルデータ削除"""

    def __init__(self, local_store: LocalStore):
        self.local_store = local_store

    async def purge_local_data(self) -> PurgeResult:
        """全コレクションを単一トランザクションで削除"""
        rows_deleted = await self.local_store.purge_all()
        result = PurgeResult(rows_deleted=rows_deleted)

        # 削除漏れの確認
        for spec in COLLECTIONS:
            remaining = await self.local_store.count(spec.name)
            if remaining:
                raise LocalStorageError(f"{remaining} rows survived purge", spec.name)

        logger.info(f"Local data purged: {result.total_deleted} rows across {len(rows_deleted)} collections")
        return result
