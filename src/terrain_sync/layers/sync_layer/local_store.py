"""
ローカルストレージ
SQLiteによる5コレクションの永続化・同期ログ・サインアウト時の一括削除
UI層・同期エンジンのどちらの書き込みもこのクラスを経由する（単一の書き込み経路）
"""

import asyncio
import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import logging

import aiosqlite

from ...core.errors import LocalStorageError
from ...core.models import COLLECTIONS, CollectionSpec, SyncedEntity, get_collection, utc_now
from .timestamp_normalizer import format_timestamp, parse

logger = logging.getLogger(__name__)

_MONOTONIC_STEP = timedelta(microseconds=1)


@dataclass
class SyncLog:
    """同期ログ"""
    id: Optional[int]
    collection: str
    record_id: str
    action: str  # CREATE, UPDATE, DELETE, PULL, PUSH, PURGE
    source: str  # local, remote
    status: str
    error_message: Optional[str]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collection": self.collection,
            "record_id": self.record_id,
            "action": self.action,
            "source": self.source,
            "status": self.status,
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
        }


class LocalStore:
    """ローカルストレージ管理システム"""

    def __init__(self, database_path: Union[str, Path] = "data/terrain.db",
                 clock: Callable[[], datetime] = utc_now):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock

        # 書き込みの直列化
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> bool:
        """データベース初期化"""
        try:
            await self._create_tables()
            logger.info(f"Local store initialized: {self.database_path}")
            return True

        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to initialize local store: {e}")
            return False

    async def _create_tables(self):
        """テーブル・インデックス作成"""
        async with aiosqlite.connect(self.database_path) as db:
            for spec in COLLECTIONS:
                await db.execute(f"""
                CREATE TABLE IF NOT EXISTS {spec.table} (
                    id TEXT PRIMARY KEY,
                    owner_identity TEXT,
                    updated_at TEXT NOT NULL,
                    created_at TEXT,
                    payload TEXT NOT NULL,
                    deleted INTEGER DEFAULT 0,
                    synced_at TEXT
                )
                """)
                await db.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{spec.table}_owner ON {spec.table}(owner_identity)"
                )

            # 同期ログテーブル
            await db.execute("""
            CREATE TABLE IF NOT EXISTS sync_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                collection TEXT NOT NULL,
                record_id TEXT,
                action TEXT NOT NULL,
                source TEXT NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT,
                timestamp TEXT NOT NULL
            )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_sync_logs_timestamp ON sync_logs(timestamp)")
            await db.commit()

    # --- UI層からの書き込み ---

    async def save(self, entity: SyncedEntity) -> SyncedEntity:
        """レコード保存（updated_atは常に現在時刻に更新）"""
        spec = get_collection(entity.collection)
        payload = spec.validate_payload(entity.payload)

        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.database_path) as db:
                    db.row_factory = aiosqlite.Row
                    existing = await self._get_entity(spec, entity.id, db)

                    if existing and existing.owner_identity and entity.owner_identity != existing.owner_identity:
                        raise LocalStorageError(
                            f"Record {entity.id} belongs to another owner", spec.name
                        )

                    now = self._clock()
                    if existing and now <= existing.updated_at:
                        now = existing.updated_at + _MONOTONIC_STEP

                    stored = SyncedEntity(
                        id=entity.id,
                        collection=spec.name,
                        owner_identity=entity.owner_identity,
                        updated_at=now,
                        payload=payload,
                        deleted=False,
                        synced_at=existing.synced_at if existing else None,
                        created_at=(existing.created_at if existing else None) or entity.created_at or now,
                    )
                    await self._upsert(spec, stored, db)
                    action = "UPDATE" if existing else "CREATE"
                    await self._log_sync_action(spec.name, entity.id, action, "local", "success", None, db)
                    await db.commit()

                    logger.debug(f"Record stored: {stored} ({action})")
                    return stored

            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to store {entity.collection}/{entity.id}: {e}", spec.name)

    async def delete(self, collection: str, record_id: str) -> bool:
        """削除（墓標として残し、次回同期でリモートへ伝播）"""
        spec = get_collection(collection)

        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.database_path) as db:
                    db.row_factory = aiosqlite.Row
                    existing = await self._get_entity(spec, record_id, db)
                    if not existing or existing.deleted:
                        return False

                    now = self._clock()
                    if now <= existing.updated_at:
                        now = existing.updated_at + _MONOTONIC_STEP

                    await db.execute(
                        f"UPDATE {spec.table} SET deleted = 1, updated_at = ? WHERE id = ?",
                        (format_timestamp(now), record_id)
                    )
                    await self._log_sync_action(spec.name, record_id, "DELETE", "local", "success", None, db)
                    await db.commit()
                    return True

            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to delete {collection}/{record_id}: {e}", spec.name)

    # --- 同期エンジンからの書き込み ---
    # 読み取り後にUI層の書き込みが割り込んだ行は上書きせず、次回の同期に回す

    async def apply_remote(self, entity: SyncedEntity,
                           expected_updated_at: Optional[datetime] = None) -> bool:
        """リモートの勝者レコードを反映（updated_atはリモートの値を保持）

        expected_updated_atは競合解決時に読んだローカル行のupdated_at。
        Noneはローカル行が無かったことを表す。
        """
        spec = get_collection(entity.collection)

        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.database_path) as db:
                    db.row_factory = aiosqlite.Row
                    existing = await self._get_entity(spec, entity.id, db)

                    if existing and self._changed_since_read(existing, expected_updated_at, entity.updated_at):
                        logger.info(f"Local record changed during sync, deferring pull: {existing}")
                        return False

                    stored = SyncedEntity(
                        id=entity.id,
                        collection=spec.name,
                        owner_identity=entity.owner_identity,
                        updated_at=entity.updated_at,
                        payload=entity.payload,
                        deleted=False,
                        synced_at=entity.updated_at,
                        created_at=entity.created_at,
                    )
                    await self._upsert(spec, stored, db)
                    await self._log_sync_action(spec.name, entity.id, "PULL", "remote", "success", None, db)
                    await db.commit()
                    return True

            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to apply remote {entity}: {e}", spec.name)

    async def mark_synced(self, collection: str, record_id: str, synced_at: datetime) -> bool:
        """同期済みマーク（送信した版のupdated_atのままの行に限る）"""
        spec = get_collection(collection)

        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.database_path) as db:
                    timestamp = format_timestamp(synced_at)
                    cursor = await db.execute(
                        f"UPDATE {spec.table} SET synced_at = ? WHERE id = ? AND updated_at = ?",
                        (timestamp, record_id, timestamp)
                    )
                    if cursor.rowcount == 0:
                        logger.info(f"Local record {collection}/{record_id} changed after push")
                        return False

                    await self._log_sync_action(spec.name, record_id, "PUSH", "local", "success", None, db)
                    await db.commit()
                    return True

            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to mark {collection}/{record_id} synced: {e}", spec.name)

    async def remove(self, collection: str, record_id: str, expected_updated_at: datetime) -> bool:
        """物理削除（墓標の片付け・他端末での削除の反映）"""
        spec = get_collection(collection)

        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.database_path) as db:
                    cursor = await db.execute(
                        f"DELETE FROM {spec.table} WHERE id = ? AND updated_at = ?",
                        (record_id, format_timestamp(expected_updated_at))
                    )
                    if cursor.rowcount == 0:
                        logger.info(f"Local record {collection}/{record_id} changed during sync, keeping it")
                        return False

                    await self._log_sync_action(spec.name, record_id, "DELETE", "remote", "success", None, db)
                    await db.commit()
                    return True

            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to remove {collection}/{record_id}: {e}", spec.name)

    @staticmethod
    def _changed_since_read(existing: SyncedEntity, expected_updated_at: Optional[datetime],
                            incoming_updated_at: datetime) -> bool:
        if expected_updated_at is not None:
            return existing.updated_at != expected_updated_at
        # 読み取り時に無かった行（期間外の古い行は上書きしてよい）
        return existing.updated_at >= incoming_updated_at

    async def claim_unowned(self, owner_identity: str) -> int:
        """サインアウト中に作成されたレコードを所有者に割り当て"""
        claimed = 0

        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.database_path) as db:
                    for spec in COLLECTIONS:
                        cursor = await db.execute(
                            f"UPDATE {spec.table} SET owner_identity = ? WHERE owner_identity IS NULL",
                            (owner_identity,)
                        )
                        claimed += cursor.rowcount
                    await db.commit()

            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to claim unowned records: {e}")

        if claimed:
            logger.info(f"Claimed {claimed} unowned local records")
        return claimed

    async def purge_all(self) -> Dict[str, int]:
        """全コレクションの全行を削除（単一トランザクション、全件か0件）"""
        rows_deleted: Dict[str, int] = {}

        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.database_path) as db:
                    try:
                        for spec in COLLECTIONS:
                            cursor = await db.execute(f"DELETE FROM {spec.table}")
                            rows_deleted[spec.name] = cursor.rowcount
                        await db.execute("DELETE FROM sync_logs")
                        await db.commit()
                    except sqlite3.Error:
                        await db.rollback()
                        raise

            except sqlite3.Error as e:
                raise LocalStorageError(f"Failed to purge local data: {e}")

        return rows_deleted

    # --- 読み取り ---

    async def get(self, collection: str, record_id: str,
                  include_deleted: bool = False) -> Optional[SyncedEntity]:
        """IDによるレコード取得"""
        spec = get_collection(collection)
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                entity = await self._get_entity(spec, record_id, db)
        except sqlite3.Error as e:
            raise LocalStorageError(f"Failed to read {collection}/{record_id}: {e}", spec.name)

        if entity and entity.deleted and not include_deleted:
            return None
        return entity

    async def list_entities(self, collection: str, owner_identity: Optional[str] = None,
                            include_deleted: bool = False) -> List[SyncedEntity]:
        """レコード一覧取得"""
        spec = get_collection(collection)
        conditions = []
        params: List[Any] = []

        if owner_identity is not None:
            conditions.append("owner_identity = ?")
            params.append(owner_identity)

        if not include_deleted:
            conditions.append("deleted = 0")

        where_clause = " WHERE " + " AND ".join(conditions) if conditions else ""
        sql = f"SELECT * FROM {spec.table}{where_clause} ORDER BY id ASC"

        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise LocalStorageError(f"Failed to list {collection}: {e}", spec.name)

        return [self._row_to_entity(spec, row) for row in rows]

    async def count(self, collection: str, owner_identity: Optional[str] = None) -> int:
        """件数（墓標を含む）"""
        spec = get_collection(collection)
        sql = f"SELECT COUNT(*) FROM {spec.table}"
        params: tuple = ()
        if owner_identity is not None:
            sql += " WHERE owner_identity = ?"
            params = (owner_identity,)

        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(sql, params)
                return (await cursor.fetchone())[0]
        except sqlite3.Error as e:
            raise LocalStorageError(f"Failed to count {collection}: {e}", spec.name)

    async def _get_entity(self, spec: CollectionSpec, record_id: str,
                          db: aiosqlite.Connection) -> Optional[SyncedEntity]:
        cursor = await db.execute(f"SELECT * FROM {spec.table} WHERE id = ?", (record_id,))
        row = await cursor.fetchone()
        return self._row_to_entity(spec, row) if row else None

    async def _upsert(self, spec: CollectionSpec, entity: SyncedEntity, db: aiosqlite.Connection):
        sql = f"""
        INSERT INTO {spec.table} (
            id, owner_identity, updated_at, created_at, payload, deleted, synced_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            owner_identity = excluded.owner_identity,
            updated_at = excluded.updated_at,
            created_at = COALESCE({spec.table}.created_at, excluded.created_at),
            payload = excluded.payload,
            deleted = excluded.deleted,
            synced_at = excluded.synced_at
        """

        await db.execute(sql, (
            entity.id,
            entity.owner_identity,
            format_timestamp(entity.updated_at),
            format_timestamp(entity.created_at) if entity.created_at else None,
            json.dumps(entity.payload, ensure_ascii=False, sort_keys=True),
            int(entity.deleted),
            format_timestamp(entity.synced_at) if entity.synced_at else None,
        ))

    def _row_to_entity(self, spec: CollectionSpec, row: aiosqlite.Row) -> SyncedEntity:
        """データベース行をSyncedEntityに変換"""
        return SyncedEntity(
            id=row['id'],
            collection=spec.name,
            owner_identity=row['owner_identity'],
            updated_at=parse(row['updated_at']),
            payload=json.loads(row['payload']),
            deleted=bool(row['deleted']),
            synced_at=parse(row['synced_at']) if row['synced_at'] else None,
            created_at=parse(row['created_at']) if row['created_at'] else None,
        )

    async def _log_sync_action(self, collection: str, record_id: str, action: str, source: str,
                               status: str, error_message: Optional[str],
                               db: aiosqlite.Connection):
        """同期アクション記録"""
        sql = """
        INSERT INTO sync_logs (collection, record_id, action, source, status, error_message, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """

        await db.execute(sql, (collection, record_id, action, source, status, error_message,
                               format_timestamp(self._clock())))

    async def get_sync_logs(self, collection: Optional[str] = None, limit: int = 100) -> List[SyncLog]:
        """同期ログ取得"""
        try:
            if collection:
                sql = "SELECT * FROM sync_logs WHERE collection = ? ORDER BY id DESC LIMIT ?"
                params = (collection, limit)
            else:
                sql = "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?"
                params = (limit,)

            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()

                return [
                    SyncLog(
                        id=row['id'],
                        collection=row['collection'],
                        record_id=row['record_id'],
                        action=row['action'],
                        source=row['source'],
                        status=row['status'],
                        error_message=row['error_message'],
                        timestamp=parse(row['timestamp'])
                    )
                    for row in rows
                ]

        except sqlite3.Error as e:
            logger.error(f"Failed to get sync logs: {e}")
            return []

    async def cleanup_old_logs(self, retention_days: int = 30):
        """古い同期ログのクリーンアップ"""
        cutoff_date = self._clock() - timedelta(days=retention_days)

        try:
            async with self._write_lock:
                async with aiosqlite.connect(self.database_path) as db:
                    await db.execute("DELETE FROM sync_logs WHERE timestamp < ?", (format_timestamp(cutoff_date),))
                    await db.commit()
            logger.info(f"Cleaned up sync logs older than {retention_days} days")

        except sqlite3.Error as e:
            logger.error(f"Failed to cleanup old sync logs: {e}")

    async def get_storage_statistics(self) -> Dict[str, Any]:
        """ストレージ統計情報"""
        try:
            stats: Dict[str, Any] = {}

            async with aiosqlite.connect(self.database_path) as db:
                for spec in COLLECTIONS:
                    cursor = await db.execute(f"SELECT COUNT(*) FROM {spec.table} WHERE deleted = 0")
                    stats[f"{spec.name}_records"] = (await cursor.fetchone())[0]

                    cursor = await db.execute(
                        f"SELECT COUNT(*) FROM {spec.table} WHERE synced_at IS NULL OR synced_at != updated_at"
                    )
                    stats[f"{spec.name}_pending"] = (await cursor.fetchone())[0]

                cursor = await db.execute("SELECT COUNT(*) FROM sync_logs")
                stats['total_sync_logs'] = (await cursor.fetchone())[0]

            stats['database_size_mb'] = self.database_path.stat().st_size / (1024 * 1024)
            return stats

        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to get storage statistics: {e}")
            return {}
