"""
コレクション同期
1コレクション分の pull → 競合解決 → push を行う
このコレクション内の障害はSyncErrorに変換して返し、上位へは例外を投げない
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ...core.errors import RemoteRequestError, SerializationError
from ...core.models import (
    CollectionSpec,
    CollectionSyncResult,
    Session,
    SyncedEntity,
    SyncError,
    SyncStats,
    utc_now,
)
from ..remote_layer.remote_store import OWNER_COLUMN, RemoteStore
from .conflict_resolver import ConflictResolver
from .local_store import LocalStore
from .timestamp_normalizer import format_timestamp, parse, try_parse

logger = logging.getLogger(__name__)

RESERVED_COLUMNS = ("id", OWNER_COLUMN, "updated_at", "created_at")


def entity_to_row(entity: SyncedEntity, owner_identity: str) -> Dict[str, Any]:
    """SyncedEntityをリモート行（フラットな列）に変換"""
    row = dict(entity.payload)
    row.update({
        "id": entity.id,
        OWNER_COLUMN: owner_identity,
        "updated_at": format_timestamp(entity.updated_at),
        "created_at": format_timestamp(entity.created_at or entity.updated_at),
    })
    return row


def entity_from_row(spec: CollectionSpec, row: Any, owner_identity: str) -> SyncedEntity:
    """リモート行をSyncedEntityに変換（形式不正はSerializationError）"""
    if not isinstance(row, dict):
        raise SerializationError(f"Row is not an object: {row!r}", spec.name)

    record_id = row.get("id")
    if not isinstance(record_id, str) or not record_id:
        raise SerializationError(f"Row without a usable id: {row!r}", spec.name)

    row_owner = row.get(OWNER_COLUMN)
    if row_owner is not None and str(row_owner) != owner_identity:
        raise SerializationError(f"Row {record_id} belongs to another identity", spec.name)

    payload = spec.validate_payload(
        {key: value for key, value in row.items() if key not in RESERVED_COLUMNS}
    )

    return SyncedEntity(
        id=record_id,
        collection=spec.name,
        owner_identity=owner_identity,
        updated_at=parse(row.get("updated_at")),
        payload=payload,
        created_at=try_parse(row.get("created_at")),
    )


class CollectionSynchronizer:
    """コレクション単位の同期"""

    def __init__(self, spec: CollectionSpec,
                 local_store: LocalStore,
                 remote_store: RemoteStore,
                 resolver: ConflictResolver,
                 window_days: Optional[int] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.spec = spec
        self.local_store = local_store
        self.remote_store = remote_store
        self.resolver = resolver
        self.window_days = window_days if spec.window_field else None
        self._clock = clock
        self._record_error: Optional[SyncError] = None

    @property
    def name(self) -> str:
        return self.spec.name

    async def sync(self, session: Session) -> CollectionSyncResult:
        """1サイクル分の同期（例外は投げずに結果として返す）"""
        stats = SyncStats(collection=self.spec.name)
        self._record_error = None

        try:
            await self._sync(session, stats)

        except Exception as e:
            error = SyncError.from_exception(self.spec.name, e, now=self._clock())
            logger.error(f"Collection sync failed for {self.spec.name}: {error}")
            return CollectionSyncResult.failure(error, stats)

        logger.info(f"Collection synced: {stats.summary()}")
        return CollectionSyncResult.ok(stats, record_error=self._record_error)

    async def _sync(self, session: Session, stats: SyncStats):
        owner = session.identity
        filters, cutoff = self._window()

        # 1. リモート取得
        remote_rows = await self.remote_store.fetch_rows(self.spec.table, session, filters)
        stats.remote_rows = len(remote_rows)

        remote: Dict[str, SyncedEntity] = {}
        skipped_ids: Set[str] = set()
        for row in remote_rows:
            try:
                entity = entity_from_row(self.spec, row, owner)
            except SerializationError as e:
                stats.skipped += 1
                logger.warning(f"Skipping malformed {self.spec.name} row: {e}")
                # 読めない行のIDはローカル側も削除・送信しない
                if isinstance(row, dict) and isinstance(row.get("id"), str):
                    skipped_ids.add(row["id"])
                continue
            if self._in_window(entity, cutoff):
                remote[entity.id] = entity

        # 2. ローカル取得（墓標を含む）
        local = {
            entity.id: entity
            for entity in await self.local_store.list_entities(self.spec.name, owner, include_deleted=True)
            if self._in_window(entity, cutoff)
        }
        stats.local_rows = len(local)

        # 3. IDごとに競合解決して書き戻し
        for record_id in sorted((set(local) | set(remote)) - skipped_ids):
            try:
                await self._reconcile(session, local.get(record_id), remote.get(record_id), stats)
            except (SerializationError, RemoteRequestError) as e:
                stats.skipped += 1
                self._record_error = SyncError.from_exception(self.spec.name, e, now=self._clock())
                logger.warning(f"Skipping {self.spec.name}/{record_id}: {e}")

    async def _reconcile(self, session: Session,
                         local: Optional[SyncedEntity],
                         remote: Optional[SyncedEntity],
                         stats: SyncStats):
        """1レコード分の pull → resolve → push"""
        if local and remote:
            if not local.same_content(remote):
                stats.conflicts += 1

            winner = self.resolver.resolve(local, remote)

            if winner is local:
                if local.deleted:
                    await self.remote_store.delete_row(self.spec.table, session, local.id)
                    stats.deleted_remote += 1
                    if not await self.local_store.remove(self.spec.name, local.id, local.updated_at):
                        stats.deferred += 1
                elif not local.same_content(remote):
                    await self._push(session, local)
                    stats.pushed += 1
                else:
                    if local.synced_at != local.updated_at:
                        await self.local_store.mark_synced(self.spec.name, local.id, local.updated_at)
                    stats.unchanged += 1
            elif await self.local_store.apply_remote(remote, expected_updated_at=local.updated_at):
                stats.pulled += 1
            else:
                stats.deferred += 1

        elif local:
            if local.deleted:
                # リモートに存在しない墓標は片付けるだけ
                await self.local_store.remove(self.spec.name, local.id, local.updated_at)
            elif local.synced_at is not None and local.updated_at <= local.synced_at:
                # 同期済みかつ未変更のままリモートから消えた → 他端末で削除された
                if await self.local_store.remove(self.spec.name, local.id, local.updated_at):
                    stats.deleted_local += 1
                else:
                    stats.deferred += 1
            else:
                await self._push(session, local)
                stats.pushed += 1

        elif remote:
            if await self.local_store.apply_remote(remote):
                stats.pulled += 1
            else:
                stats.deferred += 1

    async def _push(self, session: Session, entity: SyncedEntity):
        await self.remote_store.upsert_row(self.spec.table, session, entity_to_row(entity, session.identity))
        await self.local_store.mark_synced(self.spec.name, entity.id, entity.updated_at)

    def _window(self) -> Tuple[Optional[Dict[str, str]], Optional[str]]:
        """期間絞り込み（日次ログは直近N日のみ）"""
        if not self.window_days or not self.spec.window_field:
            return None, None

        cutoff = (self._clock() - timedelta(days=self.window_days)).date().isoformat()
        return {self.spec.window_field: f"gte.{cutoff}"}, cutoff

    def _in_window(self, entity: SyncedEntity, cutoff: Optional[str]) -> bool:
        if cutoff is None:
            return True
        value = entity.payload.get(self.spec.window_field)
        return not isinstance(value, str) or value >= cutoff


def build_synchronizers(specs: List[CollectionSpec],
                        local_store: LocalStore,
                        remote_store: RemoteStore,
                        resolver: ConflictResolver,
                        window_days: Optional[int] = None,
                        clock: Callable[[], datetime] = utc_now) -> List[CollectionSynchronizer]:
    """コレクション定義から同期器を生成"""
    return [
        CollectionSynchronizer(spec, local_store, remote_store, resolver, window_days, clock)
        for spec in specs
    ]
