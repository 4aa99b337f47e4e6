"""
同期オーケストレーター - 同期サイクル全体の制御
実行中ガード・デバウンス・セッション確認を経て5コレクションを同期する
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ...config.enhanced_config import EnhancedConfig
from ...core.models import (
    COLLECTIONS,
    CollectionSpec,
    CollectionSyncResult,
    PurgeResult,
    Session,
    SkipReason,
    SyncError,
    SyncSummary,
    SyncTrigger,
    utc_now,
)
from ...utils.enhanced_logger import EnhancedLogger, get_logger
from ..remote_layer.error_handler import ErrorHandler
from ..remote_layer.rate_limiter import RateLimiter
from ..remote_layer.remote_store import PostgrestRemoteStore, RemoteStore
from ..session_layer.debounce_scheduler import DebounceScheduler
from ..session_layer.session_manager import SessionManager
from ..session_layer.sign_out_purger import SignOutPurger
from .collection_synchronizer import CollectionSynchronizer, build_synchronizers
from .conflict_resolver import ConflictResolver
from .local_store import LocalStore

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """同期オーケストレーター"""

    def __init__(self,
                 local_store: LocalStore,
                 remote_store: RemoteStore,
                 session_manager: Optional[SessionManager] = None,
                 scheduler: Optional[DebounceScheduler] = None,
                 resolver: Optional[ConflictResolver] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 collections: Iterable[CollectionSpec] = COLLECTIONS,
                 concurrent_collections: bool = False,
                 daily_log_window_days: Optional[int] = 30,
                 flush_before_purge: bool = True,
                 clock: Callable[[], datetime] = utc_now,
                 enhanced_logger: Optional[EnhancedLogger] = None):

        self.local_store = local_store
        self.remote_store = remote_store
        self.session_manager = session_manager or SessionManager()
        self.scheduler = scheduler or DebounceScheduler(clock=clock)
        self.resolver = resolver or ConflictResolver()
        self.error_handler = error_handler or ErrorHandler()
        self.purger = SignOutPurger(local_store)
        self.concurrent_collections = concurrent_collections
        self.flush_before_purge = flush_before_purge
        self._clock = clock
        self.enhanced_logger = enhanced_logger or get_logger()

        self.synchronizers: List[CollectionSynchronizer] = build_synchronizers(
            list(collections), local_store, remote_store, self.resolver,
            window_days=daily_log_window_days, clock=clock
        )

        # 観測用の状態
        self._is_syncing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._last_sync_error: Optional[SyncError] = None
        self.collection_results: Dict[str, CollectionSyncResult] = {}
        self.cycles_run = 0
        self.cycles_skipped = 0

    @classmethod
    def from_config(cls, config: EnhancedConfig,
                    remote_store: Optional[RemoteStore] = None,
                    session_manager: Optional[SessionManager] = None,
                    clock: Callable[[], datetime] = utc_now) -> "SyncOrchestrator":
        """設定から同期オーケストレーターを構築"""
        if remote_store is None:
            remote_store = PostgrestRemoteStore(
                config.remote.supabase_url,
                config.remote.api_key,
                timeout_seconds=config.remote.request_timeout_seconds,
                rate_limiter=RateLimiter.from_string(config.remote.rate_limit),
            )

        return cls(
            local_store=LocalStore(config.local_storage.database_path, clock=clock),
            remote_store=remote_store,
            session_manager=session_manager,
            scheduler=DebounceScheduler(timedelta(seconds=config.sync.cooldown_seconds), clock=clock),
            resolver=ConflictResolver({'strategy': config.sync.conflict_strategy}),
            concurrent_collections=config.sync.concurrent_collections,
            daily_log_window_days=config.sync.daily_log_window_days,
            flush_before_purge=config.sync.flush_before_purge,
            clock=clock,
        )

    async def initialize(self) -> bool:
        return await self.local_store.initialize()

    # --- 観測用プロパティ ---

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def last_sync_error(self) -> Optional[SyncError]:
        return self._last_sync_error

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self.scheduler.last_sync_time

    # --- 同期サイクル ---

    async def handle_event(self, trigger: SyncTrigger) -> SyncSummary:
        """ライフサイクルイベントから同期を起動"""
        logger.debug(f"Sync trigger received: {trigger.value}")
        return await self.run_sync(force=trigger.forces_sync)

    async def run_sync(self, force: bool = False, session: Optional[Session] = None) -> SyncSummary:
        """同期サイクル実行"""
        now = self._clock()
        summary = SyncSummary(started_at=now, forced=force)

        # 1. 実行中ガード
        if self._is_syncing:
            return self._skip(summary, SkipReason.ALREADY_SYNCING)

        # 2. デバウンス
        if not self.scheduler.should_run(force=force, now=now):
            return self._skip(summary, SkipReason.DEBOUNCED)

        # 3. セッション確認（未サインインはエラーではなく何もしない）
        session = session or self.session_manager.current_session()
        if session is None:
            return self._skip(summary, SkipReason.SIGNED_OUT)

        self._is_syncing = True
        self._idle.clear()
        self._last_sync_error = None
        operation = self.enhanced_logger.log_operation_start(
            "sync_cycle", forced=force, identity=session.identity
        )

        try:
            results = await self._run_collections(session)
        finally:
            self._is_syncing = False
            self._idle.set()

        rejected_records = False
        for result in results:
            summary.results[result.collection] = result
            self.collection_results[result.collection] = result

            if result.error:
                self._last_sync_error = result.error
                self.error_handler.handle_error(result.error)
            elif result.record_error:
                rejected_records = True
                self.error_handler.handle_error(result.record_error)

        if not summary.failed_collections and not rejected_records:
            self.error_handler.record_success()

        summary.last_sync_error = self._last_sync_error
        summary.finished_at = self._clock()
        self.cycles_run += 1

        self.enhanced_logger.log_operation_end(
            operation,
            success=summary.is_successful(),
            failed_collections=summary.failed_collections,
            changes=sum(r.stats.total_changes for r in results if r.stats),
        )
        logger.info(summary.summary())

        return summary

    async def _run_collections(self, session: Session) -> List[CollectionSyncResult]:
        """コレクションごとの同期（1つの失敗で残りを中断しない）"""
        if self.concurrent_collections:
            return list(await asyncio.gather(
                *(self._sync_collection(synchronizer, session) for synchronizer in self.synchronizers)
            ))

        results = []
        for synchronizer in self.synchronizers:
            results.append(await self._sync_collection(synchronizer, session))
        return results

    async def _sync_collection(self, synchronizer: CollectionSynchronizer,
                               session: Session) -> CollectionSyncResult:
        started = time.monotonic()
        result = await synchronizer.sync(session)
        duration = time.monotonic() - started

        metrics = self.enhanced_logger.metrics
        if result.error:
            self.enhanced_logger.error(
                f"Collection sync failed: {synchronizer.name}",
                operation=f"collection_sync.{synchronizer.name}",
                error_type=result.error.kind.value,
                error_message=result.error.message,
            )
        elif metrics:
            metrics.record_success(f"collection_sync.{synchronizer.name}", duration)
            metrics.record_event(f"{synchronizer.name}.pushed", result.stats.pushed)
            metrics.record_event(f"{synchronizer.name}.pulled", result.stats.pulled)

        return result

    def _skip(self, summary: SyncSummary, reason: SkipReason) -> SyncSummary:
        summary.skipped_reason = reason
        summary.finished_at = summary.started_at
        self.cycles_skipped += 1
        logger.debug(summary.summary())
        return summary

    # --- セッション遷移 ---

    async def sign_in(self, session: Session) -> SyncSummary:
        """サインイン：未所有レコードの引き受けと強制同期"""
        self.session_manager.sign_in(session)
        self.error_handler.clear_reauthentication()
        await self.local_store.claim_unowned(session.identity)
        return await self.handle_event(SyncTrigger.AUTHENTICATION_SUCCEEDED)

    async def sign_out(self) -> PurgeResult:
        """サインアウト：未送信の変更を可能な範囲で送信してからローカルデータを削除"""
        session = self.session_manager.current_session()

        if session and self.flush_before_purge:
            await self._idle.wait()
            flush = await self.run_sync(force=True, session=session)
            if not flush.is_successful():
                logger.warning(f"Flush before sign-out incomplete: {flush.summary()}")

        # 実行中のサイクルが残っていれば終了を待つ
        await self._idle.wait()

        self.session_manager.sign_out()
        result = await self.purger.purge_local_data()

        self.scheduler.reset()
        self.collection_results.clear()
        self._last_sync_error = None
        self.error_handler.clear_reauthentication()

        return result

    def get_status(self) -> Dict[str, Any]:
        """同期状態の取得"""
        last_sync_time = self.last_sync_time
        status: Dict[str, Any] = {
            "is_syncing": self._is_syncing,
            "identity": self.session_manager.current_identity(),
            "last_sync_time": last_sync_time.isoformat() if last_sync_time else None,
            "last_sync_error": str(self._last_sync_error) if self._last_sync_error else None,
            "reauthentication_required": self.error_handler.reauthentication_required,
            "collections": {
                name: "ok" if result.is_successful() else str(result.error)
                for name, result in self.collection_results.items()
            },
            "cycles_run": self.cycles_run,
            "cycles_skipped": self.cycles_skipped,
            "errors": self.error_handler.get_statistics(),
            "conflicts": self.resolver.get_statistics(),
        }

        get_statistics = getattr(self.remote_store, "get_statistics", None)
        if callable(get_statistics):
            status["remote"] = get_statistics()

        return status
