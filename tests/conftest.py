"""
テスト共通フィクスチャ
インメモリのリモートストア・固定時計・一時SQLiteストア
"""

import asyncio
import copy
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import pytest

# テスト対象モジュールのパスを追加
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from terrain_sync.core.errors import RemoteAuthError, RemoteNetworkError, RemoteRequestError
from terrain_sync.core.models import Session
from terrain_sync.layers.remote_layer.remote_store import OWNER_COLUMN, RemoteStore
from terrain_sync.layers.session_layer.debounce_scheduler import DebounceScheduler
from terrain_sync.layers.session_layer.session_manager import SessionManager
from terrain_sync.layers.sync_layer.local_store import LocalStore
from terrain_sync.layers.sync_layer.orchestrator import SyncOrchestrator

START_TIME = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """手動で進める時計"""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeRemoteStore(RemoteStore):
    """インメモリのリモートストア（PostgRESTの所有者スコープを模倣）"""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.failing_tables: Set[str] = set()
        self.rejected_ids: Set[str] = set()
        self.auth_failure = False
        self.gate: Optional[asyncio.Event] = None

    def seed(self, table: str, row: Dict[str, Any]):
        self.tables.setdefault(table, {})[row["id"]] = copy.deepcopy(row)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(table, {}).values())

    def count_calls(self, operation: Optional[str] = None, table: Optional[str] = None) -> int:
        return sum(
            1 for op, tbl in self.calls
            if (operation is None or op == operation) and (table is None or tbl == table)
        )

    async def _check(self, operation: str, table: str):
        self.calls.append((operation, table))
        if self.gate is not None:
            await self.gate.wait()
        if self.auth_failure:
            raise RemoteAuthError(f"{operation} {table} rejected (401)", status=401)
        if table in self.failing_tables:
            raise RemoteNetworkError(f"{operation} {table} timed out")

    async def fetch_rows(self, table: str, session: Session,
                         filters: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        await self._check("fetch", table)
        rows = [row for row in self.rows(table) if row.get(OWNER_COLUMN) == session.identity]

        for column, expression in (filters or {}).items():
            operator, _, value = expression.partition(".")
            if operator == "gte":
                rows = [row for row in rows if str(row.get(column)) >= value]

        return copy.deepcopy(rows)

    async def upsert_row(self, table: str, session: Session, row: Dict[str, Any]):
        await self._check("upsert", table)
        if row["id"] in self.rejected_ids:
            raise RemoteRequestError(f"POST {table} returned 409: duplicate key", status=409)
        self.seed(table, row)

    async def delete_row(self, table: str, session: Session, row_id: str):
        await self._check("delete", table)
        existing = self.tables.get(table, {}).get(row_id)
        if existing and existing.get(OWNER_COLUMN) == session.identity:
            del self.tables[table][row_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    return Session(identity="user-1", email="user1@example.com", access_token="token-1")


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
async def local_store(tmp_path, clock):
    """テンポラリストレージ"""
    store = LocalStore(tmp_path / "terrain.db", clock=clock)
    await store.initialize()
    yield store


@pytest.fixture
async def orchestrator(local_store, remote, clock):
    """同期オーケストレーター（未サインイン状態）"""
    yield SyncOrchestrator(
        local_store=local_store,
        remote_store=remote,
        session_manager=SessionManager(),
        scheduler=DebounceScheduler(timedelta(seconds=30), clock=clock),
        clock=clock,
    )
