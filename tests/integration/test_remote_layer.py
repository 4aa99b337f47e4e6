"""
リモート層 統合テスト
PostgREST/Auth互換のテストサーバーに対する通信・エラー分類・レート制限
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from terrain_sync.core.errors import (
    RemoteAuthError,
    RemoteNetworkError,
    RemoteRequestError,
    SerializationError,
    SyncErrorKind,
    classify_error,
)
from terrain_sync.core.models import PROFILE, Session, SyncedEntity, SyncError
from terrain_sync.layers.remote_layer.auth_provider import SupabaseAuthProvider
from terrain_sync.layers.remote_layer.error_handler import ErrorHandler, RecoveryAction
from terrain_sync.layers.remote_layer.rate_limiter import RateLimiter
from terrain_sync.layers.remote_layer.remote_store import PostgrestRemoteStore
from terrain_sync.layers.sync_layer.collection_synchronizer import CollectionSynchronizer
from terrain_sync.layers.sync_layer.conflict_resolver import ConflictResolver

API_KEY = "anon-key"


def build_app() -> web.Application:
    """PostgREST / GoTrue の最小限のモック"""
    app = web.Application()
    app["rows"] = {}
    app["requests"] = []
    app["auth_bodies"] = []

    def check_headers(request):
        app["requests"].append(request)
        if request.headers.get("apikey") != API_KEY:
            raise web.HTTPUnauthorized(text="missing apikey")
        if request.headers.get("Authorization") == "Bearer expired":
            raise web.HTTPUnauthorized(text='{"message":"JWT expired"}')

    async def select_rows(request):
        check_headers(request)
        table = request.match_info["table"]
        if table == "broken":
            raise web.HTTPInternalServerError(text="boom")
        if table == "garbage":
            return web.Response(text="<html>not json</html>")
        if table == "object":
            return web.json_response({"id": "x"})
        if table == "slow":
            await asyncio.sleep(1)
            return web.json_response([])

        owner = request.query.get("user_id", "").replace("eq.", "", 1)
        rows = [row for row in app["rows"].get(table, {}).values() if row.get("user_id") == owner]
        return web.json_response(rows)

    async def upsert_row(request):
        check_headers(request)
        table = request.match_info["table"]
        if table == "strict":
            raise web.HTTPBadRequest(text='{"message":"column does not exist"}')
        row = await request.json()
        app["rows"].setdefault(table, {})[row["id"]] = row
        return web.Response(status=201)

    async def delete_row(request):
        check_headers(request)
        table = request.match_info["table"]
        row_id = request.query["id"].replace("eq.", "", 1)
        app["rows"].get(table, {}).pop(row_id, None)
        return web.Response(status=204)

    async def token(request):
        body = await request.json()
        grant_type = request.query.get("grant_type")
        app["auth_bodies"].append(body)
        if grant_type == "password" and body.get("password") != "correct":
            return web.json_response({"error": "invalid_grant"}, status=400)
        if grant_type == "id_token" and body.get("id_token") != "apple-id-token":
            return web.json_response({"error": "invalid_grant"}, status=400)
        return web.json_response({
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expires_in": 3600,
            "user": {"id": "user-1", "email": body.get("email", "user1@example.com")},
        })

    async def logout(request):
        return web.Response(status=204)

    app.router.add_get("/rest/v1/{table}", select_rows)
    app.router.add_post("/rest/v1/{table}", upsert_row)
    app.router.add_delete("/rest/v1/{table}", delete_row)
    app.router.add_post("/auth/v1/token", token)
    app.router.add_post("/auth/v1/logout", logout)
    return app


@pytest.fixture
async def server():
    test_server = TestServer(build_app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.fixture
def base_url(server):
    return str(server.make_url("")).rstrip("/")


@pytest.fixture
def session():
    return Session(identity="user-1", access_token="access-1")


class TestPostgrestRemoteStore:
    """PostgRESTクライアントのテスト"""

    @pytest.mark.asyncio
    async def test_upsert_fetch_delete(self, server, base_url, session):
        store = PostgrestRemoteStore(base_url, API_KEY)
        row = {"id": "rec-1", "user_id": "user-1", "updated_at": "2026-03-10T12:00:00.000000+00:00",
               "ingredient_id": "ginger"}

        await store.upsert_row("user_cabinets", session, row)
        assert await store.fetch_rows("user_cabinets", session) == [row]

        upsert_request = server.app["requests"][0]
        assert upsert_request.query["on_conflict"] == "id"
        assert "resolution=merge-duplicates" in upsert_request.headers["Prefer"]
        assert upsert_request.headers["Authorization"] == "Bearer access-1"

        await store.delete_row("user_cabinets", session, "rec-1")
        assert await store.fetch_rows("user_cabinets", session) == []
        assert store.get_statistics()["total_requests"] == 4

    @pytest.mark.asyncio
    async def test_fetch_is_owner_scoped(self, server, base_url, session):
        server.app["rows"]["user_cabinets"] = {
            "mine": {"id": "mine", "user_id": "user-1"},
            "theirs": {"id": "theirs", "user_id": "user-2"},
        }
        store = PostgrestRemoteStore(base_url, API_KEY)

        rows = await store.fetch_rows("user_cabinets", session, filters={"date": "gte.2026-02-08"})

        assert [row["id"] for row in rows] == ["mine"]
        request = server.app["requests"][-1]
        assert request.query["user_id"] == "eq.user-1"
        assert request.query["date"] == "gte.2026-02-08"

    @pytest.mark.asyncio
    async def test_rejected_token_is_auth_error(self, base_url):
        store = PostgrestRemoteStore(base_url, API_KEY)
        with pytest.raises(RemoteAuthError) as exc_info:
            await store.fetch_rows("user_cabinets", Session(identity="user-1", access_token="expired"))
        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_expired_session_fails_without_request(self, server, base_url):
        store = PostgrestRemoteStore(base_url, API_KEY)
        expired = Session(identity="user-1", access_token="access-1",
                          expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))

        with pytest.raises(RemoteAuthError):
            await store.fetch_rows("user_cabinets", expired)
        with pytest.raises(RemoteAuthError):
            await store.fetch_rows("user_cabinets", Session(identity="user-1"))
        assert server.app["requests"] == []

    @pytest.mark.asyncio
    async def test_server_error_is_network_error(self, base_url, session):
        store = PostgrestRemoteStore(base_url, API_KEY)
        with pytest.raises(RemoteNetworkError) as exc_info:
            await store.fetch_rows("broken", session)
        assert exc_info.value.status == 500
        assert store.get_statistics()["total_failures"] == 1

    @pytest.mark.asyncio
    async def test_client_error_is_request_error(self, base_url, session):
        store = PostgrestRemoteStore(base_url, API_KEY)
        with pytest.raises(RemoteRequestError):
            await store.upsert_row("strict", session, {"id": "rec-1"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("table", ["garbage", "object"])
    async def test_malformed_body_is_serialization_error(self, base_url, session, table):
        store = PostgrestRemoteStore(base_url, API_KEY)
        with pytest.raises(SerializationError):
            await store.fetch_rows(table, session)

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self, base_url, session):
        store = PostgrestRemoteStore(base_url, API_KEY, timeout_seconds=0.1)
        with pytest.raises(RemoteNetworkError):
            await store.fetch_rows("slow", session)

    @pytest.mark.asyncio
    async def test_unreachable_server_is_network_error(self, session):
        store = PostgrestRemoteStore("http://127.0.0.1:9", API_KEY, timeout_seconds=1)
        with pytest.raises(RemoteNetworkError):
            await store.fetch_rows("user_cabinets", session)

    @pytest.mark.asyncio
    async def test_synchronizer_round_trip(self, server, base_url, session, local_store, clock):
        """ローカルのみのプロフィールが実際のHTTP経由で同じupdated_atのまま作成される"""
        stored = await local_store.save(
            SyncedEntity.create("profile", {"terrain_profile_id": "warm_excess"}, "user-1")
        )
        synchronizer = CollectionSynchronizer(
            PROFILE, local_store, PostgrestRemoteStore(base_url, API_KEY), ConflictResolver(), clock=clock
        )

        first = await synchronizer.sync(session)
        second = await synchronizer.sync(session)

        assert first.stats.pushed == 1
        assert second.stats.total_changes == 0
        remote_row = server.app["rows"]["user_profiles"][stored.id]
        assert remote_row["updated_at"] == "2026-03-10T12:00:00.000000+00:00"
        assert remote_row["user_id"] == "user-1"


class TestSupabaseAuthProvider:
    """認証プロバイダーのテスト"""

    @pytest.mark.asyncio
    async def test_sign_in_returns_session(self, base_url):
        provider = SupabaseAuthProvider(base_url, API_KEY)

        session = await provider.sign_in_with_password("user1@example.com", "correct")

        assert session.identity == "user-1"
        assert session.access_token == "access-1"
        assert not session.is_expired()
        assert await provider.current_session() == session

    @pytest.mark.asyncio
    async def test_wrong_password_is_auth_error(self, base_url):
        provider = SupabaseAuthProvider(base_url, API_KEY)
        with pytest.raises(RemoteAuthError):
            await provider.sign_in_with_password("user1@example.com", "wrong")
        assert await provider.current_session() is None

    @pytest.mark.asyncio
    async def test_sign_in_with_apple_id_token(self, server, base_url):
        provider = SupabaseAuthProvider(base_url, API_KEY)

        session = await provider.sign_in_with_id_token("apple-id-token", nonce="nonce-1")

        assert session.identity == "user-1"
        assert server.app["auth_bodies"][-1] == {
            "provider": "apple", "id_token": "apple-id-token", "nonce": "nonce-1"
        }

        with pytest.raises(RemoteAuthError):
            await provider.sign_in_with_id_token("forged-token")

    @pytest.mark.asyncio
    async def test_sign_out_clears_session(self, base_url):
        provider = SupabaseAuthProvider(base_url, API_KEY)
        await provider.sign_in_with_password("user1@example.com", "correct")

        await provider.sign_out()

        assert await provider.current_session() is None


class TestRateLimiter:
    """レート制限のテスト"""

    def test_parse_rate_limit_string(self):
        limiter = RateLimiter.from_string("120/minute")
        assert limiter.max_requests == 120
        assert limiter.time_window == 60
        assert RateLimiter.from_string(None) is None
        assert RateLimiter.from_string("lots") is None

    @pytest.mark.asyncio
    async def test_sliding_window(self):
        now = [0.0]
        limiter = RateLimiter(2, 10, clock=lambda: now[0])

        assert await limiter.acquire()
        assert await limiter.acquire()
        assert not await limiter.acquire()
        assert limiter.wait_time() == 10

        now[0] = 10.0
        assert await limiter.acquire()


class TestErrorHandling:
    """エラー分類・集計のテスト"""

    @pytest.mark.parametrize("error, kind", [
        (RemoteAuthError("expired"), SyncErrorKind.AUTHENTICATION),
        (RemoteNetworkError("down"), SyncErrorKind.NETWORK),
        (RemoteRequestError("bad column"), SyncErrorKind.REQUEST),
        (SerializationError("bad row"), SyncErrorKind.SERIALIZATION),
        (asyncio.TimeoutError(), SyncErrorKind.NETWORK),
        (aiohttp.ClientConnectionError("refused"), SyncErrorKind.NETWORK),
        (json.JSONDecodeError("bad", "doc", 0), SyncErrorKind.SERIALIZATION),
        (RuntimeError("jwt expired"), SyncErrorKind.AUTHENTICATION),
        (RuntimeError("something odd"), SyncErrorKind.UNKNOWN),
    ])
    def test_classify_error(self, error, kind):
        assert classify_error(error) == kind

    def test_auth_error_requires_reauthentication(self):
        handler = ErrorHandler()
        error = SyncError.from_exception("profile", RemoteAuthError("expired", status=401))

        assert handler.handle_error(error) == RecoveryAction.REAUTHENTICATE
        assert handler.reauthentication_required
        assert error.status == 401

        handler.clear_reauthentication()
        assert not handler.reauthentication_required

    def test_transient_errors_wait_for_next_trigger(self):
        handler = ErrorHandler()
        error = SyncError.from_exception("daily_log", RemoteNetworkError("timeout"))

        assert handler.handle_error(error) == RecoveryAction.RETRY_NEXT_TRIGGER
        assert handler.get_statistics() == {"network": 1}

        handler.record_success()
        assert handler.get_statistics() == {}

    def test_rejected_record_is_skipped(self):
        handler = ErrorHandler()
        error = SyncError.from_exception("cabinet_item", RemoteRequestError("duplicate key", status=409))

        assert handler.handle_error(error) == RecoveryAction.SKIP_RECORD
        assert not handler.reauthentication_required
        assert handler.get_statistics() == {"request": 1}
