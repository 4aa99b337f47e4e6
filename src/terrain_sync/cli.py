"""
コマンドラインインターフェース
python -m terrain_sync [--config-dir DIR] {sync,status,purge,init-config}
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Iterable, Optional

from .config.enhanced_config import ConfigManager, EnhancedConfig
from .core.errors import RemoteAuthError, RemoteNetworkError
from .layers.remote_layer.auth_provider import SupabaseAuthProvider
from .layers.sync_layer.orchestrator import SyncOrchestrator
from .utils.enhanced_logger import setup_logging


def _resolve_remote(config: EnhancedConfig, secrets: Dict[str, Any]):
    """設定ファイルに無いリモート接続情報を秘密情報から補完"""
    config.remote.supabase_url = config.remote.supabase_url or secrets.get('SUPABASE_URL', '')
    config.remote.api_key = config.remote.api_key or secrets.get('SUPABASE_ANON_KEY', '')

    if not config.remote.supabase_url or not config.remote.api_key:
        raise SystemExit("SUPABASE_URL と SUPABASE_ANON_KEY を設定してください。")


async def _sign_in(config: EnhancedConfig, secrets: Dict[str, Any]):
    email = secrets.get('SUPABASE_EMAIL')
    password = secrets.get('SUPABASE_PASSWORD')
    if not email or not password:
        raise SystemExit("同期には SUPABASE_EMAIL と SUPABASE_PASSWORD が必要です。")

    provider = SupabaseAuthProvider(
        config.remote.supabase_url,
        config.remote.api_key,
        timeout_seconds=config.remote.request_timeout_seconds
    )
    try:
        return await provider.sign_in_with_password(email, password)
    except (RemoteAuthError, RemoteNetworkError) as e:
        raise SystemExit(f"サインインに失敗しました: {e}")


async def run_sync_command(config: EnhancedConfig, secrets: Dict[str, Any], force: bool) -> int:
    _resolve_remote(config, secrets)
    session = await _sign_in(config, secrets)

    orchestrator = SyncOrchestrator.from_config(config)
    if not await orchestrator.initialize():
        raise SystemExit(f"ローカルデータベースを初期化できません: {config.local_storage.database_path}")

    orchestrator.session_manager.sign_in(session)
    await orchestrator.local_store.claim_unowned(session.identity)
    summary = await orchestrator.run_sync(force=force)
    await orchestrator.local_store.cleanup_old_logs(config.local_storage.log_retention_days)

    _print({
        "summary": summary.summary(),
        "collections": {
            name: result.stats.summary() if result.is_successful() else str(result.error)
            for name, result in summary.results.items()
        },
        "status": orchestrator.get_status(),
    })
    return 0 if summary.is_successful() else 1


async def run_status_command(config: EnhancedConfig) -> int:
    orchestrator = SyncOrchestrator.from_config(config)
    if not await orchestrator.initialize():
        raise SystemExit(f"ローカルデータベースを初期化できません: {config.local_storage.database_path}")

    logs = await orchestrator.local_store.get_sync_logs(limit=10)
    _print({
        "storage": await orchestrator.local_store.get_storage_statistics(),
        "recent_sync_logs": [log.to_dict() for log in logs],
    })
    return 0


async def run_purge_command(config: EnhancedConfig) -> int:
    orchestrator = SyncOrchestrator.from_config(config)
    if not await orchestrator.initialize():
        raise SystemExit(f"ローカルデータベースを初期化できません: {config.local_storage.database_path}")

    result = await orchestrator.sign_out()
    _print({"rows_deleted": result.rows_deleted, "total_deleted": result.total_deleted})
    return 0


def _print(data: Dict[str, Any]):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="terrain_sync", description="Offline-first sync engine")
    parser.add_argument("--config-dir", default="config", help="設定ファイルのディレクトリ")

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="サインインして同期を1サイクル実行")
    sync_parser.add_argument("--force", action="store_true", help="クールダウンを無視して同期")

    subparsers.add_parser("status", help="ローカルストアの状態を表示")
    subparsers.add_parser("purge", help="ローカルデータを全削除（リモートはそのまま）")
    subparsers.add_parser("init-config", help="設定ファイルのテンプレートを作成")

    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    config_manager = ConfigManager(args.config_dir)

    if args.command == "init-config":
        config_manager.save_config_template()
        return 0

    config = config_manager.load_config()
    setup_logging({
        'level': config.logging.level,
        'file_path': config.logging.file_path,
        'metrics_enabled': config.logging.metrics_enabled,
    })

    if args.command == "sync":
        return asyncio.run(run_sync_command(config, config_manager.load_secrets(), args.force))
    if args.command == "status":
        return asyncio.run(run_status_command(config))
    return asyncio.run(run_purge_command(config))


if __name__ == "__main__":
    sys.exit(main())
