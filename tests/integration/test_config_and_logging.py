"""
設定管理・ログ・CLI 統合テスト
"""

import io
import json

import pytest
import yaml
from cryptography.fernet import Fernet

from terrain_sync.cli import build_parser, main
from terrain_sync.config.enhanced_config import ConfigManager, EnhancedConfig, SecurityManager
from terrain_sync.layers.sync_layer.orchestrator import SyncOrchestrator
from terrain_sync.utils.enhanced_logger import EnhancedLogger, LogLevel, MetricsCollector, get_logger, setup_logging


@pytest.fixture
def security_manager():
    return SecurityManager(Fernet.generate_key().decode())


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ConfigManager.SECRET_KEYS + [
        'TERRAIN_DEBUG', 'TERRAIN_ENVIRONMENT', 'TERRAIN_LOG_LEVEL', 'TERRAIN_SUPABASE_URL',
        'TERRAIN_RATE_LIMIT', 'TERRAIN_DATABASE_PATH', 'TERRAIN_SYNC_COOLDOWN',
        'TERRAIN_CONCURRENT_COLLECTIONS',
    ]:
        monkeypatch.delenv(key, raising=False)


class TestConfigManager:
    """設定管理のテスト"""

    def test_defaults_without_files(self, tmp_path, security_manager):
        config = ConfigManager(tmp_path / "config", security_manager=security_manager).load_config()

        assert config.sync.cooldown_seconds == 30
        assert config.sync.daily_log_window_days == 30
        assert config.sync.flush_before_purge is True
        assert config.sync.concurrent_collections is False
        assert config.remote.rate_limit == "120/minute"
        assert config.local_storage.database_path == "data/terrain.db"

    def test_layered_files_and_env_overrides(self, tmp_path, monkeypatch, security_manager):
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "main.yaml").write_text(yaml.dump({
            "environment": "staging",
            "logging": {"level": "DEBUG"},
            "sync": {"cooldown_seconds": 60, "daily_log_window_days": 14},
        }), encoding="utf-8")
        (config_dir / "sync.yaml").write_text(yaml.dump({
            "cooldown_seconds": 10,
            "conflict_strategy": "local_wins",
            "unknown_key": True,
        }), encoding="utf-8")
        (config_dir / "remote.yaml").write_text(yaml.dump({
            "supabase_url": "https://example.supabase.co",
        }), encoding="utf-8")

        monkeypatch.setenv("TERRAIN_DATABASE_PATH", str(tmp_path / "override.db"))
        monkeypatch.setenv("TERRAIN_CONCURRENT_COLLECTIONS", "true")
        monkeypatch.setenv("TERRAIN_SYNC_COOLDOWN", "not-a-number")

        config = ConfigManager(config_dir, security_manager=security_manager).load_config()

        assert config.environment == "staging"
        assert config.logging.level == "DEBUG"
        assert config.sync.cooldown_seconds == 10, "sync.yaml がmain.yamlを上書きしていません"
        assert config.sync.daily_log_window_days == 14
        assert config.sync.conflict_strategy == "local_wins"
        assert config.sync.concurrent_collections is True
        assert config.remote.supabase_url == "https://example.supabase.co"
        assert config.local_storage.database_path == str(tmp_path / "override.db")

    def test_secrets_priority_and_decryption(self, tmp_path, monkeypatch, security_manager):
        secrets_dir = tmp_path / "config" / "secrets"
        secrets_dir.mkdir(parents=True)
        (secrets_dir / "supabase.json").write_text(json.dumps({
            "SUPABASE_URL": "https://json.supabase.co",
            "SUPABASE_EMAIL": "json@example.com",
        }), encoding="utf-8")
        encrypted = security_manager.encrypt_value("s3cret")
        (secrets_dir / ".env").write_text(
            f"# credentials\nSUPABASE_EMAIL=file@example.com\nSUPABASE_PASSWORD=\"encrypted:{encrypted}\"\n",
            encoding="utf-8"
        )
        monkeypatch.setenv("SUPABASE_URL", "https://env.supabase.co")

        secrets = ConfigManager(tmp_path / "config", security_manager=security_manager).load_secrets()

        assert secrets["SUPABASE_URL"] == "https://env.supabase.co"
        assert secrets["SUPABASE_EMAIL"] == "file@example.com"
        assert secrets["SUPABASE_PASSWORD"] == "s3cret"

    def test_undecryptable_value_is_left_as_is(self, security_manager):
        assert security_manager.decrypt_value("not-encrypted") == "not-encrypted"

    def test_template_round_trip(self, tmp_path, security_manager):
        manager = ConfigManager(tmp_path / "config", security_manager=security_manager)
        manager.save_config_template()

        assert (tmp_path / "config" / "sync.yaml").exists()
        config = manager.load_config(reload=True)
        assert config.sync == EnhancedConfig().sync

    def test_orchestrator_from_config(self, tmp_path, security_manager):
        config = ConfigManager(tmp_path / "config", security_manager=security_manager).load_config()
        config.local_storage.database_path = str(tmp_path / "terrain.db")
        config.sync.cooldown_seconds = 5

        orchestrator = SyncOrchestrator.from_config(config)

        assert orchestrator.scheduler.cooldown.total_seconds() == 5
        assert orchestrator.remote_store.rate_limiter.max_requests == 120
        assert len(orchestrator.synchronizers) == 5


class TestEnhancedLogger:
    """ログ・メトリクスのテスト"""

    def test_metrics_health_summary(self):
        metrics = MetricsCollector()
        metrics.record_success("collection_sync.profile", 0.5)
        metrics.record_success("collection_sync.profile", 1.5)
        metrics.record_error("collection_sync.profile", "network")

        summary = metrics.get_health_summary()

        assert summary["total_operations"] == 3
        assert summary["success_rate_percent"] == pytest.approx(200 / 3)
        assert summary["avg_durations"]["collection_sync.profile.duration"] == 1.0
        assert summary["error_rates_by_type"]["collection_sync.profile.network"] == pytest.approx(100 / 3)

    def test_structured_output_and_operation_timing(self, tmp_path):
        stream = io.StringIO()
        logger = EnhancedLogger("terrain_sync.test", LogLevel.INFO, log_file=tmp_path / "sync.log",
                                structured_stream=stream)

        context = logger.log_operation_start("sync_cycle", forced=True)
        logger.log_operation_end(context, success=True, changes=3)

        lines = [json.loads(line) for line in stream.getvalue().splitlines()]
        assert lines[0]["event"] == "Operation started: sync_cycle"
        assert lines[-1]["changes"] == 3
        assert lines[-1]["status"] == "success"
        assert logger.get_health_status()["overall_status"] == "healthy"
        assert "Operation completed: sync_cycle" in (tmp_path / "sync.log").read_text(encoding="utf-8")

    def test_debug_is_filtered_at_info_level(self):
        stream = io.StringIO()
        logger = EnhancedLogger("terrain_sync.test", LogLevel.INFO, structured_stream=stream)

        logger.debug("hidden")

        assert stream.getvalue() == ""

    def test_setup_logging_reconfigures_shared_logger(self, tmp_path):
        """設定モジュールが保持する共有ロガーにも再設定が反映される"""
        from terrain_sync.config import enhanced_config

        shared = get_logger()
        configured = setup_logging({"level": "DEBUG", "file_path": str(tmp_path / "sync.log")})

        assert configured is shared
        assert enhanced_config.logger is shared
        assert shared.name == "terrain_sync"
        assert shared.logger.name == "terrain_sync"
        assert shared.log_level == LogLevel.DEBUG
        assert shared.log_file == tmp_path / "sync.log"

        setup_logging()


class TestCommandLine:
    """CLIのテスト"""

    def test_parser(self):
        args = build_parser().parse_args(["--config-dir", "cfg", "sync", "--force"])
        assert args.config_dir == "cfg"
        assert args.command == "sync"
        assert args.force is True

    def test_init_config_writes_templates(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TERRAIN_ENCRYPTION_KEY", Fernet.generate_key().decode())

        assert main(["--config-dir", str(tmp_path / "config"), "init-config"]) == 0

        for filename in ("main.yaml", "sync.yaml", "remote.yaml"):
            assert (tmp_path / "config" / filename).exists()
