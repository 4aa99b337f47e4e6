"""
強化設定管理システム
階層化設定ファイル（YAML）とセキュアな秘密情報管理
"""

import base64
import binascii
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar, Union

import yaml
from cryptography.fernet import Fernet, InvalidToken

from ..utils.enhanced_logger import get_logger

logger = get_logger()

ENV_PREFIX = "TERRAIN_"

T = TypeVar("T")


@dataclass
class RemoteConfig:
    """リモートストア（Supabase）設定"""
    supabase_url: str = ""
    api_key: str = ""
    request_timeout_seconds: float = 15.0
    rate_limit: Optional[str] = "120/minute"


@dataclass
class LocalStorageConfig:
    """ローカルストレージ設定"""
    database_path: str = "data/terrain.db"
    log_retention_days: int = 30


@dataclass
class SyncConfig:
    """同期設定"""
    cooldown_seconds: int = 30
    concurrent_collections: bool = False
    daily_log_window_days: int = 30
    flush_before_purge: bool = True
    conflict_strategy: str = "latest_wins"  # latest_wins, local_wins, remote_wins


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True


@dataclass
class EnhancedConfig:
    """設定メインクラス"""
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    local_storage: LocalStorageConfig = field(default_factory=LocalStorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # 一般設定
    debug: bool = False
    version: str = "1.0.0"
    environment: str = "development"  # development, staging, production

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _to_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


def _build_section(section_type: Type[T], values: Any) -> T:
    """辞書からセクションのdataclassを作成（未知のキーは無視）"""
    if not isinstance(values, dict):
        return section_type()

    known = {f.name for f in fields(section_type)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown {section_type.__name__} keys",
                       keys=sorted(unknown), operation="config_load")
    return section_type(**{key: value for key, value in values.items() if key in known})


class SecurityManager:
    """セキュリティ管理クラス"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or self._get_or_create_key()
        self.cipher = Fernet(self.encryption_key.encode()) if self.encryption_key else None

    def _get_or_create_key(self) -> str:
        """暗号化キーの取得または生成"""
        key = os.getenv(f'{ENV_PREFIX}ENCRYPTION_KEY')

        if not key:
            key = Fernet.generate_key().decode()
            logger.warning(
                "New encryption key generated. Store it securely!",
                key_preview=key[:8] + "...",
                operation="key_generation"
            )

        return key

    def encrypt_value(self, value: str) -> str:
        """値の暗号化"""
        if not self.cipher:
            return value

        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化（失敗時は元の値を返す）"""
        if not self.cipher:
            return encrypted_value

        try:
            decoded = base64.urlsafe_b64decode(encrypted_value.encode())
            return self.cipher.decrypt(decoded).decode()
        except (InvalidToken, binascii.Error, ValueError) as e:
            logger.error("Decryption failed", error=e, operation="secrets_load")
            return encrypted_value


class ConfigManager:
    """設定管理メインクラス"""

    SECTION_FILES = {
        'sync': "sync.yaml",
        'remote': "remote.yaml",
    }

    SECRET_KEYS = [
        'SUPABASE_URL',
        'SUPABASE_ANON_KEY',
        'SUPABASE_EMAIL',
        'SUPABASE_PASSWORD',
    ]

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Optional[Union[str, Path]] = None,
                 security_manager: Optional[SecurityManager] = None):

        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir) if secrets_dir else self.config_dir / "secrets"
        self.security_manager = security_manager or SecurityManager()

        self._config_cache: Optional[EnhancedConfig] = None
        self._secrets_cache: Dict[str, Any] = {}

    def load_config(self, reload: bool = False) -> EnhancedConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        section_configs = {
            name: self._load_yaml_file(self.config_dir / filename)
            for name, filename in self.SECTION_FILES.items()
        }

        merged_config = self._merge_configs(main_config, section_configs)
        merged_config = self._apply_env_overrides(merged_config)
        self._config_cache = self._create_config_object(merged_config)

        logger.info(
            "Configuration loaded successfully",
            config_dir=str(self.config_dir),
            environment=self._config_cache.environment,
            version=self._config_cache.version,
            operation="config_load"
        )

        return self._config_cache

    def load_secrets(self, reload: bool = False) -> Dict[str, Any]:
        """秘密情報の読み込み（優先順位: 環境変数 > .env > JSON）"""
        if self._secrets_cache and not reload:
            return self._secrets_cache

        self._secrets_cache = {
            **self._load_json_secrets(),
            **self._load_env_file(),
            **self._load_env_secrets()
        }

        # 暗号化された値の復号化
        self._decrypt_secrets()

        logger.info(
            "Secrets loaded successfully",
            secret_count=len(self._secrets_cache),
            operation="secrets_load"
        )

        return self._secrets_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e, operation="config_load")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-mapping YAML file: {file_path}", operation="config_load")
            return {}
        return data

    def _load_env_secrets(self) -> Dict[str, str]:
        return {key: os.getenv(key) for key in self.SECRET_KEYS if os.getenv(key)}

    def _load_env_file(self) -> Dict[str, str]:
        """.envファイルからの読み込み"""
        env_file = self.secrets_dir / ".env"
        if not env_file.exists():
            return {}

        secrets = {}
        with open(env_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    secrets[key.strip()] = value.strip().strip('"\'')

        return secrets

    def _load_json_secrets(self) -> Dict[str, Any]:
        """JSONファイルからの読み込み"""
        file_path = self.secrets_dir / "supabase.json"
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                secrets = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load JSON file: {file_path.name}", error=e, operation="secrets_load")
            return {}

        return secrets if isinstance(secrets, dict) else {}

    def _decrypt_secrets(self):
        """暗号化された秘密情報の復号化"""
        encrypted_prefix = "encrypted:"

        for key, value in self._secrets_cache.items():
            if isinstance(value, str) and value.startswith(encrypted_prefix):
                self._secrets_cache[key] = self.security_manager.decrypt_value(value[len(encrypted_prefix):])

    def _merge_configs(self, main_config: Dict, section_configs: Dict) -> Dict:
        """設定の統合（セクションファイルがmain.yamlの同名セクションを上書き）"""
        merged = dict(main_config)

        for section_name, section_config in section_configs.items():
            if section_config:
                base = merged.get(section_name)
                merged[section_name] = {**base, **section_config} if isinstance(base, dict) else section_config

        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        env_overrides = {
            f'{ENV_PREFIX}DEBUG': ('debug', _to_bool),
            f'{ENV_PREFIX}ENVIRONMENT': ('environment', str),
            f'{ENV_PREFIX}LOG_LEVEL': ('logging.level', str),
            f'{ENV_PREFIX}SUPABASE_URL': ('remote.supabase_url', str),
            f'{ENV_PREFIX}RATE_LIMIT': ('remote.rate_limit', str),
            f'{ENV_PREFIX}DATABASE_PATH': ('local_storage.database_path', str),
            f'{ENV_PREFIX}SYNC_COOLDOWN': ('sync.cooldown_seconds', int),
            f'{ENV_PREFIX}CONCURRENT_COLLECTIONS': ('sync.concurrent_collections', _to_bool),
        }

        for env_key, (config_path, converter) in env_overrides.items():
            env_value = os.getenv(env_key)
            if env_value:
                try:
                    self._set_nested_value(config, config_path, converter(env_value))
                except ValueError as e:
                    logger.warning(f"Failed to apply env override {env_key}", error=e, operation="config_load")

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        """ネストされた設定値の設定"""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> EnhancedConfig:
        """設定辞書から設定オブジェクトを作成"""
        return EnhancedConfig(
            remote=_build_section(RemoteConfig, config_dict.get('remote')),
            local_storage=_build_section(LocalStorageConfig, config_dict.get('local_storage')),
            sync=_build_section(SyncConfig, config_dict.get('sync')),
            logging=_build_section(LoggingConfig, config_dict.get('logging')),
            debug=bool(config_dict.get('debug', False)),
            version=str(config_dict.get('version', EnhancedConfig.version)),
            environment=str(config_dict.get('environment', EnhancedConfig.environment)),
        )

    def save_config_template(self):
        """設定ファイルテンプレートの作成（既存ファイルは上書きしない）"""
        defaults = EnhancedConfig()
        templates = {
            "main.yaml": {
                "version": defaults.version,
                "environment": defaults.environment,
                "debug": defaults.debug,
                "local_storage": asdict(defaults.local_storage),
                "logging": {
                    "level": "INFO",
                    "file_path": "logs/terrain_sync.log"
                }
            },
            "sync.yaml": asdict(defaults.sync),
            "remote.yaml": {
                "supabase_url": "https://<project>.supabase.co",
                "request_timeout_seconds": defaults.remote.request_timeout_seconds,
                "rate_limit": defaults.remote.rate_limit,
            },
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if not file_path.exists():
                with open(file_path, 'w', encoding='utf-8') as f:
                    yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
                logger.info(f"Created config template: {filename}")


# グローバルインスタンス
_global_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Union[str, Path] = "config") -> ConfigManager:
    """グローバル設定マネージャーの取得"""
    global _global_config_manager

    if _global_config_manager is None:
        _global_config_manager = ConfigManager(config_dir)

    return _global_config_manager


def get_config(reload: bool = False) -> EnhancedConfig:
    return get_config_manager().load_config(reload)


def get_secrets(reload: bool = False) -> Dict[str, Any]:
    return get_config_manager().load_secrets(reload)
