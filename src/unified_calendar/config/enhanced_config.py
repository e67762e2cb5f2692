"""
強化設定管理システム
階層化YAML設定・環境変数オーバーライド・接続認証情報の暗号化
"""

import os
import yaml
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Dict, Any, Optional, Union
from cryptography.fernet import Fernet, InvalidToken
import base64
from ..utils.enhanced_logger import get_logger

logger = get_logger(__name__)


@dataclass
class AggregationConfig:
    """集約設定"""
    adapter_timeout_seconds: float = 30.0
    dedup_rounding_seconds: int = 60
    default_timezone: str = "UTC"


@dataclass
class DetectionConfig:
    """競合検出設定"""
    duplicate_window_minutes: int = 5
    title_similarity_threshold: float = 0.8
    high_overlap_ratio: float = 0.8
    medium_overlap_ratio: float = 0.5


@dataclass
class SyncConfig:
    """同期オーケストレーター設定"""
    interval_minutes: int = 30
    lookback_days: int = 7
    lookahead_days: int = 30
    max_concurrent_users: int = 5
    adapter_timeout_seconds: float = 60.0


@dataclass
class RealtimeConfig:
    """リアルタイム監視設定"""
    window_minutes: int = 60
    alert_buffer_size: int = 100


@dataclass
class StorageConfig:
    """ローカルストレージ設定"""
    database_path: str = "data/calendar_hub.db"


@dataclass
class SourceEndpointConfig:
    """ソース別エンドポイント設定"""
    enabled: bool = False
    base_url: str = ""
    api_token: Optional[str] = None


@dataclass
class AdvisoryConfig:
    """アドバイザリー連携設定"""
    enabled: bool = False
    endpoint: str = ""
    timeout_seconds: float = 20.0


@dataclass
class EnhancedConfig:
    """設定メインクラス"""
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    advisory: AdvisoryConfig = field(default_factory=AdvisoryConfig)
    sources: Dict[str, SourceEndpointConfig] = field(default_factory=dict)
    logging: Dict[str, Any] = field(default_factory=lambda: {"level": "INFO"})

    debug: bool = False
    version: str = "1.0.0"
    environment: str = "development"  # development, staging, production


class SecurityManager:
    """接続認証情報の暗号化"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or self._get_or_create_key()
        self.cipher = Fernet(self.encryption_key.encode())

    def _get_or_create_key(self) -> str:
        """暗号化キーの取得または生成"""
        key = os.getenv('CALHUB_ENCRYPTION_KEY')

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
        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化"""
        try:
            decoded = base64.urlsafe_b64decode(encrypted_value.encode())
            return self.cipher.decrypt(decoded).decode()
        except (InvalidToken, ValueError) as e:
            logger.error("Decryption failed", error=e, operation="decrypt")
            raise


class ConfigManager:
    """設定管理メインクラス"""

    LAYER_FILES = {
        'aggregation': "aggregation.yaml",
        'detection': "detection.yaml",
        'sync': "sync.yaml",
        'sources': "sources.yaml",
    }

    def __init__(self, config_dir: Union[str, Path] = "config"):
        self.config_dir = Path(config_dir)
        self._config_cache: Optional[EnhancedConfig] = None

    def load_config(self, reload: bool = False) -> EnhancedConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        layer_configs = {
            name: self._load_yaml_file(self.config_dir / filename)
            for name, filename in self.LAYER_FILES.items()
        }

        merged_config = self._merge_configs(main_config, layer_configs)
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

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e, operation="config_load")
            return {}

    def _merge_configs(self, main_config: Dict, layer_configs: Dict) -> Dict:
        """設定の統合（レイヤーファイルがmain.yamlの同名セクションを上書き）"""
        merged = dict(main_config)

        for layer_name, layer_config in layer_configs.items():
            if layer_config:
                merged[layer_name] = {**merged.get(layer_name, {}), **layer_config}

        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        env_overrides = {
            'CALHUB_DEBUG': ('debug', lambda x: x.lower() in ['true', '1', 'yes']),
            'CALHUB_ENVIRONMENT': ('environment', str),
            'CALHUB_DATABASE_PATH': ('storage.database_path', str),
            'CALHUB_LOG_LEVEL': ('logging.level', str),
            'CALHUB_SYNC_INTERVAL_MINUTES': ('sync.interval_minutes', int),
        }

        for env_key, (config_path, converter) in env_overrides.items():
            env_value = os.getenv(env_key)
            if env_value:
                try:
                    self._set_nested_value(config, config_path, converter(env_value))
                except ValueError as e:
                    logger.warning(f"Failed to apply env override {env_key}", error=str(e))

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        """ネストされた設定値の設定"""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> EnhancedConfig:
        """設定辞書から設定オブジェクトを作成"""
        defaults = EnhancedConfig()
        kwargs: Dict[str, Any] = {}

        for config_field in fields(EnhancedConfig):
            if config_field.name not in config_dict:
                continue
            value = config_dict[config_field.name]
            default_value = getattr(defaults, config_field.name)

            if config_field.name == 'sources':
                kwargs['sources'] = {
                    name: _build_section(SourceEndpointConfig, section or {})
                    for name, section in (value or {}).items()
                }
            elif is_dataclass(default_value):
                kwargs[config_field.name] = _build_section(type(default_value), value or {})
            else:
                kwargs[config_field.name] = value

        return EnhancedConfig(**kwargs)

    def save_config_template(self):
        """設定ファイルテンプレートの作成"""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        templates = {
            "main.yaml": {
                "version": "1.0.0",
                "environment": "development",
                "debug": False,
                "logging": {
                    "level": "INFO",
                    "file_path": "logs/calendar_hub.log"
                },
                "storage": {"database_path": "data/calendar_hub.db"},
                "realtime": {"window_minutes": 60, "alert_buffer_size": 100},
                "advisory": {"enabled": False, "endpoint": "", "timeout_seconds": 20.0},
            },
            "aggregation.yaml": {
                "adapter_timeout_seconds": 30.0,
                "dedup_rounding_seconds": 60,
                "default_timezone": "UTC"
            },
            "sync.yaml": {
                "interval_minutes": 30,
                "lookback_days": 7,
                "lookahead_days": 30,
                "max_concurrent_users": 5
            },
            "sources.yaml": {
                "booking-link": {"enabled": False, "base_url": "https://booking.example.com/api"},
                "oauth-calendar": {"enabled": False, "base_url": "https://calendar.example.com/api"},
                "crm-calendar": {"enabled": False, "base_url": "https://crm.example.com/api"},
            },
        }

        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if not file_path.exists():
                with open(file_path, 'w', encoding='utf-8') as f:
                    yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
                logger.info(f"Created config template: {filename}")


def _build_section(section_cls, values: Dict[str, Any]):
    """既知のキーだけを使ってセクションのdataclassを作成"""
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys for {section_cls.__name__}: {sorted(unknown)}")
    return section_cls(**{k: v for k, v in values.items() if k in known})
