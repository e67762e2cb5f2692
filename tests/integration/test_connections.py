"""
接続管理・設定テスト
プロバイダー設定の検証・暗号化保存・YAML設定読み込みの確認
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import yaml
from cryptography.fernet import Fernet

from unified_calendar.config.enhanced_config import ConfigManager, SecurityManager
from unified_calendar.core.exceptions import (
    ConnectionNotFoundError,
    CredentialDecryptionError,
    InvalidProviderConfigError,
    SourceAuthenticationError,
)
from unified_calendar.core.models import EventSource, SyncDirection
from unified_calendar.layers.data_acquisition.provider_registry import (
    ConnectionManager,
    validate_provider_config,
)

CRM_CONFIG = {"api_key": "crm-key", "location_id": "loc-1"}


class TestProviderValidation:
    """プロバイダー設定の検証"""

    def test_valid_configs(self):
        assert validate_provider_config(EventSource.CRM_CALENDAR, CRM_CONFIG).valid
        assert validate_provider_config(EventSource.INTERNAL, {}).valid
        assert validate_provider_config(EventSource.BOOKING_LINK, {
            "api_token": "tok", "organization_uri": "https://booking.example.com/org/1",
        }).valid

    def test_missing_required_fields(self):
        result = validate_provider_config(EventSource.OAUTH_CALENDAR, {"client_id": "cid"})

        assert result.valid is False
        assert "Missing required field: client_secret" in result.errors
        assert "Missing required field: refresh_token" in result.errors

    def test_unknown_field_and_bad_url(self):
        result = validate_provider_config(EventSource.BOOKING_LINK, {
            "api_token": "tok", "organization_uri": "ftp://nope", "colour": "blue",
        })

        assert result.errors == [
            "Unknown field: colour",
            "Field organization_uri must be an http(s) URL",
        ]

    def test_blank_value_counts_as_missing(self):
        result = validate_provider_config(EventSource.CRM_CALENDAR, {"api_key": "  ", "location_id": "x"})

        assert result.errors == ["Missing required field: api_key"]

    def test_non_mapping_rejected(self):
        assert validate_provider_config(EventSource.CRM_CALENDAR, ["api_key"]).valid is False


class TestConnectionManager:
    """接続のCRUD"""

    @pytest.fixture
    def adapter(self):
        mock = AsyncMock()
        mock.pull.return_value = [{"id": "1"}, {"id": "2"}]
        return mock

    @pytest.fixture
    def manager(self, temp_storage, security_manager, adapter):
        return ConnectionManager(temp_storage, security_manager, {EventSource.CRM_CALENDAR: adapter})

    @pytest.mark.asyncio
    async def test_add_and_get_roundtrip(self, manager):
        await manager.add_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG,
                                     sync_direction=SyncDirection.PULL)

        connection = await manager.get_connection("user-1", EventSource.CRM_CALENDAR)

        assert connection.config == CRM_CONFIG
        assert connection.sync_direction == SyncDirection.PULL
        assert connection.is_syncable

    @pytest.mark.asyncio
    async def test_credentials_encrypted_at_rest(self, manager, temp_storage):
        """保存される設定は平文を含まない"""
        await manager.add_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG)

        row = await temp_storage.get_connection_row("user-1", EventSource.CRM_CALENDAR)

        assert "crm-key" not in row["encrypted_config"]
        assert json.loads(manager.security.decrypt_value(row["encrypted_config"])) == CRM_CONFIG

    @pytest.mark.asyncio
    async def test_invalid_config_not_saved(self, manager, temp_storage):
        with pytest.raises(InvalidProviderConfigError) as exc_info:
            await manager.add_connection("user-1", EventSource.CRM_CALENDAR, {"api_key": "k"})

        assert exc_info.value.errors == ["Missing required field: location_id"]
        assert await temp_storage.list_connection_rows("user-1") == []

    @pytest.mark.asyncio
    async def test_update_connection(self, manager):
        await manager.add_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG)

        updated = await manager.update_connection(
            "user-1", EventSource.CRM_CALENDAR,
            config={"api_key": "rotated", "location_id": "loc-1"}, is_active=False,
        )
        stored = await manager.get_connection("user-1", EventSource.CRM_CALENDAR)

        assert updated.config["api_key"] == "rotated"
        assert stored.config["api_key"] == "rotated"
        assert stored.is_active is False
        assert stored.sync_direction == SyncDirection.BIDIRECTIONAL

    @pytest.mark.asyncio
    async def test_update_with_invalid_config_keeps_original(self, manager):
        await manager.add_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG)

        with pytest.raises(InvalidProviderConfigError):
            await manager.update_connection("user-1", EventSource.CRM_CALENDAR, config={"api_key": "x"})

        assert (await manager.get_connection("user-1", EventSource.CRM_CALENDAR)).config == CRM_CONFIG

    @pytest.mark.asyncio
    async def test_remove_connection(self, manager, adapter):
        """削除時はアダプターの切断を試み、失敗しても削除は行う"""
        adapter.disconnect.side_effect = SourceAuthenticationError("crm-calendar", "expired")
        await manager.add_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG)

        await manager.remove_connection("user-1", EventSource.CRM_CALENDAR)

        adapter.disconnect.assert_awaited_once_with("user-1")
        with pytest.raises(ConnectionNotFoundError):
            await manager.get_connection("user-1", EventSource.CRM_CALENDAR)

    @pytest.mark.asyncio
    async def test_list_sync_users(self, manager):
        await manager.add_connection("user-b", EventSource.CRM_CALENDAR, CRM_CONFIG)
        await manager.add_connection("user-a", EventSource.CRM_CALENDAR, CRM_CONFIG)
        await manager.add_connection("user-c", EventSource.INTERNAL, {})
        await manager.update_connection("user-c", EventSource.INTERNAL, sync_enabled=False)

        assert await manager.list_sync_users() == ["user-a", "user-b"]
        assert len(await manager.list_connections()) == 3

    @pytest.mark.asyncio
    async def test_foreign_key_rows_skipped_in_listing(self, manager, temp_storage):
        """復号できない行は一覧から除外され、個別取得では型付きエラー"""
        other_key = SecurityManager(Fernet.generate_key().decode())
        await ConnectionManager(temp_storage, other_key).add_connection(
            "user-2", EventSource.CRM_CALENDAR, CRM_CONFIG)
        await manager.add_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG)

        assert [c.user_id for c in await manager.list_connections()] == ["user-1"]
        assert await manager.list_sync_users() == ["user-1"]
        with pytest.raises(CredentialDecryptionError):
            await manager.get_connection("user-2", EventSource.CRM_CALENDAR)

    @pytest.mark.asyncio
    async def test_test_connection_success(self, manager):
        result = await manager.test_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG)

        assert result == {"success": True, "eventsFound": 2}

    @pytest.mark.asyncio
    async def test_test_connection_validates_before_network(self, manager, adapter):
        """不正な設定ではネットワーク呼び出しを行わない"""
        with pytest.raises(InvalidProviderConfigError):
            await manager.test_connection("user-1", EventSource.CRM_CALENDAR, {"location_id": "x"})

        adapter.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_test_connection_reports_adapter_error(self, manager, adapter):
        adapter.pull.side_effect = SourceAuthenticationError("crm-calendar", "HTTP 401")

        result = await manager.test_connection("user-1", EventSource.CRM_CALENDAR, CRM_CONFIG)

        assert result["success"] is False
        assert "401" in result["error"]


class TestSecurityManager:
    def test_encrypt_roundtrip(self, security_manager):
        encrypted = security_manager.encrypt_value("refresh-token-123")

        assert encrypted != "refresh-token-123"
        assert security_manager.decrypt_value(encrypted) == "refresh-token-123"

    def test_key_from_environment(self, monkeypatch, security_manager):
        monkeypatch.setenv("CALHUB_ENCRYPTION_KEY", security_manager.encryption_key)

        other = SecurityManager()

        assert other.decrypt_value(security_manager.encrypt_value("x")) == "x"


class TestConfigManager:
    """YAML設定の読み込み"""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for key in ("CALHUB_DEBUG", "CALHUB_ENVIRONMENT", "CALHUB_DATABASE_PATH",
                    "CALHUB_LOG_LEVEL", "CALHUB_SYNC_INTERVAL_MINUTES"):
            monkeypatch.delenv(key, raising=False)

    def test_defaults_without_files(self, tmp_path):
        config = ConfigManager(tmp_path / "missing").load_config()

        assert config.sync.interval_minutes == 30
        assert config.detection.duplicate_window_minutes == 5
        assert config.sources == {}

    def test_layer_files_and_sources(self, tmp_path: Path):
        (tmp_path / "main.yaml").write_text(yaml.dump({
            "environment": "staging",
            "sync": {"interval_minutes": 10, "lookback_days": 3},
        }))
        (tmp_path / "sync.yaml").write_text(yaml.dump({"interval_minutes": 15}))
        (tmp_path / "sources.yaml").write_text(yaml.dump({
            "crm-calendar": {"enabled": True, "base_url": "https://crm.example.com/api"},
        }))

        config = ConfigManager(tmp_path).load_config()

        assert config.environment == "staging"
        assert config.sync.interval_minutes == 15, "レイヤーファイルが main.yaml を上書き"
        assert config.sync.lookback_days == 3
        assert config.sources["crm-calendar"].enabled is True

    def test_unknown_keys_ignored(self, tmp_path):
        (tmp_path / "detection.yaml").write_text(yaml.dump({"duplicate_window_minutes": 2, "bogus": 1}))

        config = ConfigManager(tmp_path).load_config()

        assert config.detection.duplicate_window_minutes == 2

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CALHUB_SYNC_INTERVAL_MINUTES", "45")
        monkeypatch.setenv("CALHUB_DEBUG", "true")
        monkeypatch.setenv("CALHUB_DATABASE_PATH", str(tmp_path / "hub.db"))

        config = ConfigManager(tmp_path).load_config()

        assert config.sync.interval_minutes == 45
        assert config.debug is True
        assert config.storage.database_path == str(tmp_path / "hub.db")

    def test_template_written_once(self, tmp_path):
        manager = ConfigManager(tmp_path / "config")
        manager.save_config_template()
        (tmp_path / "config" / "sync.yaml").write_text(yaml.dump({"interval_minutes": 5}))

        manager.save_config_template()
        config = manager.load_config()

        assert (tmp_path / "config" / "main.yaml").exists()
        assert config.sync.interval_minutes == 5
        assert config.sources["booking-link"].enabled is False
