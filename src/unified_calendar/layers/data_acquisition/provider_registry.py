"""
プロバイダー設定と接続管理
ソースごとの設定バリアント（必須/任意項目・検証）と接続のCRUD
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import InvalidToken

from ...core.exceptions import (
    AdapterError,
    ConnectionNotFoundError,
    CredentialDecryptionError,
    InvalidProviderConfigError,
)
from ...core.models import CalendarConnection, EventSource, SyncDirection, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """設定検証結果"""
    valid: bool
    errors: List[str] = field(default_factory=list)


class ProviderConfig:
    """プロバイダー設定バリアントの基底クラス"""

    provider: EventSource
    required_fields: Tuple[str, ...] = ()
    optional_fields: Tuple[str, ...] = ()
    url_fields: Tuple[str, ...] = ()

    def validate(self, config: Any) -> ValidationResult:
        if not isinstance(config, dict):
            return ValidationResult(False, ["Configuration must be a mapping"])

        errors = []

        for name in self.required_fields:
            value = config.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(f"Missing required field: {name}")

        allowed = set(self.required_fields) | set(self.optional_fields)
        for name in sorted(set(config) - allowed):
            errors.append(f"Unknown field: {name}")

        for name in self.url_fields:
            value = config.get(name)
            if value and not str(value).startswith(("http://", "https://")):
                errors.append(f"Field {name} must be an http(s) URL")

        return ValidationResult(not errors, errors)


class InternalProviderConfig(ProviderConfig):
    """社内オペレーションカレンダー"""
    provider = EventSource.INTERNAL
    optional_fields = ("calendar_id",)


class BookingLinkProviderConfig(ProviderConfig):
    """予約リンクサービス"""
    provider = EventSource.BOOKING_LINK
    required_fields = ("api_token",)
    optional_fields = ("organization_uri", "webhook_signing_key")
    url_fields = ("organization_uri",)


class OAuthCalendarProviderConfig(ProviderConfig):
    """OAuth連携カレンダー"""
    provider = EventSource.OAUTH_CALENDAR
    required_fields = ("client_id", "client_secret", "refresh_token")
    optional_fields = ("calendar_id",)


class CrmCalendarProviderConfig(ProviderConfig):
    """CRMカレンダー"""
    provider = EventSource.CRM_CALENDAR
    required_fields = ("api_key", "location_id")
    optional_fields = ("calendar_id",)


PROVIDER_CONFIGS: Dict[EventSource, ProviderConfig] = {
    variant.provider: variant
    for variant in (
        InternalProviderConfig(),
        BookingLinkProviderConfig(),
        OAuthCalendarProviderConfig(),
        CrmCalendarProviderConfig(),
    )
}


def get_provider_config(source: EventSource) -> ProviderConfig:
    return PROVIDER_CONFIGS[source]


def validate_provider_config(source: EventSource, config: Any) -> ValidationResult:
    return get_provider_config(source).validate(config)


class ConnectionManager:
    """接続設定のCRUD（認証情報は暗号化して保存）"""

    def __init__(self, storage, security_manager, adapters: Optional[Dict[EventSource, Any]] = None):
        self.storage = storage
        self.security = security_manager
        self.adapters = adapters or {}

    def _ensure_valid(self, source: EventSource, config: Dict[str, Any]):
        result = validate_provider_config(source, config)
        if not result.valid:
            raise InvalidProviderConfigError(source.value, result.errors)

    def _encrypt(self, config: Dict[str, Any]) -> str:
        return self.security.encrypt_value(json.dumps(config, sort_keys=True))

    def _decrypt(self, encrypted_config: str) -> Dict[str, Any]:
        return json.loads(self.security.decrypt_value(encrypted_config))

    def _to_connection(self, row: Dict[str, Any]) -> CalendarConnection:
        try:
            config = self._decrypt(row['encrypted_config'])
        except (InvalidToken, ValueError) as e:
            raise CredentialDecryptionError(row['user_id'], row['source']) from e

        return CalendarConnection(
            user_id=row['user_id'],
            source=EventSource(row['source']),
            config=config,
            sync_direction=SyncDirection(row['sync_direction']),
            is_active=bool(row['is_active']),
            sync_enabled=bool(row['sync_enabled']),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    async def _save(self, connection: CalendarConnection):
        await self.storage.save_connection(connection, self._encrypt(connection.config))

    async def add_connection(self, user_id: str, source: EventSource, config: Dict[str, Any],
                             sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL) -> CalendarConnection:
        """接続追加（検証に失敗した場合は保存しない）"""
        self._ensure_valid(source, config)

        connection = CalendarConnection(
            user_id=user_id,
            source=source,
            config=dict(config),
            sync_direction=sync_direction,
        )
        await self._save(connection)

        logger.info(f"Connection added: user={user_id}, source={source.value}")
        return connection

    async def get_connection(self, user_id: str, source: EventSource) -> CalendarConnection:
        row = await self.storage.get_connection_row(user_id, source)
        if row is None:
            raise ConnectionNotFoundError(f"No {source.value} connection for user {user_id}")
        return self._to_connection(row)

    async def update_connection(self, user_id: str, source: EventSource,
                                config: Optional[Dict[str, Any]] = None,
                                sync_direction: Optional[SyncDirection] = None,
                                is_active: Optional[bool] = None,
                                sync_enabled: Optional[bool] = None) -> CalendarConnection:
        """接続更新（configを渡した場合は置き換え前に検証）"""
        connection = await self.get_connection(user_id, source)

        if config is not None:
            self._ensure_valid(source, config)

        updated = replace(
            connection,
            config=dict(config) if config is not None else connection.config,
            sync_direction=sync_direction or connection.sync_direction,
            is_active=connection.is_active if is_active is None else is_active,
            sync_enabled=connection.sync_enabled if sync_enabled is None else sync_enabled,
            updated_at=utc_now(),
        )
        await self._save(updated)

        logger.info(f"Connection updated: user={user_id}, source={source.value}")
        return updated

    async def remove_connection(self, user_id: str, source: EventSource) -> None:
        await self.get_connection(user_id, source)

        adapter = self.adapters.get(source)
        if adapter is not None:
            try:
                await adapter.disconnect(user_id)
            except AdapterError as e:
                logger.warning(f"Disconnect call failed for {source.value}: {e}")

        await self.storage.delete_connection(user_id, source)
        logger.info(f"Connection removed: user={user_id}, source={source.value}")

    async def list_connections(self, user_id: Optional[str] = None,
                               syncable_only: bool = False) -> List[CalendarConnection]:
        """接続一覧（復号できない行はログに残して除外）"""
        rows = await self.storage.list_connection_rows(user_id)
        connections = []
        for row in rows:
            try:
                connections.append(self._to_connection(row))
            except CredentialDecryptionError as e:
                logger.error(f"Skipping connection: {e}")
        if syncable_only:
            connections = [c for c in connections if c.is_syncable]
        return connections

    async def list_sync_users(self) -> List[str]:
        """同期が有効な接続を持つユーザー一覧"""
        connections = await self.list_connections(syncable_only=True)
        return sorted({c.user_id for c in connections})

    async def test_connection(self, user_id: str, source: EventSource,
                              config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        接続テスト

        設定の検証はネットワーク呼び出しより前に行い、不正な設定では
        InvalidProviderConfigError を送出する。
        """
        if config is None:
            config = (await self.get_connection(user_id, source)).config
        self._ensure_valid(source, config)

        adapter = self.adapters.get(source)
        if adapter is None:
            return {"success": False, "error": f"No adapter registered for {source.value}"}

        now = utc_now()
        try:
            records = await adapter.pull(user_id, now, now + timedelta(days=1))
        except AdapterError as e:
            logger.warning(f"Connection test failed for {source.value}: {e}")
            return {"success": False, "error": str(e)}

        return {"success": True, "eventsFound": len(records)}
