"""
イベントストレージシステム
SQLiteによる統合イベント・競合・同期ステータス・同期ログ・接続設定の永続化
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import aiosqlite

from ...core.exceptions import StorageError
from ...core.models import (
    Attendee,
    CalendarConnection,
    Conflict,
    ConflictType,
    Event,
    EventMetadata,
    EventSource,
    EventSyncStatus,
    ResolutionStrategy,
    Severity,
    SyncLogEntry,
    SyncLogStatus,
    SyncOperation,
    SyncState,
    SyncStatusRecord,
    utc_now,
)

logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """UTCの固定書式（文字列比較で時刻順になる）"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class EventStorage:
    """イベントストレージ管理システム"""

    def __init__(self, database_path: Union[str, Path] = "data/calendar_hub.db"):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    async def initialize(self) -> bool:
        """データベース初期化"""
        try:
            await self._create_tables()
            await self._create_indexes()

            logger.info(f"Event storage initialized: {self.database_path}")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize event storage: {e}")
            return False

    async def _create_tables(self):
        """テーブル作成"""

        # 統合イベントテーブル（source, source_id で一意）
        events_table_sql = """
        CREATE TABLE IF NOT EXISTS unified_events (
            id TEXT PRIMARY KEY,
            source TEXT NOT NULL,
            source_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            location TEXT,
            description TEXT,
            attendees TEXT NOT NULL DEFAULT '[]',
            owner_user_id TEXT,
            sync_status TEXT NOT NULL DEFAULT 'synced',
            last_synced_at TEXT,
            all_day BOOLEAN DEFAULT FALSE,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (source, source_id)
        )
        """

        # 競合テーブル
        conflicts_table_sql = """
        CREATE TABLE IF NOT EXISTS calendar_conflicts (
            id TEXT PRIMARY KEY,
            conflict_type TEXT NOT NULL,
            severity TEXT NOT NULL,
            event_ids TEXT NOT NULL,
            detected_at TEXT NOT NULL,
            resolved_at TEXT,
            resolution TEXT,
            resolved_by TEXT
        )
        """

        # 同期ステータステーブル
        sync_status_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_status (
            user_id TEXT NOT NULL,
            source TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'idle',
            last_sync_at TEXT,
            events_synced INTEGER DEFAULT 0,
            error_message TEXT,
            PRIMARY KEY (user_id, source)
        )
        """

        # 同期ログテーブル（追記のみ）
        sync_logs_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            source TEXT NOT NULL,
            operation TEXT NOT NULL,
            status TEXT NOT NULL,
            events_processed INTEGER DEFAULT 0,
            errors TEXT NOT NULL DEFAULT '[]',
            duration_ms INTEGER DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """

        # 接続設定テーブル（認証情報は暗号化済み文字列）
        connections_table_sql = """
        CREATE TABLE IF NOT EXISTS calendar_connections (
            user_id TEXT NOT NULL,
            source TEXT NOT NULL,
            encrypted_config TEXT NOT NULL,
            sync_direction TEXT NOT NULL DEFAULT 'bidirectional',
            is_active BOOLEAN DEFAULT TRUE,
            sync_enabled BOOLEAN DEFAULT TRUE,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, source)
        )
        """

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(events_table_sql)
            await db.execute(conflicts_table_sql)
            await db.execute(sync_status_table_sql)
            await db.execute(sync_logs_table_sql)
            await db.execute(connections_table_sql)
            await db.commit()

    async def _create_indexes(self):
        """インデックス作成"""
        indexes_sql = [
            "CREATE INDEX IF NOT EXISTS idx_unified_events_start_time ON unified_events(start_time)",
            "CREATE INDEX IF NOT EXISTS idx_unified_events_end_time ON unified_events(end_time)",
            "CREATE INDEX IF NOT EXISTS idx_unified_events_owner ON unified_events(owner_user_id)",
            "CREATE INDEX IF NOT EXISTS idx_conflicts_resolved_at ON calendar_conflicts(resolved_at)",
            "CREATE INDEX IF NOT EXISTS idx_sync_logs_created_at ON sync_logs(created_at)",
            "CREATE INDEX IF NOT EXISTS idx_sync_logs_user_source ON sync_logs(user_id, source)",
        ]

        async with aiosqlite.connect(self.database_path) as db:
            for index_sql in indexes_sql:
                await db.execute(index_sql)
            await db.commit()

    # ---- イベント ----

    async def upsert_events(self, events: Sequence[Event]) -> int:
        """イベントの一括保存（(source, source_id) をキーに上書き）"""
        if not events:
            return 0

        sql = """
        INSERT INTO unified_events (
            id, source, source_id, title, start_time, end_time, location,
            description, attendees, owner_user_id, sync_status, last_synced_at,
            all_day, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(source, source_id) DO UPDATE SET
            title = excluded.title,
            start_time = excluded.start_time,
            end_time = excluded.end_time,
            location = excluded.location,
            description = excluded.description,
            attendees = excluded.attendees,
            owner_user_id = COALESCE(excluded.owner_user_id, unified_events.owner_user_id),
            sync_status = excluded.sync_status,
            last_synced_at = excluded.last_synced_at,
            all_day = excluded.all_day,
            updated_at = excluded.updated_at
        """

        now = _ts(utc_now())
        rows = [
            (
                event.id, event.source.value, event.source_id, event.title,
                _ts(event.start_time), _ts(event.end_time), event.location,
                event.description,
                json.dumps([attendee.to_dict() for attendee in event.attendees], ensure_ascii=False),
                event.metadata.owner_user_id, event.metadata.sync_status.value,
                _ts(event.metadata.last_synced_at), event.all_day, now, now,
            )
            for event in events
        ]

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.executemany(sql, rows)
                await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to upsert {len(rows)} events: {e}") from e

        logger.debug(f"Upserted {len(rows)} events")
        return len(rows)

    async def get_events(self,
                         start_date: Optional[datetime] = None,
                         end_date: Optional[datetime] = None,
                         sources: Optional[Sequence[EventSource]] = None,
                         owner_user_id: Optional[str] = None) -> List[Event]:
        """期間と重なるイベント取得"""
        conditions = []
        params: List[Any] = []

        if start_date:
            conditions.append("end_time > ?")
            params.append(_ts(start_date))

        if end_date:
            conditions.append("start_time < ?")
            params.append(_ts(end_date))

        if sources:
            conditions.append(f"source IN ({', '.join('?' for _ in sources)})")
            params.extend(source.value for source in sources)

        if owner_user_id:
            conditions.append("owner_user_id = ?")
            params.append(owner_user_id)

        where_clause = " WHERE " + " AND ".join(conditions) if conditions else ""
        sql = f"SELECT * FROM unified_events{where_clause} ORDER BY start_time ASC, end_time ASC, id ASC"

        return await self._select_events(sql, params)

    async def get_events_by_ids(self, event_ids: Sequence[str]) -> List[Event]:
        """IDによるイベント取得"""
        if not event_ids:
            return []
        sql = f"SELECT * FROM unified_events WHERE id IN ({', '.join('?' for _ in event_ids)}) ORDER BY id ASC"
        return await self._select_events(sql, list(event_ids))

    async def _select_events(self, sql: str, params: List[Any]) -> List[Event]:
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to get events: {e}")
            return []

        events = []
        for row in rows:
            event = self._row_to_event(row)
            if event:
                events.append(event)

        logger.debug(f"Retrieved {len(events)} events")
        return events

    def _row_to_event(self, row: aiosqlite.Row) -> Optional[Event]:
        """データベース行をEventに変換"""
        try:
            return Event(
                id=row['id'],
                source=EventSource(row['source']),
                source_id=row['source_id'],
                title=row['title'],
                start_time=_parse_ts(row['start_time']),
                end_time=_parse_ts(row['end_time']),
                location=row['location'],
                description=row['description'],
                attendees=tuple(
                    Attendee(email=a['email'], name=a.get('name'))
                    for a in json.loads(row['attendees'] or '[]')
                ),
                metadata=EventMetadata(
                    sync_status=EventSyncStatus(row['sync_status']),
                    owner_user_id=row['owner_user_id'],
                    last_synced_at=_parse_ts(row['last_synced_at']),
                ),
                all_day=bool(row['all_day']),
            )
        except Exception as e:
            logger.error(f"Failed to parse stored event: {e}")
            return None

    # ---- 競合 ----

    async def store_conflict(self, conflict: Conflict) -> None:
        """
        競合の保存

        決定的IDで上書きし、既存行の detected_at と resolved_* は保持する。
        """
        sql = """
        INSERT INTO calendar_conflicts (
            id, conflict_type, severity, event_ids, detected_at,
            resolved_at, resolution, resolved_by
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET severity = excluded.severity
        """

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (
                    conflict.id, conflict.type.value, conflict.severity.value,
                    json.dumps(conflict.event_ids), _ts(conflict.detected_at),
                    _ts(conflict.resolved_at),
                    conflict.resolution.value if conflict.resolution else None,
                    conflict.resolved_by,
                ))
                await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to store conflict {conflict.id}: {e}") from e

    async def get_conflict(self, conflict_id: str) -> Optional[Conflict]:
        """競合取得（ストレージ障害は StorageError）"""
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM calendar_conflicts WHERE id = ?", (conflict_id,))
                row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to load conflict {conflict_id}: {e}") from e

        return self._row_to_conflict(row) if row else None

    async def list_conflicts(self, unresolved_only: bool = True) -> List[Conflict]:
        """競合一覧"""
        sql = "SELECT * FROM calendar_conflicts"
        if unresolved_only:
            sql += " WHERE resolved_at IS NULL"
        sql += " ORDER BY detected_at DESC, id ASC"

        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql)
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to list conflicts: {e}")
            return []

        return [self._row_to_conflict(row) for row in rows]

    async def mark_conflict_resolved(self, conflict_id: str, strategy: ResolutionStrategy,
                                     resolved_by: str, resolved_at: datetime) -> bool:
        """
        解決済みに更新

        未解決の行のみ更新する。更新できた場合True。
        """
        sql = """
        UPDATE calendar_conflicts
        SET resolved_at = ?, resolution = ?, resolved_by = ?
        WHERE id = ? AND resolved_at IS NULL
        """

        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(sql, (_ts(resolved_at), strategy.value, resolved_by, conflict_id))
                await db.commit()
                return cursor.rowcount > 0
        except Exception as e:
            raise StorageError(f"Failed to record resolution for {conflict_id}: {e}") from e

    def _row_to_conflict(self, row: aiosqlite.Row) -> Conflict:
        return Conflict(
            id=row['id'],
            type=ConflictType(row['conflict_type']),
            severity=Severity(row['severity']),
            event_ids=json.loads(row['event_ids']),
            detected_at=_parse_ts(row['detected_at']),
            resolved_at=_parse_ts(row['resolved_at']),
            resolution=ResolutionStrategy(row['resolution']) if row['resolution'] else None,
            resolved_by=row['resolved_by'],
        )

    # ---- 同期ステータス・ログ ----

    async def update_sync_status(self, record: SyncStatusRecord) -> bool:
        """同期ステータス更新（失敗してもFalseを返すのみ）"""
        sql = """
        INSERT INTO sync_status (user_id, source, status, last_sync_at, events_synced, error_message)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, source) DO UPDATE SET
            status = excluded.status,
            last_sync_at = COALESCE(excluded.last_sync_at, sync_status.last_sync_at),
            events_synced = excluded.events_synced,
            error_message = excluded.error_message
        """

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (
                    record.user_id, record.source.value, record.status.value,
                    _ts(record.last_sync_at), record.events_synced, record.error_message,
                ))
                await db.commit()
                return True
        except Exception as e:
            logger.error(f"Failed to update sync status for {record.user_id}/{record.source.value}: {e}")
            return False

    async def get_sync_statuses(self, user_id: Optional[str] = None) -> List[SyncStatusRecord]:
        """同期ステータス取得"""
        if user_id:
            sql = "SELECT * FROM sync_status WHERE user_id = ? ORDER BY source ASC"
            params: tuple = (user_id,)
        else:
            sql = "SELECT * FROM sync_status ORDER BY user_id ASC, source ASC"
            params = ()

        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to get sync statuses: {e}")
            return []

        return [
            SyncStatusRecord(
                user_id=row['user_id'],
                source=EventSource(row['source']),
                status=SyncState(row['status']),
                last_sync_at=_parse_ts(row['last_sync_at']),
                events_synced=row['events_synced'],
                error_message=row['error_message'],
            )
            for row in rows
        ]

    async def add_sync_log(self, entry: SyncLogEntry) -> bool:
        """同期ログ追記（失敗してもFalseを返すのみ）"""
        sql = """
        INSERT INTO sync_logs (
            user_id, source, operation, status, events_processed,
            errors, duration_ms, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (
                    entry.user_id, entry.source.value, entry.operation.value,
                    entry.status.value, entry.events_processed,
                    json.dumps(entry.errors, ensure_ascii=False),
                    entry.duration_ms, _ts(entry.created_at),
                ))
                await db.commit()
                return True
        except Exception as e:
            logger.error(f"Failed to add sync log: {e}")
            return False

    async def get_sync_logs(self, user_id: Optional[str] = None,
                            source: Optional[EventSource] = None,
                            since: Optional[datetime] = None,
                            limit: int = 100) -> List[SyncLogEntry]:
        """同期ログ取得（新しい順）"""
        conditions = []
        params: List[Any] = []

        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if source:
            conditions.append("source = ?")
            params.append(source.value)
        if since:
            conditions.append("created_at >= ?")
            params.append(_ts(since))

        where_clause = " WHERE " + " AND ".join(conditions) if conditions else ""
        sql = f"SELECT * FROM sync_logs{where_clause} ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to get sync logs: {e}")
            return []

        return [
            SyncLogEntry(
                id=row['id'],
                user_id=row['user_id'],
                source=EventSource(row['source']),
                operation=SyncOperation(row['operation']),
                status=SyncLogStatus(row['status']),
                events_processed=row['events_processed'],
                errors=json.loads(row['errors'] or '[]'),
                duration_ms=row['duration_ms'],
                created_at=_parse_ts(row['created_at']),
            )
            for row in rows
        ]

    # ---- 接続設定 ----

    async def save_connection(self, connection: CalendarConnection, encrypted_config: str) -> None:
        sql = """
        INSERT INTO calendar_connections (
            user_id, source, encrypted_config, sync_direction,
            is_active, sync_enabled, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, source) DO UPDATE SET
            encrypted_config = excluded.encrypted_config,
            sync_direction = excluded.sync_direction,
            is_active = excluded.is_active,
            sync_enabled = excluded.sync_enabled,
            updated_at = excluded.updated_at
        """

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (
                    connection.user_id, connection.source.value, encrypted_config,
                    connection.sync_direction.value, connection.is_active,
                    connection.sync_enabled, _ts(connection.created_at),
                    _ts(connection.updated_at),
                ))
                await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to save connection {connection.user_id}/{connection.source.value}: {e}") from e

    async def get_connection_row(self, user_id: str, source: EventSource) -> Optional[Dict[str, Any]]:
        rows = await self._select_connection_rows(
            "SELECT * FROM calendar_connections WHERE user_id = ? AND source = ?",
            (user_id, source.value)
        )
        return rows[0] if rows else None

    async def list_connection_rows(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if user_id:
            return await self._select_connection_rows(
                "SELECT * FROM calendar_connections WHERE user_id = ? ORDER BY source ASC", (user_id,)
            )
        return await self._select_connection_rows(
            "SELECT * FROM calendar_connections ORDER BY user_id ASC, source ASC", ()
        )

    async def _select_connection_rows(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
        except Exception as e:
            raise StorageError(f"Failed to load connections: {e}") from e

        result = []
        for row in rows:
            data = dict(row)
            data['created_at'] = _parse_ts(data['created_at'])
            data['updated_at'] = _parse_ts(data['updated_at'])
            result.append(data)
        return result

    async def delete_connection(self, user_id: str, source: EventSource) -> bool:
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(
                    "DELETE FROM calendar_connections WHERE user_id = ? AND source = ?",
                    (user_id, source.value)
                )
                await db.commit()
                return cursor.rowcount > 0
        except Exception as e:
            raise StorageError(f"Failed to delete connection {user_id}/{source.value}: {e}") from e

    async def get_storage_statistics(self) -> Dict[str, Any]:
        """ストレージ統計情報"""
        try:
            stats = {}

            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM unified_events")
                stats['total_events'] = (await cursor.fetchone())[0]

                cursor = await db.execute("SELECT source, COUNT(*) FROM unified_events GROUP BY source")
                stats['events_by_source'] = {row[0]: row[1] for row in await cursor.fetchall()}

                cursor = await db.execute("SELECT COUNT(*) FROM calendar_conflicts WHERE resolved_at IS NULL")
                stats['unresolved_conflicts'] = (await cursor.fetchone())[0]

                cursor = await db.execute("SELECT COUNT(*) FROM sync_logs")
                stats['total_sync_logs'] = (await cursor.fetchone())[0]

            stats['database_size_mb'] = self.database_path.stat().st_size / (1024 * 1024)
            return stats

        except Exception as e:
            logger.error(f"Failed to get storage statistics: {e}")
            return {}
