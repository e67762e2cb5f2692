"""
統合テスト共通フィクスチャ
"""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest
from cryptography.fernet import Fernet

from unified_calendar.config.enhanced_config import SecurityManager
from unified_calendar.core.models import (
    Attendee,
    Event,
    EventMetadata,
    EventSource,
    EventSyncStatus,
    PushResult,
)
from unified_calendar.layers.data_acquisition.source_adapters import SourceAdapter
from unified_calendar.layers.sync_layer.event_storage import EventStorage

BASE_TIME = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class StaticAdapter(SourceAdapter):
    """固定レコードを返すテスト用アダプター"""

    def __init__(self, source: EventSource, records: List[Dict[str, Any]] = None,
                 error: Exception = None, delay: float = 0.0):
        self.source = source
        self.records = records or []
        self.error = error
        self.delay = delay
        self.calls = 0

    async def pull(self, user_id, start, end):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.records)

    async def push(self, user_id, events):
        return PushResult(success=True, synced=len(events))

    async def authenticate(self, user_id):
        return "https://auth.example.com"

    async def disconnect(self, user_id):
        return None


@pytest.fixture
async def temp_storage():
    """テンポラリストレージ"""
    with tempfile.TemporaryDirectory() as temp_dir:
        storage = EventStorage(Path(temp_dir) / "test.db")
        await storage.initialize()
        yield storage


@pytest.fixture
def security_manager():
    """テスト用暗号化マネージャー"""
    return SecurityManager(Fernet.generate_key().decode())


@pytest.fixture
def make_event():
    """テスト用イベント生成"""
    def _make(source_id: str,
              source: EventSource = EventSource.INTERNAL,
              start_offset_minutes: int = 0,
              duration_minutes: int = 60,
              title: str = "テストイベント",
              location=None,
              attendees=(),
              sync_status: EventSyncStatus = EventSyncStatus.SYNCED,
              owner_user_id=None,
              last_synced_at=None) -> Event:
        start = BASE_TIME + timedelta(minutes=start_offset_minutes)
        return Event(
            id=Event.make_id(source, source_id),
            source=source,
            source_id=source_id,
            title=title,
            start_time=start,
            end_time=start + timedelta(minutes=duration_minutes),
            location=location,
            attendees=tuple(Attendee(email=email) for email in attendees),
            metadata=EventMetadata(
                sync_status=sync_status,
                owner_user_id=owner_user_id,
                last_synced_at=last_synced_at,
            ),
        )

    return _make
