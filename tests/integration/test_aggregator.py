"""
イベント集約テスト
部分的なソース障害・重複排除・永続化の確認
"""

from datetime import timedelta
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from unified_calendar.config.enhanced_config import AggregationConfig
from unified_calendar.core.exceptions import SourceUnavailableError, StorageError
from unified_calendar.core.models import EventSource, EventSyncStatus
from unified_calendar.layers.data_processing.aggregator import EventAggregator

from conftest import BASE_TIME, StaticAdapter


def crm_record(record_id: str, start_offset: int = 0, minutes: int = 60,
               title: str = "Appointment", attendees=None) -> Dict[str, Any]:
    start = BASE_TIME + timedelta(minutes=start_offset)
    return {
        "id": record_id,
        "title": title,
        "startTime": start.isoformat(),
        "endTime": (start + timedelta(minutes=minutes)).isoformat(),
        "attendees": attendees or [],
    }


def oauth_record(record_id: str, start_offset: int = 0, minutes: int = 60,
                 title: str = "Meeting", attendees=None) -> Dict[str, Any]:
    start = BASE_TIME + timedelta(minutes=start_offset)
    return {
        "id": record_id,
        "summary": title,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": (start + timedelta(minutes=minutes)).isoformat()},
        "attendees": attendees or [],
    }


def booking_record(uid: str, start_offset: int = 0, minutes: int = 60,
                   email: str = "guest@example.com", canceled: bool = False) -> Dict[str, Any]:
    start = BASE_TIME + timedelta(minutes=start_offset)
    return {
        "uri": f"https://booking.example.com/scheduled_events/{uid}",
        "event_name": "Consultation",
        "invitee": {"email": email, "name": "Guest"},
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(minutes=minutes)).isoformat(),
        "canceled": canceled,
    }


class TestEventAggregation:
    """集約のテスト"""

    @pytest.mark.asyncio
    async def test_partial_failure_isolation(self):
        """3ソース中1ソースの失敗でも残り2ソースのイベントが返る"""
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [crm_record("c1")]),
            EventSource.OAUTH_CALENDAR: StaticAdapter(EventSource.OAUTH_CALENDAR, [oauth_record("g1", 120)]),
            EventSource.BOOKING_LINK: StaticAdapter(
                EventSource.BOOKING_LINK, error=SourceUnavailableError("booking-link", "HTTP 503")
            ),
        }
        aggregator = EventAggregator(adapters)

        result = await aggregator.aggregate_events(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert {e.source for e in result.events} == {EventSource.CRM_CALENDAR, EventSource.OAUTH_CALENDAR}
        assert list(result.source_errors) == [EventSource.BOOKING_LINK]
        assert "503" in result.source_errors[EventSource.BOOKING_LINK]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_source_failure(self):
        """タイムアウトしたソースはエラーとして記録"""
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [crm_record("c1")], delay=1.0),
            EventSource.OAUTH_CALENDAR: StaticAdapter(EventSource.OAUTH_CALENDAR, [oauth_record("g1")]),
        }
        aggregator = EventAggregator(adapters, config=AggregationConfig(adapter_timeout_seconds=0.05))

        result = await aggregator.aggregate_events(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert [e.source for e in result.events] == [EventSource.OAUTH_CALENDAR]
        assert "Timed out" in result.source_errors[EventSource.CRM_CALENDAR]

    @pytest.mark.asyncio
    async def test_source_selection(self):
        """指定ソースのみ呼び出す"""
        crm = StaticAdapter(EventSource.CRM_CALENDAR, [crm_record("c1")])
        oauth = StaticAdapter(EventSource.OAUTH_CALENDAR, [oauth_record("g1")])
        aggregator = EventAggregator({EventSource.CRM_CALENDAR: crm, EventSource.OAUTH_CALENDAR: oauth})

        events = await aggregator.aggregate(BASE_TIME, BASE_TIME + timedelta(days=1),
                                            sources=[EventSource.OAUTH_CALENDAR])

        assert [e.id for e in events] == ["oauth-calendar-g1"]
        assert crm.calls == 0

    @pytest.mark.asyncio
    async def test_output_sorted_by_start(self):
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [
                crm_record("late", 180), crm_record("early", 0), crm_record("mid", 60),
            ]),
        }
        events = await EventAggregator(adapters).aggregate(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert [e.source_id for e in events] == ["early", "mid", "late"]

    @pytest.mark.asyncio
    async def test_malformed_records_dropped(self):
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [
                crm_record("ok"), {"id": "broken", "title": "no times"},
            ]),
        }
        result = await EventAggregator(adapters).aggregate_events(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert [e.source_id for e in result.events] == ["ok"]
        assert result.source_errors == {}


class TestDeduplication:
    """重複排除のテスト"""

    @pytest.mark.asyncio
    async def test_same_source_key_survives_once(self):
        """同一 (source, source_id) は1件のみ残る"""
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [
                crm_record("dup", 0), crm_record("dup", 0),
            ]),
        }
        events = await EventAggregator(adapters).aggregate(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert [e.id for e in events] == ["crm-calendar-dup"]

    @pytest.mark.asyncio
    async def test_synced_preferred_over_pending(self):
        """同じ時間帯・代表参加者では同期済みを優先"""
        adapters = {
            EventSource.BOOKING_LINK: StaticAdapter(EventSource.BOOKING_LINK, [
                booking_record("pending-one", canceled=True),
            ]),
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [
                crm_record("synced-one", attendees=[{"email": "guest@example.com"}]),
            ]),
        }
        events = await EventAggregator(adapters).aggregate(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert len(events) == 1
        assert events[0].source_id == "synced-one"
        assert events[0].metadata.sync_status == EventSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_more_attendees_preferred(self):
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [
                crm_record("few", attendees=[{"email": "lead@example.com"}]),
            ]),
            EventSource.OAUTH_CALENDAR: StaticAdapter(EventSource.OAUTH_CALENDAR, [
                oauth_record("many", attendees=[{"email": "lead@example.com"}, {"email": "b@example.com"}]),
            ]),
        }
        events = await EventAggregator(adapters).aggregate(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert [e.source_id for e in events] == ["many"]

    @pytest.mark.asyncio
    async def test_events_without_attendees_not_merged(self):
        """参加者のないイベントは時間帯が同じでも別イベントとして残る"""
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [crm_record("a"), crm_record("b")]),
        }
        events = await EventAggregator(adapters).aggregate(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert len(events) == 2


class TestAggregationPersistence:
    """永続化のテスト"""

    @pytest.mark.asyncio
    async def test_events_persisted_without_sync_logs(self, temp_storage):
        """集約は読み取り操作なので同期ログを残さない"""
        adapters = {
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [crm_record("c1")]),
            EventSource.BOOKING_LINK: StaticAdapter(
                EventSource.BOOKING_LINK, error=SourceUnavailableError("booking-link", "down")
            ),
        }
        aggregator = EventAggregator(adapters, storage=temp_storage)

        await aggregator.aggregate_events(BASE_TIME, BASE_TIME + timedelta(days=1), user_id="user-1")

        stored = await temp_storage.get_events(BASE_TIME, BASE_TIME + timedelta(days=1))
        assert [e.id for e in stored] == ["crm-calendar-c1"]
        assert stored[0].metadata.owner_user_id == "user-1"

        assert await temp_storage.get_sync_logs() == []
        assert await temp_storage.get_sync_statuses() == []

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_fatal(self):
        """保存に失敗してもメモリ上の結果を返す"""
        storage = AsyncMock()
        storage.upsert_events.side_effect = StorageError("disk full")

        adapters = {EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [crm_record("c1")])}
        aggregator = EventAggregator(adapters, storage=storage)

        events = await aggregator.aggregate(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert [e.id for e in events] == ["crm-calendar-c1"]
        storage.upsert_events.assert_awaited_once()
