"""
統合カレンダーサービス統合テスト
集約 → 競合検出 → 解決 → 分析・同期・リアルタイム監視までの一連の流れ
"""

from datetime import timedelta

import pytest

from unified_calendar.config.enhanced_config import EnhancedConfig, StorageConfig
from unified_calendar.core.exceptions import (
    AlreadyResolvedError,
    InvalidProviderConfigError,
    SourceAuthenticationError,
)
from unified_calendar.core.models import EventSource, ResolutionStrategy
from unified_calendar.layers.monitoring_layer.advisory import FALLBACK_RECOMMENDATIONS
from unified_calendar.service import build_service

from conftest import BASE_TIME, StaticAdapter

INTERNAL_RECORD = {
    "id": 1,
    "title": "Hull survey",
    "operation_date": "2026-03-02",
    "start_time": "10:00",
    "end_time": "11:00",
    "location": "Bay 1",
    "user_id": "user-1",
}

OAUTH_RECORD = {
    "id": "g-1",
    "summary": "Crane lift",
    "start": {"dateTime": "2026-03-02T10:30:00Z"},
    "end": {"dateTime": "2026-03-02T11:30:00Z"},
    "location": "bay 1 ",
}


class TestUnifiedCalendarService:
    """サービス全体のテスト"""

    @pytest.fixture
    async def service(self, tmp_path, security_manager):
        config = EnhancedConfig(storage=StorageConfig(database_path=str(tmp_path / "hub.db")))
        adapters = {
            EventSource.INTERNAL: StaticAdapter(EventSource.INTERNAL, [INTERNAL_RECORD]),
            EventSource.OAUTH_CALENDAR: StaticAdapter(EventSource.OAUTH_CALENDAR, [OAUTH_RECORD]),
            EventSource.CRM_CALENDAR: StaticAdapter(
                EventSource.CRM_CALENDAR,
                error=SourceAuthenticationError("crm-calendar", "HTTP 401: authentication failed"),
            ),
        }
        service = build_service(config, security_manager=security_manager, adapters=adapters)
        await service.initialize()
        return service

    @pytest.mark.asyncio
    async def test_unified_view(self, service):
        """統合ビューにイベント・競合件数・ソース別エラーが含まれる"""
        view = await service.get_unified_view(BASE_TIME, BASE_TIME + timedelta(days=1), user_id="user-1")

        assert [e["id"] for e in view["events"]] == ["internal-1", "oauth-calendar-g-1"]
        # 時間重複(low) + リソース競合(high)
        assert view["conflictCount"] == 2
        assert view["dateRange"]["start"] == BASE_TIME.isoformat()
        assert list(view["sourceErrors"]) == ["crm-calendar"]

    @pytest.mark.asyncio
    async def test_conflict_workflow(self, service):
        await service.get_unified_view(BASE_TIME, BASE_TIME + timedelta(days=1), user_id="user-1")

        unresolved = await service.list_unresolved_conflicts()
        by_type = {c["type"]: c for c in unresolved}
        assert by_type["resource"]["severity"] == "high"
        assert by_type["time_overlap"]["severity"] == "low"

        assert await service.auto_resolve_conflicts(ResolutionStrategy.NEWEST_WINS) == 1

        result = await service.resolve_conflict(by_type["resource"]["id"], ResolutionStrategy.LOCAL_WINS, "ops-lead")
        assert result["keptEventIds"] == ["internal-1"]
        assert result["conflict"]["resolvedBy"] == "ops-lead"
        assert await service.list_unresolved_conflicts() == []

        with pytest.raises(AlreadyResolvedError):
            await service.resolve_conflict(by_type["resource"]["id"], ResolutionStrategy.REMOTE_WINS, "ops-lead")

    @pytest.mark.asyncio
    async def test_redetection_does_not_duplicate_conflicts(self, service):
        for _ in range(2):
            await service.get_unified_view(BASE_TIME, BASE_TIME + timedelta(days=1), user_id="user-1")

        assert len(await service.list_unresolved_conflicts()) == 2

    @pytest.mark.asyncio
    async def test_analytics(self, service):
        await service.get_unified_view(BASE_TIME, BASE_TIME + timedelta(days=1), user_id="user-1")
        await service.trigger_sync("user-1", EventSource.INTERNAL)
        await service.trigger_sync("user-1", EventSource.CRM_CALENDAR)

        analytics = await service.get_analytics()

        assert analytics["totalEvents"] == 2
        assert analytics["eventsBySource"] == {"internal": 1, "oauth-calendar": 1}
        assert analytics["conflicts"]["total"] == 2
        assert analytics["conflicts"]["bySeverity"] == {"high": 1, "low": 1}
        # 統合ビューの読み取りは同期ログに含まれない
        assert analytics["syncSuccessRate"] == 50.0
        assert analytics["syncReliability"] == [
            {"source": "crm-calendar", "successRate": 0.0, "totalSyncs": 1},
            {"source": "internal", "successRate": 100.0, "totalSyncs": 1},
        ]
        assert analytics["busiestTimeSlots"] == [{"hour": 10, "count": 2}]
        assert analytics["averageEventDurationMinutes"] == 60.0
        assert analytics["storage"]["total_events"] == 2
        assert analytics["storage"]["unresolved_conflicts"] == 2

    @pytest.mark.asyncio
    async def test_insights_fall_back_without_advisory(self, service):
        insights = await service.get_insights(BASE_TIME, BASE_TIME + timedelta(days=1))

        assert insights["fallback"] is True
        assert insights["recommendations"] == FALLBACK_RECOMMENDATIONS

    @pytest.mark.asyncio
    async def test_sync_failure_raises_alert(self, service):
        """同期失敗はリアルタイムアラートとして通知される"""
        results = await service.trigger_sync("user-1", EventSource.CRM_CALENDAR)

        assert results[0]["success"] is False
        alerts = service.get_recent_alerts()
        assert alerts[0]["type"] == "sync_failure"
        assert "crm-calendar" in alerts[0]["message"]

        assert service.resolve_alert(alerts[0]["id"]) is True
        assert service.get_recent_alerts() == []

    @pytest.mark.asyncio
    async def test_handle_new_event(self, service, make_event):
        await service.get_unified_view(BASE_TIME, BASE_TIME + timedelta(days=1), user_id="user-1")

        alerts = await service.handle_new_event(
            make_event("new", EventSource.INTERNAL, 15, 30, location="BAY 1")
        )

        assert {a["type"] for a in alerts} == {"double_booking", "resource_conflict"}

    @pytest.mark.asyncio
    async def test_connections(self, service):
        created = await service.add_connection("user-1", EventSource.OAUTH_CALENDAR, {
            "client_id": "cid", "client_secret": "secret", "refresh_token": "refresh",
        })
        assert "config" not in created

        listed = await service.list_connections("user-1")
        assert [c["source"] for c in listed] == ["oauth-calendar"]

        with pytest.raises(InvalidProviderConfigError):
            await service.test_connection("user-1", EventSource.OAUTH_CALENDAR, {"client_id": "cid"})

        tested = await service.test_connection("user-1", EventSource.OAUTH_CALENDAR)
        assert tested == {"success": True, "eventsFound": 1}

        await service.remove_connection("user-1", EventSource.OAUTH_CALENDAR)
        assert await service.list_connections("user-1") == []

    @pytest.mark.asyncio
    async def test_health_status(self, service):
        await service.trigger_sync("user-1", EventSource.CRM_CALENDAR)

        health = service.get_health_status()

        assert health["adapterErrors"] == {"authentication_error": 1}
        assert health["activeAlerts"] == 1
        assert "detector" in health

    @pytest.mark.asyncio
    async def test_busiest_time_slots_top_five(self, service, make_event):
        """件数の多い順、同数は早い時間帯から最大5件"""
        offsets = [0, 60, 120, 180, 185, 240, 300]
        await service.storage.upsert_events([
            make_event(f"slot-{i}", start_offset_minutes=offset, duration_minutes=30)
            for i, offset in enumerate(offsets)
        ])

        analytics = await service.get_analytics()

        assert analytics["busiestTimeSlots"] == [
            {"hour": 13, "count": 2},
            {"hour": 10, "count": 1},
            {"hour": 11, "count": 1},
            {"hour": 12, "count": 1},
            {"hour": 14, "count": 1},
        ]
        assert analytics["averageEventDurationMinutes"] == 30.0
        assert analytics["syncReliability"] == []
        assert analytics["syncSuccessRate"] == 100.0
