"""
統合カレンダーサービス
表示層・APIから利用する窓口。各コンポーネントは外部から注入する。
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .config.enhanced_config import EnhancedConfig, SecurityManager
from .core.models import (
    Event,
    EventSource,
    ResolutionStrategy,
    SyncDirection,
    SyncLogEntry,
    SyncLogStatus,
)
from .layers.data_acquisition.error_handler import ErrorHandler
from .layers.data_acquisition.provider_registry import ConnectionManager
from .layers.data_acquisition.source_adapters import SourceAdapter, build_http_adapters
from .layers.data_processing.aggregator import EventAggregator
from .layers.data_processing.event_normalizer import EventNormalizer
from .layers.monitoring_layer.advisory import AdvisoryClient, HttpAdvisoryClient, Tracker, safe_analyze
from .layers.monitoring_layer.realtime_classifier import AlertBuffer, RealtimeRiskClassifier
from .layers.sync_layer.conflict_detector import ConflictDetector
from .layers.sync_layer.conflict_resolver import ConflictResolver
from .layers.sync_layer.event_storage import EventStorage
from .layers.sync_layer.sync_orchestrator import SyncOrchestrator
from .utils.enhanced_logger import EnhancedLogger, setup_logging

logger = logging.getLogger(__name__)


def _sync_reliability(logs: Sequence[SyncLogEntry]) -> List[Dict[str, Any]]:
    """ソース別の同期成功率と試行回数"""
    totals: Counter = Counter(log.source.value for log in logs)
    successes: Counter = Counter(log.source.value for log in logs if log.status == SyncLogStatus.SUCCESS)
    return [
        {
            "source": source,
            "successRate": round(successes[source] / total * 100, 1),
            "totalSyncs": total,
        }
        for source, total in sorted(totals.items())
    ]


def _busiest_hours(events: Sequence[Event], limit: int = 5) -> List[Dict[str, int]]:
    # 開始時刻（UTC）の時間帯別件数。同数は時間の早い順
    counts = Counter(event.start_time.hour for event in events)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{"hour": hour, "count": count} for hour, count in ranked[:limit]]


class UnifiedCalendarService:
    """統合カレンダーサービス"""

    def __init__(self,
                 storage: EventStorage,
                 aggregator: EventAggregator,
                 detector: ConflictDetector,
                 resolver: ConflictResolver,
                 orchestrator: SyncOrchestrator,
                 connections: ConnectionManager,
                 classifier: RealtimeRiskClassifier,
                 advisory: Optional[AdvisoryClient] = None,
                 enhanced_logger: Optional[EnhancedLogger] = None):
        self.storage = storage
        self.aggregator = aggregator
        self.detector = detector
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.connections = connections
        self.classifier = classifier
        self.advisory = advisory
        self.enhanced_logger = enhanced_logger

    async def initialize(self) -> bool:
        return await self.storage.initialize()

    # ---- 統合ビュー・競合 ----

    async def get_unified_view(self, start_date: datetime, end_date: datetime,
                               user_id: Optional[str] = None,
                               sources: Optional[Sequence[EventSource]] = None) -> Dict[str, Any]:
        """統合ビュー（イベント・競合件数・期間・ソース別エラー）"""
        result = await self.aggregator.aggregate_events(start_date, end_date, user_id, sources)
        conflicts = await self.detector.detect_conflicts(result.events)

        return {
            "events": [event.to_dict() for event in result.events],
            "conflictCount": len(conflicts),
            "dateRange": {"start": start_date.isoformat(), "end": end_date.isoformat()},
            "sourceErrors": {source.value: message for source, message in result.source_errors.items()},
        }

    async def list_unresolved_conflicts(self) -> List[Dict[str, Any]]:
        conflicts = await self.resolver.get_unresolved_conflicts()
        return [conflict.to_dict() for conflict in conflicts]

    async def resolve_conflict(self, conflict_id: str, strategy: ResolutionStrategy,
                               resolved_by: str) -> Dict[str, Any]:
        """競合解決（ドメインエラーはそのまま呼び出し元へ）"""
        conflict = await self.resolver.resolve(conflict_id, strategy, resolved_by)
        await self.resolver.load_events(conflict)
        kept = self.resolver.apply_resolution(conflict, strategy)

        return {
            "conflict": conflict.to_dict(),
            "keptEventIds": [event.id for event in kept],
        }

    async def auto_resolve_conflicts(self, strategy: ResolutionStrategy,
                                     resolved_by: str = "system") -> int:
        conflicts = await self.resolver.get_unresolved_conflicts()
        return await self.resolver.auto_resolve(conflicts, strategy, resolved_by)

    # ---- 同期 ----

    async def trigger_sync(self, user_id: str, source: Optional[EventSource] = None) -> List[Dict[str, Any]]:
        results = await self.orchestrator.sync_user_calendars(user_id, source)
        return [result.to_dict() for result in results]

    # ---- 接続設定 ----

    async def add_connection(self, user_id: str, source: EventSource, config: Dict[str, Any],
                             sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL) -> Dict[str, Any]:
        connection = await self.connections.add_connection(user_id, source, config, sync_direction)
        return connection.to_dict()

    async def update_connection(self, user_id: str, source: EventSource, **changes) -> Dict[str, Any]:
        connection = await self.connections.update_connection(user_id, source, **changes)
        return connection.to_dict()

    async def remove_connection(self, user_id: str, source: EventSource) -> None:
        await self.connections.remove_connection(user_id, source)

    async def test_connection(self, user_id: str, source: EventSource,
                              config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.connections.test_connection(user_id, source, config)

    async def list_connections(self, user_id: str) -> List[Dict[str, Any]]:
        connections = await self.connections.list_connections(user_id)
        return [connection.to_dict() for connection in connections]

    # ---- リアルタイム監視 ----

    async def handle_new_event(self, event: Event) -> List[Dict[str, Any]]:
        alerts = await self.classifier.monitor_new_event(event)
        return [alert.to_dict() for alert in alerts]

    def get_recent_alerts(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [alert.to_dict() for alert in self.classifier.get_recent_alerts(limit)]

    def resolve_alert(self, alert_id: str) -> bool:
        return self.classifier.resolve_alert(alert_id)

    # ---- 分析 ----

    async def get_analytics(self, user_id: Optional[str] = None,
                            start_date: Optional[datetime] = None,
                            end_date: Optional[datetime] = None) -> Dict[str, Any]:
        """
        分析情報

        ソース別件数・同期状況・競合統計・同期成功率（全体とソース別）・
        開始時間帯の上位5件・平均所要時間。storage のみ全期間の集計。
        """
        events = await self.storage.get_events(start_date, end_date, owner_user_id=user_id)
        statuses = await self.storage.get_sync_statuses(user_id)
        conflicts = await self.storage.list_conflicts(unresolved_only=False)
        logs = await self.storage.get_sync_logs(user_id=user_id, since=start_date, limit=1000)

        successful_logs = sum(1 for log in logs if log.status == SyncLogStatus.SUCCESS)
        success_rate = (successful_logs / len(logs) * 100) if logs else 100.0

        total_minutes = sum(event.duration.total_seconds() / 60 for event in events)
        average_minutes = total_minutes / len(events) if events else 0.0

        return {
            "totalEvents": len(events),
            "eventsBySource": dict(Counter(event.source.value for event in events)),
            "syncStatuses": [status.to_dict() for status in statuses],
            "conflicts": {
                "total": len(conflicts),
                "unresolved": sum(1 for c in conflicts if not c.is_resolved),
                "bySeverity": dict(Counter(c.severity.value for c in conflicts)),
                "byType": dict(Counter(c.type.value for c in conflicts)),
            },
            "syncSuccessRate": round(success_rate, 1),
            "syncReliability": _sync_reliability(logs),
            "busiestTimeSlots": _busiest_hours(events),
            "averageEventDurationMinutes": round(average_minutes, 1),
            "storage": await self.storage.get_storage_statistics(),
        }

    async def get_insights(self, start_date: datetime, end_date: datetime,
                           user_id: Optional[str] = None) -> Dict[str, Any]:
        """アドバイザリー分析（失敗時は固定の推奨事項）"""
        events = await self.storage.get_events(start_date, end_date, owner_user_id=user_id)
        conflicts = await self.resolver.get_unresolved_conflicts()
        report = await safe_analyze(self.advisory, events, conflicts)
        return report.to_dict()

    def get_health_status(self) -> Dict[str, Any]:
        """健全性ステータス（ログメトリクス＋各コンポーネント統計）"""
        health = self.enhanced_logger.get_health_status() if self.enhanced_logger else {}
        return {
            **health,
            "detector": self.detector.get_statistics(),
            "resolver": self.resolver.get_statistics(),
            "adapterErrors": self.orchestrator.error_handler.get_error_summary(),
            "activeAlerts": len(self.classifier.get_recent_alerts(self.classifier.config.alert_buffer_size)),
        }


def build_service(config: EnhancedConfig,
                  security_manager: Optional[SecurityManager] = None,
                  adapters: Optional[Dict[EventSource, SourceAdapter]] = None,
                  advisory: Optional[AdvisoryClient] = None,
                  tracker: Optional[Tracker] = None) -> UnifiedCalendarService:
    """設定からサービス一式を組み立てる"""
    enhanced_logger = setup_logging(config.logging)

    storage = EventStorage(config.storage.database_path)
    if adapters is None:
        adapters = build_http_adapters(config.sources, config.aggregation.adapter_timeout_seconds)

    if advisory is None and config.advisory.enabled and config.advisory.endpoint:
        advisory = HttpAdvisoryClient(config.advisory.endpoint, config.advisory.timeout_seconds)

    connections = ConnectionManager(storage, security_manager or SecurityManager(), adapters)
    classifier = RealtimeRiskClassifier(
        storage,
        advisory=advisory,
        tracker=tracker,
        alert_buffer=AlertBuffer(config.realtime.alert_buffer_size),
        config=config.realtime,
    )

    aggregator = EventAggregator(
        adapters,
        storage=storage,
        normalizer=EventNormalizer(config.aggregation.default_timezone),
        config=config.aggregation,
    )
    detector = ConflictDetector(storage, config.detection)
    resolver = ConflictResolver(storage)
    orchestrator = SyncOrchestrator(
        storage, adapters, connections,
        error_handler=ErrorHandler(),
        config=config.sync,
        failure_listener=classifier.monitor_sync_failure,
        enhanced_logger=enhanced_logger,
    )

    logger.info(f"Unified calendar service built with sources: {[s.value for s in adapters]}")

    return UnifiedCalendarService(
        storage=storage,
        aggregator=aggregator,
        detector=detector,
        resolver=resolver,
        orchestrator=orchestrator,
        connections=connections,
        classifier=classifier,
        advisory=advisory,
        enhanced_logger=enhanced_logger,
    )
