"""
リアルタイムリスク判定
新規イベント作成時に前後の時間帯だけを調べ、重要度付きアラートを即時に返す
"""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional, Set

from ...config.enhanced_config import RealtimeConfig
from ...core.models import Alert, AlertType, Event, EventSource, Severity
from .advisory import AdvisoryClient, Tracker

logger = logging.getLogger(__name__)


class AlertBuffer:
    """直近アラートの保持（上限付き・古いものから破棄）"""

    def __init__(self, max_size: int = 100):
        self._alerts: Deque[Alert] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._alerts)

    def add(self, alert: Alert):
        self._alerts.append(alert)

    def extend(self, alerts: List[Alert]):
        self._alerts.extend(alerts)

    def recent(self, limit: int = 10, include_resolved: bool = False) -> List[Alert]:
        """新しい順に最大limit件"""
        alerts = [a for a in reversed(self._alerts) if include_resolved or not a.resolved]
        return alerts[:limit]

    def resolve(self, alert_id: str) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.resolved = True
                return True
        return False


def _new_alert_id() -> str:
    return f"alert_{uuid.uuid4().hex[:12]}"


class RealtimeRiskClassifier:
    """リアルタイムリスク判定エンジン"""

    def __init__(self, storage,
                 advisory: Optional[AdvisoryClient] = None,
                 tracker: Optional[Tracker] = None,
                 alert_buffer: Optional[AlertBuffer] = None,
                 config: Optional[RealtimeConfig] = None):
        self.storage = storage
        self.advisory = advisory
        self.tracker = tracker
        self.config = config or RealtimeConfig()
        self.alert_buffer = alert_buffer or AlertBuffer(self.config.alert_buffer_size)

        # 実行中のトラッキング呼び出し（完了時に除去）
        self._tracking_tasks: Set[asyncio.Task] = set()

    async def monitor_new_event(self, event: Event) -> List[Alert]:
        """新規イベントの即時リスク判定"""
        window = timedelta(minutes=self.config.window_minutes)
        nearby = await self.storage.get_events(event.start_time - window, event.end_time + window)
        nearby = [e for e in nearby if e.id != event.id]

        overlapping = [e for e in nearby if e.overlaps(event)]
        alerts: List[Alert] = []

        if overlapping:
            alerts.append(Alert(
                id=_new_alert_id(),
                type=AlertType.DOUBLE_BOOKING,
                severity=self._double_booking_severity(event, overlapping),
                message=(f"Potential double-booking detected: {event.title} overlaps with "
                         f"{len(overlapping)} other event(s)"),
                event_ids=[event.id] + [e.id for e in overlapping],
            ))

        location = event.normalized_location
        if location:
            same_location = [e for e in overlapping if e.normalized_location == location]
            if same_location:
                alerts.append(Alert(
                    id=_new_alert_id(),
                    type=AlertType.RESOURCE_CONFLICT,
                    severity=Severity.HIGH,
                    message=(f"Resource conflict: {event.title} and {len(same_location)} other event(s) "
                             f"scheduled at {event.location} simultaneously"),
                    event_ids=[event.id] + [e.id for e in same_location],
                ))

        alerts.extend(await self._advisory_alerts(event, nearby))

        self.alert_buffer.extend(alerts)
        if alerts:
            logger.info(f"Realtime check for {event.id}: {len(alerts)} alert(s)")

        self._track("calendar_event_monitored", {
            "eventId": event.id,
            "alertCount": len(alerts),
            "alertTypes": [a.type.value for a in alerts],
        })
        return alerts

    @staticmethod
    def _double_booking_severity(event: Event, overlapping: List[Event]) -> Severity:
        """参加者重複 → critical、場所重複 → high、それ以外 → medium"""
        emails = event.attendee_emails
        if emails and any(emails & other.attendee_emails for other in overlapping):
            return Severity.CRITICAL

        location = event.normalized_location
        if location and any(other.normalized_location == location for other in overlapping):
            return Severity.HIGH

        return Severity.MEDIUM

    async def _advisory_alerts(self, event: Event, nearby: List[Event]) -> List[Alert]:
        """アドバイザリー由来のアラート（失敗・空応答はエラーにしない）"""
        if self.advisory is None:
            return []

        try:
            suggestions = await self.advisory.assess_event(event, nearby)
        except Exception as e:
            logger.warning(f"Advisory assessment failed for {event.id}: {e}")
            return []

        alerts = []
        for suggestion in suggestions or []:
            alert = self._suggestion_to_alert(event, suggestion)
            if alert:
                alerts.append(alert)
        return alerts

    @staticmethod
    def _suggestion_to_alert(event: Event, suggestion: Dict[str, Any]) -> Optional[Alert]:
        if not isinstance(suggestion, dict) or not suggestion.get("message"):
            return None

        try:
            alert_type = AlertType(suggestion.get("type"))
        except ValueError:
            alert_type = AlertType.TIMEZONE_MISMATCH if "timezone" in str(suggestion.get("type")) \
                else AlertType.MISSING_ATTENDEE

        try:
            severity = Severity(suggestion.get("severity", "medium"))
        except ValueError:
            severity = Severity.MEDIUM

        return Alert(
            id=_new_alert_id(),
            type=alert_type,
            severity=severity,
            message=str(suggestion["message"]),
            event_ids=[event.id],
        )

    def monitor_sync_failure(self, source: EventSource, error: str) -> Alert:
        """同期失敗アラート"""
        alert = Alert(
            id=_new_alert_id(),
            type=AlertType.SYNC_FAILURE,
            severity=Severity.HIGH,
            message=f"Calendar sync failure for {source.value}: {error}",
        )
        self.alert_buffer.add(alert)

        self._track("calendar_sync_failure", {"source": source.value, "error": error})
        return alert

    def _track(self, event_name: str, payload: Dict[str, Any]):
        """トラッキング呼び出し（結果を待たず、失敗は呼び出し元へ伝播しない）"""
        if self.tracker is None:
            return

        try:
            result = self.tracker.track(event_name, payload)
        except Exception as e:
            logger.debug(f"Tracking call failed: {e}")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tracking_tasks.add(task)
            task.add_done_callback(self._on_tracking_done)

    def _on_tracking_done(self, task: asyncio.Task):
        self._tracking_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Tracking call failed: {task.exception()}")

    @property
    def pending_tracking(self) -> int:
        return len(self._tracking_tasks)

    def get_recent_alerts(self, limit: int = 10) -> List[Alert]:
        return self.alert_buffer.recent(limit)

    def resolve_alert(self, alert_id: str) -> bool:
        resolved = self.alert_buffer.resolve(alert_id)
        if resolved:
            logger.info(f"Alert resolved: {alert_id}")
        return resolved
