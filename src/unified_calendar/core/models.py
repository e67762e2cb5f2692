"""データモデル定義"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class EventSource(Enum):
    """予定の取得元システム"""
    INTERNAL = "internal"
    BOOKING_LINK = "booking-link"
    OAUTH_CALENDAR = "oauth-calendar"
    CRM_CALENDAR = "crm-calendar"


class EventSyncStatus(Enum):
    """イベント単位の同期状態"""
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class ConflictType(Enum):
    """競合タイプ"""
    TIME_OVERLAP = "time_overlap"
    DUPLICATE = "duplicate"
    RESOURCE = "resource"


class Severity(Enum):
    """重要度（low < medium < high < critical）"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ResolutionStrategy(Enum):
    """競合解決戦略"""
    LOCAL_WINS = "local_wins"      # 社内カレンダー優先
    REMOTE_WINS = "remote_wins"    # 外部カレンダー優先
    NEWEST_WINS = "newest_wins"    # 最新同期優先
    MANUAL = "manual"              # 手動判断


class SyncState(Enum):
    """(ユーザー, ソース)単位の同期ステータス"""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class SyncOperation(Enum):
    """同期ログの操作種別"""
    PULL = "pull"
    PUSH = "push"
    SYNC = "sync"


class SyncLogStatus(Enum):
    """同期ログの結果"""
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class SyncDirection(Enum):
    """接続ごとの同期方向"""
    BIDIRECTIONAL = "bidirectional"
    PULL = "pull"
    PUSH = "push"

    @property
    def includes_pull(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.PULL)

    @property
    def includes_push(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.PUSH)


class AlertType(Enum):
    """リアルタイムアラート種別"""
    DOUBLE_BOOKING = "double_booking"
    RESOURCE_CONFLICT = "resource_conflict"
    MISSING_ATTENDEE = "missing_attendee"
    TIMEZONE_MISMATCH = "timezone_mismatch"
    SYNC_FAILURE = "sync_failure"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_location(location: Optional[str]) -> str:
    """場所文字列の比較用正規化"""
    return (location or "").strip().lower()


@dataclass(frozen=True)
class Attendee:
    """参加者"""
    email: str
    name: Optional[str] = None

    def __post_init__(self):
        # 比較用にメールアドレスは小文字へ統一
        object.__setattr__(self, "email", self.email.strip().lower())

    def to_dict(self) -> Dict[str, Any]:
        return {"email": self.email, "name": self.name}


@dataclass(frozen=True)
class EventMetadata:
    """イベントメタデータ"""
    sync_status: EventSyncStatus = EventSyncStatus.SYNCED
    owner_user_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None


@dataclass(frozen=True)
class Event:
    """正規化済みイベント（ソース非依存の共通形式）"""
    id: str
    source: EventSource
    source_id: str
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    description: Optional[str] = None
    attendees: Tuple[Attendee, ...] = ()
    metadata: EventMetadata = field(default_factory=EventMetadata)
    all_day: bool = False

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError(f"Event {self.id}: end_time must be after start_time")

    @staticmethod
    def make_id(source: EventSource, source_id: str) -> str:
        return f"{source.value}-{source_id}"

    @property
    def source_key(self) -> Tuple[str, str]:
        return (self.source.value, self.source_id)

    @property
    def primary_attendee_email(self) -> str:
        return self.attendees[0].email if self.attendees else ""

    @property
    def attendee_emails(self) -> set:
        return {attendee.email for attendee in self.attendees}

    @property
    def normalized_location(self) -> str:
        return normalize_location(self.location)

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def is_synced(self) -> bool:
        return self.metadata.sync_status == EventSyncStatus.SYNCED

    def overlaps(self, other: "Event") -> bool:
        return self.start_time < other.end_time and other.start_time < self.end_time

    def overlap_duration(self, other: "Event") -> timedelta:
        start = max(self.start_time, other.start_time)
        end = min(self.end_time, other.end_time)
        return max(end - start, timedelta(0))

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "id": self.id,
            "source": self.source.value,
            "sourceId": self.source_id,
            "title": self.title,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "location": self.location,
            "description": self.description,
            "attendees": [attendee.to_dict() for attendee in self.attendees],
            "metadata": {
                "ownerUserId": self.metadata.owner_user_id,
                "syncStatus": self.metadata.sync_status.value,
                "lastSyncedAt": self.metadata.last_synced_at.isoformat()
                if self.metadata.last_synced_at else None,
            },
            "allDay": self.all_day,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """to_dict() の出力から復元"""
        metadata = data.get("metadata") or {}
        last_synced_at = metadata.get("lastSyncedAt")
        return cls(
            id=data["id"],
            source=EventSource(data["source"]),
            source_id=data["sourceId"],
            title=data["title"],
            start_time=datetime.fromisoformat(data["startTime"]),
            end_time=datetime.fromisoformat(data["endTime"]),
            location=data.get("location"),
            description=data.get("description"),
            attendees=tuple(
                Attendee(email=a["email"], name=a.get("name"))
                for a in data.get("attendees", []) if a.get("email")
            ),
            metadata=EventMetadata(
                sync_status=EventSyncStatus(metadata.get("syncStatus", "synced")),
                owner_user_id=metadata.get("ownerUserId"),
                last_synced_at=datetime.fromisoformat(last_synced_at) if last_synced_at else None,
            ),
            all_day=bool(data.get("allDay", False)),
        )


@dataclass
class Conflict:
    """検出された競合"""
    id: str
    type: ConflictType
    severity: Severity
    event_ids: List[str]
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    resolution: Optional[ResolutionStrategy] = None
    resolved_by: Optional[str] = None
    # 検出時のメンバーイベント（永続化しない）
    events: List[Event] = field(default_factory=list, repr=False, compare=False)

    @staticmethod
    def make_id(conflict_type: ConflictType, event_ids: List[str]) -> str:
        """競合タイプと構成イベントから決定的なIDを生成"""
        content = f"{conflict_type.value}|{'|'.join(sorted(event_ids))}"
        return hashlib.sha1(content.encode()).hexdigest()[:20]

    @classmethod
    def create(cls, conflict_type: ConflictType, severity: Severity,
               events: List[Event], detected_at: Optional[datetime] = None) -> "Conflict":
        event_ids = sorted(event.id for event in events)
        return cls(
            id=cls.make_id(conflict_type, event_ids),
            type=conflict_type,
            severity=severity,
            event_ids=event_ids,
            detected_at=detected_at or utc_now(),
            events=sorted(events, key=lambda e: e.id),
        )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def is_auto_resolvable(self) -> bool:
        return self.severity in (Severity.LOW, Severity.MEDIUM)

    def identity(self) -> Tuple[str, Tuple[str, ...], str]:
        return (self.type.value, tuple(self.event_ids), self.severity.value)

    def summary(self) -> str:
        return f"Conflict {self.type.value} ({self.severity.value}): {', '.join(self.event_ids)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "eventIds": list(self.event_ids),
            "detectedAt": self.detected_at.isoformat(),
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution.value if self.resolution else None,
            "resolvedBy": self.resolved_by,
        }


@dataclass
class SyncStatusRecord:
    """(ユーザー, ソース)ごとの同期ステータス"""
    user_id: str
    source: EventSource
    status: SyncState = SyncState.IDLE
    last_sync_at: Optional[datetime] = None
    events_synced: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "source": self.source.value,
            "status": self.status.value,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "eventsSynced": self.events_synced,
            "errorMessage": self.error_message,
        }


@dataclass
class CalendarConnection:
    """ユーザーとソースの接続設定（configは復号済み）"""
    user_id: str
    source: EventSource
    config: Dict[str, Any] = field(default_factory=dict)
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    is_active: bool = True
    sync_enabled: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_syncable(self) -> bool:
        return self.is_active and self.sync_enabled

    def to_dict(self, include_config: bool = False) -> Dict[str, Any]:
        result = {
            "userId": self.user_id,
            "source": self.source.value,
            "syncDirection": self.sync_direction.value,
            "isActive": self.is_active,
            "syncEnabled": self.sync_enabled,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if include_config:
            result["config"] = dict(self.config)
        return result


@dataclass
class SyncLogEntry:
    """同期試行ごとの追記専用ログ"""
    source: EventSource
    operation: SyncOperation
    status: SyncLogStatus
    events_processed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


@dataclass
class SyncResult:
    """ソース単位の同期結果"""
    source: EventSource
    success: bool
    events_synced: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "success": self.success,
            "eventsSynced": self.events_synced,
            "errors": list(self.errors),
            "skipped": self.skipped,
        }


@dataclass
class PushResult:
    """外部カレンダーへのプッシュ結果"""
    success: bool
    synced: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class Alert:
    """リアルタイムリスクアラート"""
    id: str
    type: AlertType
    severity: Severity
    message: str
    event_ids: List[str] = field(default_factory=list)
    detected_at: datetime = field(default_factory=utc_now)
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "eventIds": list(self.event_ids),
            "detectedAt": self.detected_at.isoformat(),
            "resolved": self.resolved,
        }


@dataclass
class AggregationResult:
    """集約結果（イベント＋ソース別エラー）"""
    events: List[Event]
    source_errors: Dict[EventSource, str] = field(default_factory=dict)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @property
    def sources_failed(self) -> int:
        return len(self.source_errors)

    def summary(self) -> str:
        return f"Aggregated {len(self.events)} events ({self.sources_failed} source errors)"
