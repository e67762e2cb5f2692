"""
イベント正規化
ソース固有の生レコードを共通のEvent形式へ変換する（副作用なし）
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...core.exceptions import MalformedRecordError
from ...core.models import Attendee, Event, EventMetadata, EventSource, EventSyncStatus

logger = logging.getLogger(__name__)


class EventNormalizer:
    """ソース別正規化ルール"""

    def __init__(self, default_timezone: str = "UTC"):
        try:
            self.default_tz = ZoneInfo(default_timezone)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"Unknown timezone: {default_timezone}") from e

        self._normalizers: Dict[EventSource, Callable[[Dict[str, Any], Optional[str]], Event]] = {
            EventSource.INTERNAL: self._normalize_internal,
            EventSource.BOOKING_LINK: self._normalize_booking_link,
            EventSource.OAUTH_CALENDAR: self._normalize_oauth_calendar,
            EventSource.CRM_CALENDAR: self._normalize_crm_calendar,
        }

    def normalize(self, source: EventSource, raw: Dict[str, Any],
                  owner_user_id: Optional[str] = None) -> Event:
        """生レコードを正規化（不正なレコードは MalformedRecordError）"""
        if not isinstance(raw, dict):
            raise MalformedRecordError(source.value, "record is not a mapping")

        try:
            return self._normalizers[source](raw, owner_user_id)
        except MalformedRecordError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedRecordError(source.value, str(e)) from e

    def normalize_many(self, source: EventSource, records: List[Dict[str, Any]],
                       owner_user_id: Optional[str] = None) -> Tuple[List[Event], int]:
        """複数レコードを正規化し、不正レコードは警告して除外"""
        events = []
        dropped = 0

        for raw in records:
            try:
                events.append(self.normalize(source, raw, owner_user_id))
            except MalformedRecordError as e:
                dropped += 1
                logger.warning(f"Dropping malformed record: {e}")

        return events, dropped

    # ---- 時刻ヘルパー ----

    def _to_utc(self, value: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz or self.default_tz)
        return value.astimezone(timezone.utc)

    def _parse_datetime(self, source: EventSource, value: Any, field_name: str,
                        tz: Optional[ZoneInfo] = None) -> datetime:
        if value is None or value == "":
            raise MalformedRecordError(source.value, f"missing {field_name}")

        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError as e:
                raise MalformedRecordError(source.value, f"unparseable {field_name}: {value!r}") from e
        else:
            raise MalformedRecordError(source.value, f"unparseable {field_name}: {value!r}")

        return self._to_utc(parsed, tz)

    def _parse_date(self, source: EventSource, value: Any, field_name: str) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str) and value.strip():
            try:
                return date.fromisoformat(value.strip()[:10])
            except ValueError as e:
                raise MalformedRecordError(source.value, f"unparseable {field_name}: {value!r}") from e
        raise MalformedRecordError(source.value, f"missing {field_name}")

    def _parse_time(self, source: EventSource, value: Any, field_name: str) -> time:
        if isinstance(value, time):
            return value
        try:
            return time.fromisoformat(str(value).strip())
        except ValueError as e:
            raise MalformedRecordError(source.value, f"unparseable {field_name}: {value!r}") from e

    def _all_day_range(self, day: date, end_day: Optional[date] = None,
                       tz: Optional[ZoneInfo] = None) -> Tuple[datetime, datetime]:
        end_day = end_day or day + timedelta(days=1)
        start = self._to_utc(datetime.combine(day, time.min), tz)
        end = self._to_utc(datetime.combine(end_day, time.min), tz)
        return start, end

    def _optional_datetime(self, source: EventSource, value: Any) -> Optional[datetime]:
        if not value:
            return None
        try:
            return self._parse_datetime(source, value, "updated")
        except MalformedRecordError:
            return None

    @staticmethod
    def _require(source: EventSource, raw: Dict[str, Any], *keys: str) -> Any:
        """候補キーのうち最初に値があるものを返す"""
        for key in keys:
            value = raw.get(key)
            if value not in (None, ""):
                return value
        raise MalformedRecordError(source.value, f"missing {'|'.join(keys)}")

    @staticmethod
    def _attendees(items: Any, email_keys: Tuple[str, ...], name_keys: Tuple[str, ...]) -> Tuple[Attendee, ...]:
        attendees = []
        for item in items or []:
            if not isinstance(item, dict):
                continue
            email = next((item[k] for k in email_keys if item.get(k)), None)
            if not email:
                continue
            name = next((item[k] for k in name_keys if item.get(k)), None)
            attendees.append(Attendee(email=str(email), name=name))
        return tuple(attendees)

    @staticmethod
    def _build(source: EventSource, source_id: Any, title: Any,
               start: datetime, end: datetime, **kwargs) -> Event:
        if end <= start:
            raise MalformedRecordError(source.value, f"end {end.isoformat()} is not after start {start.isoformat()}")

        source_id = str(source_id)
        return Event(
            id=Event.make_id(source, source_id),
            source=source,
            source_id=source_id,
            title=str(title).strip(),
            start_time=start,
            end_time=end,
            **kwargs
        )

    # ---- ソース別ルール ----

    def _normalize_internal(self, raw: Dict[str, Any], owner_user_id: Optional[str]) -> Event:
        source = EventSource.INTERNAL
        source_id = self._require(source, raw, "id")
        title = self._require(source, raw, "title")
        day = self._parse_date(source, raw.get("operation_date"), "operation_date")

        start_raw, end_raw = raw.get("start_time"), raw.get("end_time")
        if not start_raw and not end_raw:
            start, end = self._all_day_range(day)
            all_day = True
        elif not start_raw or not end_raw:
            raise MalformedRecordError(source.value, "exactly one of start_time/end_time is set")
        else:
            start = self._to_utc(datetime.combine(day, self._parse_time(source, start_raw, "start_time")))
            end = self._to_utc(datetime.combine(day, self._parse_time(source, end_raw, "end_time")))
            all_day = False

        return self._build(
            source, source_id, title, start, end,
            location=raw.get("location"),
            description=raw.get("description") or raw.get("notes"),
            attendees=self._attendees(raw.get("attendees"), ("email",), ("name",)),
            metadata=EventMetadata(
                sync_status=EventSyncStatus.SYNCED,
                owner_user_id=raw.get("user_id") or owner_user_id,
                last_synced_at=self._optional_datetime(source, raw.get("updated_at")),
            ),
            all_day=all_day,
        )

    def _normalize_booking_link(self, raw: Dict[str, Any], owner_user_id: Optional[str]) -> Event:
        source = EventSource.BOOKING_LINK
        uri = str(self._require(source, raw, "uri"))
        event_name = self._require(source, raw, "event_name")

        invitee = raw.get("invitee") or {}
        invitee_name = invitee.get("name")
        title = f"{event_name} - {invitee_name}" if invitee_name else event_name

        location = raw.get("location")
        if isinstance(location, dict):
            location = location.get("location") or location.get("join_url")

        return self._build(
            source, uri.rstrip("/").rsplit("/", 1)[-1], title,
            self._parse_datetime(source, raw.get("start_time"), "start_time"),
            self._parse_datetime(source, raw.get("end_time"), "end_time"),
            location=location,
            description=raw.get("description"),
            attendees=self._attendees([invitee], ("email",), ("name",)),
            metadata=EventMetadata(
                sync_status=EventSyncStatus.PENDING if raw.get("canceled") else EventSyncStatus.SYNCED,
                owner_user_id=owner_user_id,
                last_synced_at=self._optional_datetime(source, raw.get("updated_at")),
            ),
        )

    def _oauth_time(self, source: EventSource, value: Any, field_name: str) -> Tuple[Any, bool, Optional[ZoneInfo]]:
        if not isinstance(value, dict):
            raise MalformedRecordError(source.value, f"missing {field_name}")

        tz = None
        if value.get("timeZone"):
            try:
                tz = ZoneInfo(value["timeZone"])
            except ZoneInfoNotFoundError as e:
                raise MalformedRecordError(source.value, f"unknown timeZone {value['timeZone']!r}") from e

        if value.get("dateTime"):
            return self._parse_datetime(source, value["dateTime"], field_name, tz), False, tz
        if value.get("date"):
            return self._parse_date(source, value["date"], field_name), True, tz
        raise MalformedRecordError(source.value, f"missing {field_name}")

    def _normalize_oauth_calendar(self, raw: Dict[str, Any], owner_user_id: Optional[str]) -> Event:
        source = EventSource.OAUTH_CALENDAR
        source_id = self._require(source, raw, "id")
        title = self._require(source, raw, "summary")

        start, start_all_day, tz = self._oauth_time(source, raw.get("start"), "start")
        end, end_all_day, _ = self._oauth_time(source, raw.get("end"), "end")

        if start_all_day or end_all_day:
            if not (start_all_day and end_all_day):
                raise MalformedRecordError(source.value, "mixed date and dateTime bounds")
            # 終了日は排他的
            start, end = self._all_day_range(start, end, tz)

        return self._build(
            source, source_id, title, start, end,
            location=raw.get("location"),
            description=raw.get("description"),
            attendees=self._attendees(raw.get("attendees"), ("email",), ("displayName", "name")),
            metadata=EventMetadata(
                sync_status=EventSyncStatus.PENDING if raw.get("status") == "cancelled" else EventSyncStatus.SYNCED,
                owner_user_id=owner_user_id,
                last_synced_at=self._optional_datetime(source, raw.get("updated")),
            ),
            all_day=start_all_day,
        )

    def _normalize_crm_calendar(self, raw: Dict[str, Any], owner_user_id: Optional[str]) -> Event:
        source = EventSource.CRM_CALENDAR
        source_id = self._require(source, raw, "id", "eventId")
        title = self._require(source, raw, "title", "name")
        start = self._parse_datetime(source, self._require(source, raw, "startTime", "start_time"), "startTime")
        end = self._parse_datetime(source, self._require(source, raw, "endTime", "end_time"), "endTime")

        return self._build(
            source, source_id, title, start, end,
            location=raw.get("location") or raw.get("address"),
            description=raw.get("notes") or raw.get("description"),
            attendees=self._attendees(raw.get("attendees"), ("email", "contactEmail"), ("name", "contactName")),
            metadata=EventMetadata(
                sync_status=EventSyncStatus.SYNCED,
                owner_user_id=owner_user_id,
                last_synced_at=self._optional_datetime(source, raw.get("dateUpdated")),
            ),
            all_day=bool(raw.get("allDay", False)),
        )


def normalize(source: EventSource, raw: Dict[str, Any], owner_user_id: Optional[str] = None) -> Event:
    """UTC既定の正規化（簡易呼び出し用）"""
    return EventNormalizer().normalize(source, raw, owner_user_id)
