"""
イベント集約
有効なソースアダプターを並行実行し、正規化・重複排除・永続化して統合ビューを返す
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ...config.enhanced_config import AggregationConfig
from ...core.exceptions import StorageError
from ...core.models import AggregationResult, Event, EventSource
from ..data_acquisition.source_adapters import SourceAdapter
from .event_normalizer import EventNormalizer

logger = logging.getLogger(__name__)


def _event_rank(event: Event) -> Tuple[int, int]:
    """重複時の優先度（同期済み → 参加者数）"""
    return (1 if event.is_synced else 0, len(event.attendees))


def _sort_key(event: Event):
    return (event.start_time, event.end_time, event.id)


class EventAggregator:
    """統合カレンダー集約"""

    def __init__(self,
                 adapters: Dict[EventSource, SourceAdapter],
                 storage=None,
                 normalizer: Optional[EventNormalizer] = None,
                 config: Optional[AggregationConfig] = None):
        self.adapters = adapters
        self.storage = storage
        self.config = config or AggregationConfig()
        self.normalizer = normalizer or EventNormalizer(self.config.default_timezone)

    async def aggregate(self, start_date: datetime, end_date: datetime,
                        user_id: Optional[str] = None,
                        sources: Optional[Sequence[EventSource]] = None) -> List[Event]:
        """統合イベント一覧（ソース別エラーは破棄）"""
        result = await self.aggregate_events(start_date, end_date, user_id, sources)
        return result.events

    async def aggregate_events(self, start_date: datetime, end_date: datetime,
                               user_id: Optional[str] = None,
                               sources: Optional[Sequence[EventSource]] = None) -> AggregationResult:
        """
        全ソースから期間内のイベントを集約

        失敗・タイムアウトしたソースは source_errors に記録し、他のソースの
        結果はそのまま返す。
        """
        source_errors: Dict[EventSource, str] = {}
        selected = list(sources) if sources else list(self.adapters)

        tasks = []
        for source in selected:
            adapter = self.adapters.get(source)
            if adapter is None:
                source_errors[source] = f"No adapter registered for {source.value}"
                continue
            tasks.append((source, self._fetch_source(source, adapter, user_id, start_date, end_date)))

        results = await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)

        events: List[Event] = []

        for (source, _), result in zip(tasks, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                message = self._describe_failure(result)
                source_errors[source] = message
                logger.error(f"Source {source.value} failed during aggregation: {message}")
                continue

            normalized, dropped = self.normalizer.normalize_many(source, result, owner_user_id=user_id)
            events.extend(normalized)
            if dropped:
                logger.warning(f"Source {source.value}: {dropped} malformed records dropped")

        merged = sorted(self.deduplicate(events), key=_sort_key)

        await self._persist(merged)

        aggregation = AggregationResult(
            events=merged,
            source_errors=source_errors,
            start_date=start_date,
            end_date=end_date,
        )
        logger.info(aggregation.summary())
        return aggregation

    async def _fetch_source(self, source: EventSource, adapter: SourceAdapter,
                            user_id: Optional[str], start_date: datetime,
                            end_date: datetime) -> list:
        started = time.monotonic()
        records = await asyncio.wait_for(
            adapter.pull(user_id, start_date, end_date),
            timeout=self.config.adapter_timeout_seconds
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(f"Fetched {len(records)} records from {source.value} in {duration_ms}ms")
        return records

    def _describe_failure(self, error: BaseException) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Timed out after {self.config.adapter_timeout_seconds}s"
        return str(error) or error.__class__.__name__

    def deduplicate(self, events: Sequence[Event]) -> List[Event]:
        """
        重複排除

        1. 同一 (source, source_id) は1件に集約
        2. (丸めた開始, 丸めた終了, 代表参加者メール) が一致するものを集約
           参加者のいないイベントはこの段階では集約しない
        優先度は同期済み → 参加者数。同順位は先に現れたものを残す。
        """
        by_source_key: Dict[Tuple[str, str], Event] = {}
        for event in events:
            existing = by_source_key.get(event.source_key)
            if existing is None or _event_rank(event) > _event_rank(existing):
                by_source_key[event.source_key] = event

        by_slot: Dict[tuple, Event] = {}
        for event in by_source_key.values():
            email = event.primary_attendee_email
            if email:
                key: tuple = (self._round(event.start_time), self._round(event.end_time), email)
            else:
                key = ("source", event.source_key)

            existing = by_slot.get(key)
            if existing is None or _event_rank(event) > _event_rank(existing):
                by_slot[key] = event

        removed = len(events) - len(by_slot)
        if removed:
            logger.debug(f"Deduplication removed {removed} events")
        return list(by_slot.values())

    def _round(self, value: datetime) -> int:
        step = max(1, self.config.dedup_rounding_seconds)
        return int(round(value.timestamp() / step)) * step

    async def _persist(self, events: List[Event]):
        if self.storage is None or not events:
            return
        try:
            await self.storage.upsert_events(events)
        except StorageError as e:
            logger.error(f"Failed to persist aggregated events (returning in-memory result): {e}")
