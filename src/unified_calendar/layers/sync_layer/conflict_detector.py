"""
競合検出システム
統合イベント間の時間重複・重複登録・リソース競合を検出し重要度を付与
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from ...config.enhanced_config import DetectionConfig
from ...core.exceptions import StorageError
from ...core.models import Conflict, ConflictType, Event, Severity

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"\w+", re.UNICODE)


def title_similarity(title1: str, title2: str) -> float:
    """タイトルの単語Jaccard類似度"""
    words1 = set(_WORD_PATTERN.findall((title1 or "").lower()))
    words2 = set(_WORD_PATTERN.findall((title2 or "").lower()))

    if not words1 or not words2:
        return 0.0

    return len(words1 & words2) / len(words1 | words2)


def _sorted_events(events: Sequence[Event]) -> List[Event]:
    return sorted(events, key=lambda e: (e.start_time, e.end_time, e.id))


class ConflictDetector:
    """競合検出エンジン"""

    def __init__(self, storage=None, config: Optional[DetectionConfig] = None):
        self.storage = storage
        self.config = config or DetectionConfig()

        # 統計情報
        self.runs = 0
        self.conflicts_detected = 0
        self.storage_failures = 0

    async def detect_conflicts(self, events: Sequence[Event],
                               detected_at: Optional[datetime] = None) -> List[Conflict]:
        """競合検出と保存"""
        conflicts = self.find_conflicts(events, detected_at)

        self.runs += 1
        self.conflicts_detected += len(conflicts)
        logger.info(f"Detected {len(conflicts)} conflicts among {len(events)} events")

        if self.storage is not None:
            for conflict in conflicts:
                try:
                    await self.storage.store_conflict(conflict)
                except StorageError as e:
                    self.storage_failures += 1
                    logger.error(f"Failed to store conflict {conflict.id}: {e}")

        return conflicts

    def find_conflicts(self, events: Sequence[Event],
                       detected_at: Optional[datetime] = None) -> List[Conflict]:
        """競合検出（保存なし・同一入力に対して同一結果）"""
        ordered = _sorted_events(events)

        conflicts = self._detect_time_overlaps(ordered, detected_at)
        conflicts.extend(self._detect_duplicates(ordered, detected_at))
        conflicts.extend(self._detect_resource_conflicts(ordered, detected_at))

        return sorted(conflicts, key=lambda c: (c.type.value, c.event_ids))

    def _overlap_severity(self, event: Event, other: Event) -> Severity:
        """重複時間 ÷ 短い方の所要時間"""
        shorter = min(event.duration, other.duration)
        ratio = event.overlap_duration(other) / shorter

        if ratio > self.config.high_overlap_ratio:
            return Severity.HIGH
        if ratio > self.config.medium_overlap_ratio:
            return Severity.MEDIUM
        return Severity.LOW

    def _detect_time_overlaps(self, ordered: List[Event],
                              detected_at: Optional[datetime]) -> List[Conflict]:
        conflicts = []

        for i, event in enumerate(ordered):
            for other in ordered[i + 1:]:
                if other.start_time >= event.end_time:
                    break
                if other.source == event.source:
                    continue

                conflicts.append(Conflict.create(
                    ConflictType.TIME_OVERLAP,
                    self._overlap_severity(event, other),
                    [event, other],
                    detected_at
                ))

        return conflicts

    def _is_duplicate(self, event: Event, other: Event) -> bool:
        if title_similarity(event.title, other.title) > self.config.title_similarity_threshold:
            return True
        email = event.primary_attendee_email
        return bool(email) and email == other.primary_attendee_email

    def _detect_duplicates(self, ordered: List[Event],
                           detected_at: Optional[datetime]) -> List[Conflict]:
        window = timedelta(minutes=self.config.duplicate_window_minutes)
        conflicts = []

        for i, event in enumerate(ordered):
            for other in ordered[i + 1:]:
                if other.start_time - event.start_time > window:
                    break
                if other.source == event.source:
                    continue

                if self._is_duplicate(event, other):
                    conflicts.append(Conflict.create(
                        ConflictType.DUPLICATE, Severity.MEDIUM, [event, other], detected_at
                    ))

        return conflicts

    def _detect_resource_conflicts(self, ordered: List[Event],
                                   detected_at: Optional[datetime]) -> List[Conflict]:
        conflicts = []

        for i, event in enumerate(ordered):
            location = event.normalized_location
            if not location:
                continue

            for other in ordered[i + 1:]:
                if other.start_time >= event.end_time:
                    break
                if other.source == event.source or other.normalized_location != location:
                    continue

                conflicts.append(Conflict.create(
                    ConflictType.RESOURCE, Severity.HIGH, [event, other], detected_at
                ))

        return conflicts

    def get_statistics(self) -> Dict[str, int]:
        """競合検出統計情報"""
        return {
            "runs": self.runs,
            "conflicts_detected": self.conflicts_detected,
            "storage_failures": self.storage_failures,
        }
