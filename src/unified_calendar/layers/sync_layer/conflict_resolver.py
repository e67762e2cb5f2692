"""
競合解決システム
検出済み競合への解決戦略の適用と、解決結果の永続化
"""

import logging
from typing import Any, Dict, List, Sequence, Tuple

from ...core.exceptions import (
    AlreadyResolvedError,
    CalendarHubError,
    ConflictNotFoundError,
)
from ...core.models import (
    Conflict,
    Event,
    EventSource,
    ResolutionStrategy,
    utc_now,
)

logger = logging.getLogger(__name__)


class ConflictResolver:
    """競合解決エンジン"""

    def __init__(self, storage):
        self.storage = storage

        # 統計情報
        self.conflicts_resolved = 0
        self.auto_resolved = 0
        self.manual_reviews_required = 0
        self.resolution_failures = 0

    async def resolve(self, conflict_id: str, strategy: ResolutionStrategy,
                      resolved_by: str) -> Conflict:
        """
        競合を解決済みにする

        未知のIDは ConflictNotFoundError、別の戦略で解決済みなら
        AlreadyResolvedError。同じ戦略での再解決は何もしない。
        ストレージ障害は StorageError として呼び出し元へ伝播する。
        """
        conflict, _ = await self._resolve(conflict_id, strategy, resolved_by)
        return conflict

    async def _resolve(self, conflict_id: str, strategy: ResolutionStrategy,
                       resolved_by: str) -> Tuple[Conflict, bool]:
        """解決処理本体（2番目の値は今回の呼び出しで状態が変わったか）"""
        conflict = await self.storage.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)

        if conflict.is_resolved:
            if conflict.resolution == strategy:
                logger.debug(f"Conflict {conflict_id} already resolved with {strategy.value}")
                return conflict, False
            raise AlreadyResolvedError(conflict_id, conflict.resolution.value, strategy.value)

        resolved_at = utc_now()
        updated = await self.storage.mark_conflict_resolved(conflict_id, strategy, resolved_by, resolved_at)

        if not updated:
            # 並行して別経路で解決された
            current = await self.storage.get_conflict(conflict_id)
            if current is None:
                raise ConflictNotFoundError(conflict_id)
            if current.resolution != strategy:
                raise AlreadyResolvedError(conflict_id, current.resolution.value, strategy.value)
            return current, False

        conflict.resolved_at = resolved_at
        conflict.resolution = strategy
        conflict.resolved_by = resolved_by

        self.conflicts_resolved += 1
        if strategy == ResolutionStrategy.MANUAL:
            self.manual_reviews_required += 1

        logger.info(f"Conflict {conflict_id} resolved with {strategy.value} by {resolved_by}")
        return conflict, True

    def apply_resolution(self, conflict: Conflict, strategy: ResolutionStrategy) -> List[Event]:
        """戦略に従って残すイベントを返す（副作用なし）"""
        events = list(conflict.events)

        if strategy == ResolutionStrategy.LOCAL_WINS:
            return [e for e in events if e.source == EventSource.INTERNAL]

        if strategy == ResolutionStrategy.REMOTE_WINS:
            return [e for e in events if e.source != EventSource.INTERNAL]

        if strategy == ResolutionStrategy.NEWEST_WINS:
            if not events:
                return []
            newest = max(events, key=lambda e: e.metadata.last_synced_at or e.start_time)
            return [newest]

        # manual: 全件を人の判断に委ねる
        return events

    async def load_events(self, conflict: Conflict) -> Conflict:
        """保存済み競合に構成イベントを読み込む"""
        if not conflict.events:
            conflict.events = await self.storage.get_events_by_ids(conflict.event_ids)
        return conflict

    async def auto_resolve(self, conflicts: Sequence[Conflict],
                           strategy: ResolutionStrategy,
                           resolved_by: str = "system") -> int:
        """
        低・中重要度の競合を一括解決

        high/critical は対象外。個々の失敗はログに残し、残りの処理を続ける。
        戻り値は今回新たに解決した件数。
        """
        resolved_count = 0

        for conflict in conflicts:
            if not conflict.is_auto_resolvable:
                logger.debug(f"Skipping {conflict.severity.value} conflict {conflict.id} for auto-resolution")
                continue

            try:
                _, changed = await self._resolve(conflict.id, strategy, resolved_by)
                if changed:
                    resolved_count += 1
            except CalendarHubError as e:
                self.resolution_failures += 1
                logger.error(f"Auto-resolution failed for conflict {conflict.id}: {e}")

        self.auto_resolved += resolved_count
        logger.info(f"Auto-resolved {resolved_count}/{len(conflicts)} conflicts with {strategy.value}")
        return resolved_count

    async def get_unresolved_conflicts(self) -> List[Conflict]:
        return await self.storage.list_conflicts(unresolved_only=True)

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        return {
            "conflicts_resolved": self.conflicts_resolved,
            "auto_resolved": self.auto_resolved,
            "manual_reviews_required": self.manual_reviews_required,
            "resolution_failures": self.resolution_failures,
        }
