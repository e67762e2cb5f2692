"""
同期オーケストレーター
ユーザー×ソース単位の同期実行（ステータス遷移・リトライ・同期ログ）と定期実行スケジューラー
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ...config.enhanced_config import SyncConfig
from ...core.exceptions import AdapterError, CalendarHubError, ConnectionNotFoundError
from ...core.models import (
    EventSource,
    SyncDirection,
    SyncLogEntry,
    SyncLogStatus,
    SyncOperation,
    SyncResult,
    SyncState,
    SyncStatusRecord,
    utc_now,
)
from ..data_acquisition.error_handler import ErrorHandler

logger = logging.getLogger(__name__)

FailureListener = Callable[[EventSource, str], Any]


class SyncOrchestrator:
    """同期オーケストレーター"""

    def __init__(self, storage, adapters: Dict[EventSource, Any], connections,
                 error_handler: Optional[ErrorHandler] = None,
                 config: Optional[SyncConfig] = None,
                 failure_listener: Optional[FailureListener] = None,
                 enhanced_logger=None,
                 clock: Callable[[], datetime] = utc_now):
        self.storage = storage
        self.adapters = adapters
        self.connections = connections
        self.error_handler = error_handler or ErrorHandler()
        self.config = config or SyncConfig()
        self.failure_listener = failure_listener
        self.enhanced_logger = enhanced_logger
        self._clock = clock

        # 実行中の (user_id, source)
        self._in_flight: Set[Tuple[str, EventSource]] = set()

    @property
    def in_flight(self) -> Set[Tuple[str, EventSource]]:
        return set(self._in_flight)

    def sync_window(self, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        """同期対象期間（過去 lookback_days 〜 未来 lookahead_days）"""
        now = now or self._clock()
        return (now - timedelta(days=self.config.lookback_days),
                now + timedelta(days=self.config.lookahead_days))

    async def _applicable_sources(self, user_id: str,
                                  source: Optional[EventSource]) -> List[Tuple[EventSource, SyncDirection]]:
        if source is not None:
            try:
                connection = await self.connections.get_connection(user_id, source)
                return [(source, connection.sync_direction)]
            except ConnectionNotFoundError:
                return [(source, SyncDirection.PULL)]

        connections = await self.connections.list_connections(user_id, syncable_only=True)
        return [
            (connection.source, connection.sync_direction)
            for connection in connections
            if connection.source in self.adapters
        ]

    async def sync_user_calendars(self, user_id: str,
                                  source: Optional[EventSource] = None) -> List[SyncResult]:
        """
        ユーザーのカレンダーを同期

        ソースごとの失敗は結果リストに記録し、例外として送出しない。
        """
        try:
            targets = await self._applicable_sources(user_id, source)
        except CalendarHubError as e:
            logger.error(f"Failed to load connections for user {user_id}: {e}")
            if source is None:
                return []
            return [SyncResult(source=source, success=False, errors=[str(e)])]

        if not targets:
            logger.info(f"No sources to sync for user {user_id}")
            return []

        window = self.sync_window()
        results = []
        for target_source, direction in targets:
            results.append(await self._sync_source_guarded(user_id, target_source, direction, window))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"User {user_id}: {succeeded} of {len(results)} sources synced")
        return results

    async def _sync_source_guarded(self, user_id: str, source: EventSource,
                                   direction: SyncDirection,
                                   window: Tuple[datetime, datetime]) -> SyncResult:
        key = (user_id, source)
        if key in self._in_flight:
            logger.info(f"Sync already in progress for {user_id}/{source.value}, skipping")
            return SyncResult(source=source, success=False, skipped=True,
                              errors=["Sync already in progress"])

        self._in_flight.add(key)
        try:
            return await self._sync_source(user_id, source, direction, window)
        finally:
            self._in_flight.discard(key)

    async def _sync_source(self, user_id: str, source: EventSource,
                           direction: SyncDirection,
                           window: Tuple[datetime, datetime]) -> SyncResult:
        started = time.monotonic()
        op_context = None
        if self.enhanced_logger:
            op_context = self.enhanced_logger.log_operation_start(
                "calendar_sync", user_id=user_id, source=source.value
            )

        await self.storage.update_sync_status(
            SyncStatusRecord(user_id=user_id, source=source, status=SyncState.IN_PROGRESS)
        )

        pulled = 0
        pushed = 0
        did_pull = False
        did_push = False
        errors: List[str] = []
        push_errors: List[str] = []

        try:
            adapter = self.adapters.get(source)
            if adapter is None:
                raise AdapterError(source.value, "No adapter registered")

            if direction.includes_pull:
                records = await self._call_adapter(
                    lambda: adapter.pull(user_id, window[0], window[1]),
                    {"operation": "pull", "user_id": user_id, "source": source.value}
                )
                pulled = len(records)
                did_pull = True

            if direction.includes_push and source != EventSource.INTERNAL:
                internal_events = await self.storage.get_events(
                    window[0], window[1], sources=[EventSource.INTERNAL], owner_user_id=user_id
                )
                if internal_events:
                    push_result = await self._call_adapter(
                        lambda: adapter.push(user_id, internal_events),
                        {"operation": "push", "user_id": user_id, "source": source.value}
                    )
                    pushed = push_result.synced
                    push_errors = list(push_result.errors)
                    did_push = True

            success = True

        except asyncio.CancelledError:
            raise
        except Exception as e:
            success = False
            errors.append(self._describe_failure(e))
            logger.error(f"Sync failed for {user_id}/{source.value}: {errors[-1]}")

        duration_ms = int((time.monotonic() - started) * 1000)
        all_errors = errors + push_errors

        if success:
            status_record = SyncStatusRecord(
                user_id=user_id, source=source, status=SyncState.SUCCESS,
                last_sync_at=self._clock(), events_synced=pulled,
            )
        else:
            status_record = SyncStatusRecord(
                user_id=user_id, source=source, status=SyncState.FAILED,
                events_synced=0, error_message=errors[0],
            )
        await self.storage.update_sync_status(status_record)

        await self.storage.add_sync_log(SyncLogEntry(
            user_id=user_id,
            source=source,
            operation=self._log_operation(did_pull, did_push, direction),
            status=self._log_status(success, push_errors),
            events_processed=pulled + pushed,
            errors=all_errors,
            duration_ms=duration_ms,
        ))

        if self.enhanced_logger and op_context is not None:
            self.enhanced_logger.log_operation_end(
                op_context, success=success, events_synced=pulled, errors=len(all_errors)
            )

        if not success:
            await self._notify_failure(source, errors[0])

        return SyncResult(source=source, success=success, events_synced=pulled, errors=all_errors)

    async def _call_adapter(self, call: Callable[[], Awaitable[Any]], context: dict) -> Any:
        """タイムアウト付き呼び出しをリトライ制御下で実行"""
        timeout = self.config.adapter_timeout_seconds
        return await self.error_handler.run_with_retry(
            lambda: asyncio.wait_for(call(), timeout=timeout),
            context
        )

    def _describe_failure(self, error: Exception) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Timed out after {self.config.adapter_timeout_seconds}s"
        return str(error) or error.__class__.__name__

    @staticmethod
    def _log_operation(did_pull: bool, did_push: bool, direction: SyncDirection) -> SyncOperation:
        if did_pull and did_push:
            return SyncOperation.SYNC
        if did_push or direction == SyncDirection.PUSH:
            return SyncOperation.PUSH
        return SyncOperation.PULL

    @staticmethod
    def _log_status(success: bool, push_errors: List[str]) -> SyncLogStatus:
        if not success:
            return SyncLogStatus.FAILED
        if push_errors:
            return SyncLogStatus.PARTIAL
        return SyncLogStatus.SUCCESS

    async def _notify_failure(self, source: EventSource, message: str):
        """失敗通知（一方向・通知側の例外は握りつぶす）"""
        if self.failure_listener is None:
            return
        try:
            result = self.failure_listener(source, message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Sync failure listener raised: {e}")

    async def sync_all_users(self) -> Dict[str, List[SyncResult]]:
        """同期有効な全ユーザーを並行同期"""
        try:
            user_ids = await self.connections.list_sync_users()
        except CalendarHubError as e:
            logger.error(f"Failed to list users for sync sweep: {e}")
            return {}

        semaphore = asyncio.Semaphore(self.config.max_concurrent_users)

        async def sync_user(user_id: str) -> List[SyncResult]:
            async with semaphore:
                return await self.sync_user_calendars(user_id)

        results = await asyncio.gather(*(sync_user(uid) for uid in user_ids), return_exceptions=True)

        sweep: Dict[str, List[SyncResult]] = {}
        for user_id, result in zip(user_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Sync sweep failed for user {user_id}: {result}")
                sweep[user_id] = []
            else:
                sweep[user_id] = result

        logger.info(f"Sync sweep completed for {len(user_ids)} users")
        return sweep


class SyncScheduler:
    """
    定期同期スケジューラー

    次回実行時刻は起点からの固定間隔（anchor + k * interval）で計算し、
    遅延が累積しない。前回の同期が終わっていない場合、その回は飛ばす。
    """

    def __init__(self, orchestrator: SyncOrchestrator, interval_minutes: int = 30,
                 anchor: Optional[datetime] = None,
                 clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")

        self.orchestrator = orchestrator
        self.interval = timedelta(minutes=interval_minutes)
        self.anchor = anchor
        self._clock = clock
        self._sleep = sleep

        self.is_running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

        # 統計情報
        self.runs_started = 0
        self.ticks_skipped = 0

    def next_run_after(self, now: datetime) -> datetime:
        """now より後の最初の実行時刻"""
        anchor = self.anchor or now
        if now < anchor:
            return anchor
        periods = (now - anchor) // self.interval + 1
        return anchor + periods * self.interval

    async def start(self):
        """バックグラウンド処理開始"""
        if self.is_running:
            return

        self.is_running = True
        if self.anchor is None:
            self.anchor = self._clock()

        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(f"Sync scheduler started (interval: {self.interval}, anchor: {self.anchor.isoformat()})")

    async def stop(self):
        """バックグラウンド処理停止"""
        self.is_running = False

        tasks = [task for task in (self._loop_task, self._sweep_task) if task and not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._loop_task = None
        self._sweep_task = None
        logger.info("Sync scheduler stopped")

    async def _run_loop(self):
        while self.is_running:
            next_run = self.next_run_after(self._clock())
            delay = max(0.0, (next_run - self._clock()).total_seconds())
            await self._sleep(delay)

            if not self.is_running:
                break
            self.tick()

    def tick(self) -> bool:
        """1回分の同期を起動（実行中なら飛ばしてFalse）"""
        if self._sweep_task is not None and not self._sweep_task.done():
            self.ticks_skipped += 1
            logger.warning("Previous sync sweep still running, skipping this tick")
            return False

        self.runs_started += 1
        self._sweep_task = asyncio.create_task(self._sweep())
        return True

    async def _sweep(self):
        try:
            await self.orchestrator.sync_all_users()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled sync sweep failed: {e}")

    async def run_once(self) -> Dict[str, List[SyncResult]]:
        """手動で1回同期"""
        return await self.orchestrator.sync_all_users()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_minutes": self.interval.total_seconds() / 60,
            "runs_started": self.runs_started,
            "ticks_skipped": self.ticks_skipped,
            "sweep_in_progress": self._sweep_task is not None and not self._sweep_task.done(),
        }
