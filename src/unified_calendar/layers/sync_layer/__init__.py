"""
同期層 - 競合検出・競合解決・ソース同期の実行と記録を管理
"""

from .event_storage import EventStorage
from .conflict_detector import ConflictDetector
from .conflict_resolver import ConflictResolver
from .sync_orchestrator import SyncOrchestrator, SyncScheduler

__all__ = [
    'EventStorage',
    'ConflictDetector', 'ConflictResolver',
    'SyncOrchestrator', 'SyncScheduler'
]
