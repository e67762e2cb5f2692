"""
監視層 - 新規イベントのリアルタイムリスク判定とアドバイザリー連携
"""

from .realtime_classifier import AlertBuffer, RealtimeRiskClassifier
from .advisory import AdvisoryClient, HttpAdvisoryClient, safe_analyze

__all__ = [
    'AlertBuffer', 'RealtimeRiskClassifier',
    'AdvisoryClient', 'HttpAdvisoryClient', 'safe_analyze'
]
