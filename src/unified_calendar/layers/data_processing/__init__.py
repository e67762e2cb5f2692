"""
データ処理層 - イベントデータの正規化・集約・重複排除を管理
"""

from .event_normalizer import EventNormalizer, normalize
from .aggregator import EventAggregator

__all__ = ['EventNormalizer', 'normalize', 'EventAggregator']
