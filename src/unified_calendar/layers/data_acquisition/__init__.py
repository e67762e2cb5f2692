"""
データ取得層 - 各カレンダーソースからのデータ取得と接続設定を統括管理
"""

from .source_adapters import SourceAdapter, HttpSourceAdapter
from .error_handler import ErrorHandler, ErrorType
from .provider_registry import ConnectionManager, ProviderConfig, ValidationResult

__all__ = [
    'SourceAdapter', 'HttpSourceAdapter',
    'ErrorHandler', 'ErrorType',
    'ConnectionManager', 'ProviderConfig', 'ValidationResult'
]
