"""
エラーハンドリング強化システム
ソースアダプター呼び出しのエラー分類・リトライ・バックオフ
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ...core.exceptions import (
    AdapterError,
    CalendarHubError,
    MalformedRecordError,
    SourceAuthenticationError,
    SourceRateLimitError,
    SourceTimeoutError,
    SourceUnavailableError,
)

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """エラータイプ分類"""
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    TIMEOUT_ERROR = "timeout_error"
    DATA_PARSING_ERROR = "data_parsing_error"
    DOMAIN_ERROR = "domain_error"
    UNKNOWN_ERROR = "unknown_error"


@dataclass
class ErrorStrategy:
    """エラー対応戦略設定"""
    retry_attempts: int
    backoff_multiplier: float
    base_delay: float = 1.0
    alert_threshold: int = 1
    max_delay: float = 60.0

    @property
    def retryable(self) -> bool:
        return self.retry_attempts > 0

    def delay_for(self, attempt: int) -> float:
        """attempt回目（1始まり）の失敗後の待機秒数"""
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


class ErrorHandler:
    """エラー分類・自動リトライ"""

    # エラータイプ別の対応戦略（retry_attemptsは初回以降の追加試行回数）
    STRATEGIES: Dict[ErrorType, ErrorStrategy] = {
        ErrorType.NETWORK_ERROR: ErrorStrategy(
            retry_attempts=3,
            backoff_multiplier=2.0,
            alert_threshold=3
        ),
        ErrorType.AUTHENTICATION_ERROR: ErrorStrategy(
            retry_attempts=0,
            backoff_multiplier=1.0,
            alert_threshold=1
        ),
        ErrorType.RATE_LIMIT_ERROR: ErrorStrategy(
            retry_attempts=5,
            backoff_multiplier=4.0,
            base_delay=2.0,
            alert_threshold=10
        ),
        ErrorType.TIMEOUT_ERROR: ErrorStrategy(
            retry_attempts=2,
            backoff_multiplier=2.0,
            alert_threshold=3
        ),
        ErrorType.DATA_PARSING_ERROR: ErrorStrategy(
            retry_attempts=0,
            backoff_multiplier=1.0,
            alert_threshold=5
        ),
        ErrorType.DOMAIN_ERROR: ErrorStrategy(
            retry_attempts=0,
            backoff_multiplier=1.0,
            alert_threshold=5
        ),
        ErrorType.UNKNOWN_ERROR: ErrorStrategy(
            retry_attempts=1,
            backoff_multiplier=2.0,
            alert_threshold=3
        ),
    }

    def __init__(self, config: Optional[dict] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config or {}
        self.error_counts: Dict[ErrorType, int] = {}
        self._sleep = sleep
        self.strategies = dict(self.STRATEGIES)

        # 設定で試行回数を上書き可能
        for type_name, overrides in self.config.get('strategies', {}).items():
            error_type = ErrorType(type_name)
            base = self.strategies[error_type]
            self.strategies[error_type] = ErrorStrategy(
                retry_attempts=overrides.get('retry_attempts', base.retry_attempts),
                backoff_multiplier=overrides.get('backoff_multiplier', base.backoff_multiplier),
                base_delay=overrides.get('base_delay', base.base_delay),
                alert_threshold=overrides.get('alert_threshold', base.alert_threshold),
                max_delay=overrides.get('max_delay', base.max_delay),
            )

    def classify_error(self, error: Exception) -> ErrorType:
        """エラーを分類してタイプを返す"""
        if isinstance(error, SourceAuthenticationError):
            return ErrorType.AUTHENTICATION_ERROR
        if isinstance(error, SourceRateLimitError):
            return ErrorType.RATE_LIMIT_ERROR
        if isinstance(error, (SourceTimeoutError, asyncio.TimeoutError)):
            return ErrorType.TIMEOUT_ERROR
        if isinstance(error, (SourceUnavailableError, ConnectionError)):
            return ErrorType.NETWORK_ERROR
        if isinstance(error, MalformedRecordError):
            return ErrorType.DATA_PARSING_ERROR
        if isinstance(error, CalendarHubError) and not isinstance(error, AdapterError):
            return ErrorType.DOMAIN_ERROR

        error_message = str(error).lower()

        # ネットワーク関連エラー
        if any(keyword in error_message for keyword in ['connection', 'network']):
            return ErrorType.NETWORK_ERROR

        # 認証エラー
        if any(keyword in error_message for keyword in ['unauthorized', '401', 'authentication']):
            return ErrorType.AUTHENTICATION_ERROR

        # レート制限エラー
        if any(keyword in error_message for keyword in ['rate limit', '429', 'too many requests']):
            return ErrorType.RATE_LIMIT_ERROR

        if 'timeout' in error_message:
            return ErrorType.TIMEOUT_ERROR

        # データパースエラー
        if any(keyword in error_message for keyword in ['parse', 'json', 'format']):
            return ErrorType.DATA_PARSING_ERROR

        return ErrorType.UNKNOWN_ERROR

    def strategy_for(self, error_type: ErrorType) -> ErrorStrategy:
        return self.strategies.get(error_type, self.strategies[ErrorType.UNKNOWN_ERROR])

    def record_error(self, error: Exception, context: Optional[dict] = None) -> ErrorType:
        """エラーカウント更新とアラート閾値チェック"""
        error_type = self.classify_error(error)
        strategy = self.strategy_for(error_type)

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1
        count = self.error_counts[error_type]

        logger.error(f"Error classified as {error_type.value}: {error}")

        if count >= strategy.alert_threshold:
            self._send_alert(error_type, error, count, context or {})

        return error_type

    def _send_alert(self, error_type: ErrorType, error: Exception, count: int, context: dict):
        """エラー多発警告"""
        logger.warning(
            f"⚠️ Repeated {error_type.value} errors: count={count}, "
            f"latest={error}, context={context}"
        )

    async def run_with_retry(self, operation: Callable[[], Awaitable[Any]],
                             context: Optional[dict] = None) -> Any:
        """
        非同期操作をリトライ付きで実行

        リトライ可能なエラータイプのみ指数バックオフで再試行し、
        試行回数を使い切った場合は最後の例外をそのまま送出する。
        """
        context = context or {}
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error_type = self.record_error(e, context)
                strategy = self.strategy_for(error_type)

                if attempt > strategy.retry_attempts:
                    raise

                delay = strategy.delay_for(attempt)
                retry_after = getattr(e, 'retry_after', None)
                if retry_after:
                    delay = max(delay, float(retry_after))

                logger.info(
                    f"Retrying {context.get('operation', 'operation')} "
                    f"(attempt {attempt + 1}/{strategy.retry_attempts + 1}) in {delay:.1f}s"
                )
                await self._sleep(delay)

    def get_error_summary(self) -> Dict[str, int]:
        return {error_type.value: count for error_type, count in self.error_counts.items()}
