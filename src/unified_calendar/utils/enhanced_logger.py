"""
強化ログシステム - 構造化ログ・操作メトリクス・健全性判定
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum
import structlog
from collections import defaultdict


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AlertLevel(Enum):
    """アラートレベル階層化"""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class MetricsCollector:
    """操作メトリクス収集"""

    def __init__(self):
        self.counters = defaultdict(int)
        self.histograms = defaultdict(list)
        self.start_time = datetime.now()

    def record_success(self, operation: str, duration: float):
        """成功メトリクス記録"""
        self.counters[f"{operation}_success"] += 1
        self.histograms[f"{operation}_duration"].append(duration)

    def record_error(self, operation: str, error_type: str):
        """エラーメトリクス記録"""
        self.counters[f"{operation}_error_{error_type}"] += 1

    def get_health_summary(self) -> dict:
        """健全性サマリー"""
        uptime = (datetime.now() - self.start_time).total_seconds()

        total_successes = sum(
            count for key, count in self.counters.items() if key.endswith('_success')
        )
        total_errors = sum(
            count for key, count in self.counters.items() if '_error_' in key
        )
        total_operations = total_successes + total_errors
        success_rate = (total_successes / total_operations * 100) if total_operations > 0 else 100.0

        # 平均処理時間
        avg_response_times = {
            key: sum(durations) / len(durations)
            for key, durations in self.histograms.items() if durations
        }

        return {
            'uptime_seconds': uptime,
            'success_rate_percent': success_rate,
            'total_operations': total_operations,
            'avg_response_times': avg_response_times,
            'error_counts': {k: v for k, v in self.counters.items() if '_error_' in k},
            'last_health_check': datetime.now().isoformat(),
        }


class EnhancedLogger:
    """強化ログシステム"""

    def __init__(self,
                 name: str = "unified_calendar",
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True):

        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.metrics_enabled = metrics_enabled

        self.metrics = MetricsCollector() if metrics_enabled else None

        self._setup_structured_logging()
        self._setup_standard_logging()

    def _setup_structured_logging(self):
        """構造化ログの設定"""
        def add_timestamp(logger, method_name, event_dict):
            event_dict['timestamp'] = datetime.now().isoformat()
            return event_dict

        def json_formatter(logger, method_name, event_dict):
            return json.dumps(event_dict, ensure_ascii=False, default=str)

        structlog.configure(
            processors=[
                add_timestamp,
                structlog.processors.add_log_level,
                json_formatter,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.log_level.value)
            ),
            logger_factory=structlog.WriteLoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self.structured_logger = structlog.get_logger(self.name)

    def _setup_standard_logging(self):
        """標準ログの設定"""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.log_level.value))

        if self.logger.handlers:
            return

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def info(self, message: str, **kwargs):
        """情報ログ"""
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """警告ログ"""
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[Exception] = None, **kwargs):
        """エラーログ"""
        if error:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        """クリティカルログ"""
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def debug(self, message: str, **kwargs):
        """デバッグログ"""
        self._log(LogLevel.DEBUG, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        """内部ログ処理"""
        if self.metrics and level in [LogLevel.ERROR, LogLevel.CRITICAL]:
            operation = kwargs.get('operation', 'unknown')
            error_type = kwargs.get('error_type', 'unknown')
            self.metrics.record_error(operation, error_type)

        # 構造化ログ
        log_method = getattr(self.structured_logger, level.value.lower())
        log_method(message, **kwargs)

        # 標準ログ
        std_method = getattr(self.logger, level.value.lower())
        if kwargs:
            std_method(f"{message} | Context: {json.dumps(kwargs, default=str)}")
        else:
            std_method(message)

        if level in [LogLevel.ERROR, LogLevel.CRITICAL]:
            self._check_alert_conditions()

    def _check_alert_conditions(self):
        """成功率低下のアラート判定"""
        if not self.metrics:
            return

        health_summary = self.metrics.get_health_summary()
        if health_summary['total_operations'] < 5:
            return

        success_rate = health_summary.get('success_rate_percent', 100.0)
        if success_rate < 50.0:
            self._trigger_alert(AlertLevel.CRITICAL, f"Success rate dropped to {success_rate:.1f}%")
        elif success_rate < 90.0:
            self._trigger_alert(AlertLevel.WARNING, f"Success rate at {success_rate:.1f}%")

    def _trigger_alert(self, alert_level: AlertLevel, message: str):
        """アラート出力（_log を経由しない）"""
        if alert_level == AlertLevel.CRITICAL:
            self.logger.critical(f"🚨 ALERT [{alert_level.value.upper()}]: {message}")
        else:
            self.logger.warning(f"⚠️ ALERT [{alert_level.value.upper()}]: {message}")

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now()
        self.info(f"Operation started: {operation}", operation=operation, status='started', **context)
        return {'start_time': start_time, 'operation': operation, **context}

    def log_operation_end(self, operation_context: dict, success: bool = True, **additional_context):
        """操作終了ログ"""
        end_time = datetime.now()
        start_time = operation_context.get('start_time')
        operation = operation_context.get('operation', 'unknown')
        duration = (end_time - start_time).total_seconds() if start_time else 0.0

        result_context = {
            **{k: v for k, v in operation_context.items() if k != 'start_time'},
            'duration_seconds': duration,
            'status': 'success' if success else 'failed',
            **additional_context
        }

        if success:
            if self.metrics:
                self.metrics.record_success(operation, duration)
            self.info(f"Operation completed: {operation} ({duration:.2f}s)", **result_context)
        else:
            result_context.setdefault('error_type', 'operation_failed')
            self.error(f"Operation failed: {operation} ({duration:.2f}s)", **result_context)

    def get_health_status(self) -> dict:
        """健全性ステータス取得"""
        if not self.metrics:
            return {"status": "metrics_disabled"}

        health_summary = self.metrics.get_health_summary()

        success_rate = health_summary.get('success_rate_percent', 100.0)
        if success_rate >= 98.0:
            status = "healthy"
        elif success_rate >= 90.0:
            status = "warning"
        elif success_rate >= 70.0:
            status = "degraded"
        else:
            status = "critical"

        return {
            "overall_status": status,
            "timestamp": datetime.now().isoformat(),
            **health_summary
        }


# グローバルインスタンス
_global_logger: Optional[EnhancedLogger] = None


def get_logger(name: str = "unified_calendar",
               log_level: LogLevel = LogLevel.INFO,
               log_file: Optional[Path] = None) -> EnhancedLogger:
    """グローバルロガー取得"""
    global _global_logger

    if _global_logger is None:
        _global_logger = EnhancedLogger(name, log_level, log_file)

    return _global_logger


def setup_logging(config: Optional[Dict[str, Any]] = None) -> EnhancedLogger:
    """ログ設定の初期化"""
    config = config or {}

    log_level = LogLevel(str(config.get('level', 'INFO')).upper())
    log_file_path = config.get('file_path')
    log_file = Path(log_file_path) if log_file_path else None

    # パッケージ配下のモジュールロガーも同じレベルにそろえる
    logging.getLogger("unified_calendar").setLevel(getattr(logging, log_level.value))

    global _global_logger
    _global_logger = EnhancedLogger(
        name=config.get('name', 'unified_calendar'),
        log_level=log_level,
        log_file=log_file,
        metrics_enabled=config.get('metrics_enabled', True)
    )

    return _global_logger
