"""
ログ・メトリクステスト
操作ログから健全性ステータスが集計されることを確認
"""

from unified_calendar.utils.enhanced_logger import EnhancedLogger, MetricsCollector


class TestMetricsCollector:
    def test_health_summary_counts(self):
        metrics = MetricsCollector()
        metrics.record_success("calendar_sync", 0.5)
        metrics.record_success("calendar_sync", 1.5)
        metrics.record_error("calendar_sync", "timeout")

        summary = metrics.get_health_summary()

        assert summary["total_operations"] == 3
        assert round(summary["success_rate_percent"], 1) == 66.7
        assert summary["avg_response_times"] == {"calendar_sync_duration": 1.0}
        assert summary["error_counts"] == {"calendar_sync_error_timeout": 1}
        assert set(summary) == {
            "uptime_seconds", "success_rate_percent", "total_operations",
            "avg_response_times", "error_counts", "last_health_check",
        }


class TestEnhancedLogger:
    """操作開始・終了ログとメトリクス"""

    def test_operation_outcomes_feed_health_status(self):
        logger = EnhancedLogger(name="unified_calendar.test_metrics")

        context = logger.log_operation_start("calendar_sync", user_id="user-1", source="crm-calendar")
        logger.log_operation_end(context, success=True, events_synced=3)
        context = logger.log_operation_start("calendar_sync", user_id="user-1", source="crm-calendar")
        logger.log_operation_end(context, success=False)

        health = logger.get_health_status()

        assert health["total_operations"] == 2
        assert health["success_rate_percent"] == 50.0
        assert health["overall_status"] == "critical"
        assert health["error_counts"] == {"calendar_sync_error_operation_failed": 1}

    def test_metrics_disabled(self):
        logger = EnhancedLogger(name="unified_calendar.test_no_metrics", metrics_enabled=False)

        assert logger.get_health_status() == {"status": "metrics_disabled"}
