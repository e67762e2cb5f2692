"""
CLIテスト
calendar-hub の各サブコマンドの終了コードと出力の確認
"""

import json
from datetime import timedelta

import pytest
import yaml

from unified_calendar import cli
from unified_calendar.core.exceptions import SourceUnavailableError
from unified_calendar.core.models import EventSource
from unified_calendar.service import build_service

from conftest import BASE_TIME, StaticAdapter

CRM_RECORD = {
    "id": "c1",
    "title": "Site visit",
    "startTime": "2026-03-02T10:00:00Z",
    "endTime": "2026-03-02T11:00:00Z",
}


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """ストレージをtmp配下に向けた設定ディレクトリ"""
    for key in ("CALHUB_DATABASE_PATH", "CALHUB_LOG_LEVEL", "CALHUB_DEBUG"):
        monkeypatch.delenv(key, raising=False)

    directory = tmp_path / "config"
    directory.mkdir()
    (directory / "main.yaml").write_text(yaml.dump({
        "storage": {"database_path": str(tmp_path / "hub.db")},
    }))
    return directory


@pytest.fixture
def with_adapters(monkeypatch):
    """build_service にテスト用アダプターを注入"""
    def _install(adapters):
        monkeypatch.setattr(
            cli, "build_service",
            lambda config: build_service(config, adapters=adapters),
        )

    return _install


class TestCli:
    """サブコマンドの終了コード"""

    def test_init_config_writes_templates(self, tmp_path, capsys):
        config_dir = tmp_path / "fresh"

        assert cli.main(["--config-dir", str(config_dir), "init-config"]) == 0

        assert (config_dir / "main.yaml").exists()
        assert (config_dir / "sources.yaml").exists()
        assert str(config_dir) in capsys.readouterr().out

    def test_aggregate_succeeds(self, config_dir, with_adapters, capsys):
        with_adapters({EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [CRM_RECORD])})

        code = cli.main([
            "--config-dir", str(config_dir), "aggregate",
            "--start", BASE_TIME.isoformat(), "--days", "1",
        ])

        assert code == 0
        view = json.loads(capsys.readouterr().out)
        assert [e["id"] for e in view["events"]] == ["crm-calendar-c1"]
        assert view["sourceErrors"] == {}

    def test_aggregate_exit_code_on_source_error(self, config_dir, with_adapters, capsys):
        """一部ソースの失敗は終了コード2（結果は出力する）"""
        with_adapters({
            EventSource.CRM_CALENDAR: StaticAdapter(EventSource.CRM_CALENDAR, [CRM_RECORD]),
            EventSource.BOOKING_LINK: StaticAdapter(
                EventSource.BOOKING_LINK, error=SourceUnavailableError("booking-link", "HTTP 503")
            ),
        })

        code = cli.main([
            "--config-dir", str(config_dir), "aggregate",
            "--start", (BASE_TIME - timedelta(hours=1)).isoformat(), "--days", "1",
        ])

        assert code == 2
        view = json.loads(capsys.readouterr().out)
        assert list(view["sourceErrors"]) == ["booking-link"]
        assert len(view["events"]) == 1

    def test_resolve_unknown_conflict(self, config_dir, with_adapters, capsys):
        with_adapters({})

        code = cli.main([
            "--config-dir", str(config_dir), "resolve", "missing-id", "--strategy", "newest_wins",
        ])

        assert code == 1
        assert "missing-id" in capsys.readouterr().err

    def test_conflicts_empty(self, config_dir, with_adapters, capsys):
        with_adapters({})

        assert cli.main(["--config-dir", str(config_dir), "conflicts"]) == 0
        assert json.loads(capsys.readouterr().out) == []

    def test_invalid_start_rejected(self, config_dir):
        with pytest.raises(SystemExit):
            cli.main(["--config-dir", str(config_dir), "aggregate", "--start", "not-a-date"])
