"""
コマンドラインインターフェース
設定テンプレート作成・集約・競合確認/解決・同期・定期同期の起動
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from .config.enhanced_config import ConfigManager
from .core.exceptions import CalendarHubError
from .core.models import EventSource, ResolutionStrategy
from .layers.sync_layer.sync_orchestrator import SyncScheduler
from .service import UnifiedCalendarService, build_service


def _parse_datetime(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"ISO 8601 形式で指定してください: {value}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _print_json(data: Any):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calendar-hub", description="Unified calendar hub")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-config", help="設定ファイルテンプレートを作成")

    aggregate = sub.add_parser("aggregate", help="全ソースを集約して統合ビューを表示")
    aggregate.add_argument("--start", type=_parse_datetime, help="開始日時（未指定時は現在）")
    aggregate.add_argument("--days", type=int, default=7, help="対象日数")
    aggregate.add_argument("--user", help="ユーザーID")
    aggregate.add_argument("--source", action="append", choices=[s.value for s in EventSource],
                           help="対象ソース（複数指定可）")

    sub.add_parser("conflicts", help="未解決の競合を表示")

    resolve = sub.add_parser("resolve", help="競合を解決")
    resolve.add_argument("conflict_id")
    resolve.add_argument("--strategy", required=True, choices=[s.value for s in ResolutionStrategy])
    resolve.add_argument("--by", default="cli", help="解決者")

    sync = sub.add_parser("sync", help="ユーザーのカレンダーを同期")
    sync.add_argument("user_id", nargs="?", help="ユーザーID（未指定時は全ユーザー）")
    sync.add_argument("--source", choices=[s.value for s in EventSource])

    sub.add_parser("run-scheduler", help="定期同期を起動（Ctrl+Cで停止）")

    return parser


async def _run_command(args: argparse.Namespace, service: UnifiedCalendarService, config) -> int:
    if not await service.initialize():
        print("ストレージの初期化に失敗しました", file=sys.stderr)
        return 1

    if args.command == "aggregate":
        start = args.start or datetime.now(timezone.utc)
        sources: Optional[List[EventSource]] = [EventSource(s) for s in args.source] if args.source else None
        view = await service.get_unified_view(start, start + timedelta(days=args.days), args.user, sources)
        _print_json(view)
        return 0 if not view["sourceErrors"] else 2

    if args.command == "conflicts":
        _print_json(await service.list_unresolved_conflicts())
        return 0

    if args.command == "resolve":
        result = await service.resolve_conflict(args.conflict_id, ResolutionStrategy(args.strategy), args.by)
        _print_json(result)
        return 0

    if args.command == "sync":
        if args.user_id:
            source = EventSource(args.source) if args.source else None
            _print_json(await service.trigger_sync(args.user_id, source))
        else:
            sweep = await service.orchestrator.sync_all_users()
            _print_json({uid: [r.to_dict() for r in results] for uid, results in sweep.items()})
        return 0

    if args.command == "run-scheduler":
        scheduler = SyncScheduler(service.orchestrator, config.sync.interval_minutes)
        await scheduler.start()
        try:
            while scheduler.is_running:
                await asyncio.sleep(3600)
        finally:
            await scheduler.stop()
        return 0

    return 1


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    config_manager = ConfigManager(args.config_dir)

    if args.command == "init-config":
        config_manager.save_config_template()
        print(f"設定テンプレートを作成しました: {config_manager.config_dir}")
        return 0

    config = config_manager.load_config()
    service = build_service(config)

    try:
        return asyncio.run(_run_command(args, service, config))
    except KeyboardInterrupt:
        return 130
    except CalendarHubError as e:
        print(f"エラー: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
