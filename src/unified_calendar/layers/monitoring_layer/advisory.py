"""
アドバイザリー連携
外部の分析サービスへの問い合わせと、失敗時の固定推奨事項・トラッキングフック
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from ...core.models import Conflict, Event

logger = logging.getLogger(__name__)

FALLBACK_RECOMMENDATIONS = [
    "Monitor sync reliability and address failing sources",
    "Review conflict patterns to identify root causes",
    "Optimize scheduling based on busiest time slots",
]


@dataclass
class AdvisoryReport:
    """分析結果"""
    recommendations: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendations": list(self.recommendations),
            "summary": self.summary,
            "fallback": self.fallback,
        }


class AdvisoryClient(ABC):
    """アドバイザリーサービスのクライアント契約"""

    @abstractmethod
    async def analyze(self, events: Sequence[Event], conflicts: Sequence[Conflict]) -> AdvisoryReport:
        """イベントと競合から推奨事項を生成"""

    async def assess_event(self, event: Event, nearby_events: Sequence[Event]) -> List[Dict[str, Any]]:
        """新規イベントの追加リスク（{type, severity, message} の辞書リスト）"""
        return []


class HttpAdvisoryClient(AdvisoryClient):
    """JSONエンドポイントへのアドバイザリー問い合わせ"""

    def __init__(self, endpoint: str, timeout_seconds: float = 20.0, api_token: Optional[str] = None):
        self.endpoint = endpoint.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.api_token = api_token

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{self.endpoint}/{path}", json=payload,
                                    headers=self._get_headers()) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None) or {}

    async def analyze(self, events: Sequence[Event], conflicts: Sequence[Conflict]) -> AdvisoryReport:
        data = await self._post("analyze", {
            "events": [event.to_dict() for event in events],
            "conflicts": [conflict.to_dict() for conflict in conflicts],
        })
        return AdvisoryReport(
            recommendations=[str(r) for r in data.get("recommendations", [])],
            summary=data.get("summary"),
        )

    async def assess_event(self, event: Event, nearby_events: Sequence[Event]) -> List[Dict[str, Any]]:
        data = await self._post("assess", {
            "event": event.to_dict(),
            "nearbyEvents": [e.to_dict() for e in nearby_events],
        })
        alerts = data.get("alerts", [])
        return alerts if isinstance(alerts, list) else []


async def safe_analyze(client: Optional[AdvisoryClient],
                       events: Sequence[Event],
                       conflicts: Sequence[Conflict]) -> AdvisoryReport:
    """分析を試み、失敗・空応答の場合は固定の推奨事項を返す"""
    if client is not None:
        try:
            report = await client.analyze(events, conflicts)
            if report.recommendations:
                return report
            logger.info("Advisory service returned no recommendations, using fallback")
        except Exception as e:
            logger.warning(f"Advisory analysis failed, using fallback recommendations: {e}")

    return AdvisoryReport(recommendations=list(FALLBACK_RECOMMENDATIONS), fallback=True)


class Tracker(ABC):
    """利用状況トラッキングの契約"""

    @abstractmethod
    def track(self, event_name: str, payload: Dict[str, Any]) -> Any:
        """イベント送信（同期・非同期どちらでも可）"""
