"""
統合カレンダーハブ
複数カレンダーソースの集約・競合検出・同期オーケストレーション
"""

__version__ = "1.0.0"
