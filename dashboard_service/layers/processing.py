"""
Layer 3 – 数据处理层
将各提供商的原始 K 线规范化为统一的日线序列，并整理历史区间接口的输出记录。
"""

import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from dashboard_service.layers.analysis import round_half_up
from dashboard_service.models.market import HistoricalSeries, HistoryRow, PricePoint

logger = logging.getLogger(__name__)

MAX_SERIES_DAYS = 365


class ProcessingLayer:
    """数据处理层：清洗 + 格式化 + 标准化"""

    def normalize_frame(
        self, records: List[Dict[str, Any]], unit: str = "ms"
    ) -> pd.DataFrame:
        """
        将原始 {ts, close} 记录列表标准化为 DataFrame

        标准列：date (YYYY-MM-DD), close；按日期升序，同一日期保留最后一条
        """
        if not records:
            return pd.DataFrame(columns=["date", "close"])

        df = pd.DataFrame(records)
        for col in ("ts", "close"):
            if col not in df.columns:
                df[col] = None

        # 类型转换
        df["ts"] = pd.to_numeric(df["ts"], errors="coerce")
        df["close"] = pd.to_numeric(df["close"], errors="coerce")
        df = df.dropna(subset=["ts", "close"])
        df = df[df["close"] > 0].copy()

        # 日期格式统一（UTC 日）
        df["date"] = pd.to_datetime(df["ts"], unit=unit, utc=True).dt.strftime("%Y-%m-%d")

        # 删除重复日期，保留最新数据
        df = df.sort_values("ts", kind="stable")
        df = df.drop_duplicates(subset=["date"], keep="last")
        df = df.sort_values("date").reset_index(drop=True)

        return df[["date", "close"]]

    def normalize_series(
        self,
        records: List[Dict[str, Any]],
        unit: str = "ms",
        source: Optional[str] = None,
        limit: int = MAX_SERIES_DAYS,
    ) -> HistoricalSeries:
        """规范化后截取最近 limit 条，生成不可变的 HistoricalSeries"""
        df = self.normalize_frame(records, unit=unit)
        limit = max(1, min(limit, MAX_SERIES_DAYS))
        df = df.tail(limit)
        points = [
            PricePoint(date=row.date, close=float(row.close))
            for row in df.itertuples(index=False)
        ]
        return HistoricalSeries(points=points, source=source)

    def build_history_rows(
        self,
        series: HistoricalSeries,
        fear_greed: Dict[str, int],
    ) -> List[HistoryRow]:
        """
        合并日线价格与恐惧贪婪指数

        buy_score = clamp(50 + (50 - fg), 0, 100)；缺失的 fg 按 50 处理
        """
        rows = []
        for point in series.points:
            fg = fear_greed.get(point.date) or 50
            rows.append(HistoryRow(
                date=point.date,
                price=round_half_up(point.close),
                buy_score=max(0, min(100, 50 + (50 - fg))),
                fear_greed=fg,
                rsi=None,
            ))
        return rows


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
