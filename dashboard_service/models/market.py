"""行情 / 指标 / 快照数据模型（构建后不可变）"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Signal(str, Enum):
    """单个指标或综合评分的买卖信号"""
    STRONG_BUY = "strong_buy"
    BUY = "buy"
    NEUTRAL = "neutral"
    SELL = "sell"
    STRONG_SELL = "strong_sell"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── 提供商规范化结果 ──────────────────────────────────────

class PriceQuote(_Frozen):
    """当前报价；current == 0 表示所有来源均失败（未知）"""
    current: float = Field(default=0.0, ge=0)
    volume_24h: float = Field(default=0.0, ge=0)
    market_cap: float = Field(default=0.0, ge=0)
    change_24h: float = 0.0


class Sentiment(_Frozen):
    value: int = Field(default=50, ge=0, le=100)
    classification: str = "Neutral"


class SupplyInfo(_Frozen):
    circulating: float
    total: float


class ChainMetrics(_Frozen):
    hash_rate: float = 0.0      # GH/s
    difficulty: float = 0.0


class Derivatives(_Frozen):
    funding_rate_pct: float = 0.0
    open_interest: float = 0.0   # BTC
    long_short_ratio: float = 1.0


class GlobalMarket(_Frozen):
    btc_dominance: float = 56.0
    total_market_cap: float = 0.0


class IndexPoint(_Frozen):
    """外部指数（DXY / S&P 500）的单日收盘"""
    ts: float   # unix 秒
    close: float


class PricePoint(_Frozen):
    date: str   # YYYY-MM-DD
    close: float


class HistoricalSeries(_Frozen):
    """按日期升序排列的日收盘价序列（日期唯一，最长 365 条）"""
    points: List[PricePoint] = Field(default_factory=list)
    source: Optional[str] = None

    @property
    def closes(self) -> List[float]:
        return [p.close for p in self.points]

    def tail(self, days: int) -> "HistoricalSeries":
        """返回最近 days 条数据组成的新序列"""
        if days <= 0:
            return HistoricalSeries(source=self.source)
        return HistoricalSeries(points=self.points[-days:], source=self.source)

    def __len__(self) -> int:
        return len(self.points)


# ── 指标 / 评分 / 快照 ────────────────────────────────────

class Indicator(_Frozen):
    id: str = ""    # 注册表中的指标 id，由分析层填写
    value: float
    label: str
    signal: Signal
    compression: Optional[bool] = None
    week_change: Optional[float] = None


class Composite(_Frozen):
    score: int = Field(ge=0, le=100)
    signal: Signal


class Portfolio(_Frozen):
    btc_amount: float
    avg_price: float
    invested: float
    current_value: float
    pnl_usd: float
    pnl_percent: float


class Snapshot(_Frozen):
    price: PriceQuote
    portfolio: Portfolio
    indicators: Dict[str, Indicator]
    composite: Composite
    degraded: List[str] = Field(default_factory=list)
    updated_at: str


class HistoryRow(_Frozen):
    """历史区间接口中的单日记录"""
    date: str
    price: int
    buy_score: int
    fear_greed: int
    rsi: Optional[float] = None
