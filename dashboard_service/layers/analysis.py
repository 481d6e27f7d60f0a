"""
Layer 4 – 指标分析层
在当前价格 + 365 日历史序列 + 辅助数据上计算各链上 / 技术 / 宏观指标，
并按固定阈值阶梯映射为买卖信号。所有计算函数均为纯函数。
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from dashboard_service.models.market import (
    ChainMetrics,
    Derivatives,
    GlobalMarket,
    IndexPoint,
    Indicator,
    PriceQuote,
    Sentiment,
    Signal,
    SupplyInfo,
)

logger = logging.getLogger(__name__)

# ── 领域常量 ──────────────────────────────────────────────
DAILY_ISSUANCE_BTC = 3.125 * 144           # 2024 减半后约 450 BTC/天
ANNUAL_ISSUANCE_BTC = 328_500              # 减半过渡年的混合年产量，对应 S2F≈60
S2F_SLOPE = 3.21                           # ln(price) = 3.21 * ln(S2F) - 1.23
S2F_INTERCEPT = -1.23
FALLBACK_CIRCULATING = 19_820_000
LAST_HALVING = datetime(2024, 4, 20, tzinfo=timezone.utc)
NEXT_HALVING = datetime(2028, 4, 20, tzinfo=timezone.utc)
MIN_HISTORY = 30
RSI_PERIOD = 14
_DAY_SECONDS = 86_400


def round_half_up(value: float) -> int:
    """四舍五入到整数（.5 向正无穷方向进位）"""
    return int(math.floor(value + 0.5))


def _fmt(value: float) -> str:
    """整数值不带小数点输出，其余保持原样"""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _mean(prices: Sequence[float]) -> float:
    return float(pd.Series(prices, dtype="float64").mean())


# ── 信号阶梯 ──────────────────────────────────────────────

_FIVE_BANDS = (Signal.STRONG_BUY, Signal.BUY, Signal.NEUTRAL, Signal.SELL)


def _ladder(*bounds: float) -> Callable[[float], Signal]:
    """value 低于第 i 个阈值即取第 i 档，全部不低于时为 strong_sell"""
    def classify(value: float) -> Signal:
        for bound, signal in zip(bounds, _FIVE_BANDS):
            if value < bound:
                return signal
        return Signal.STRONG_SELL
    return classify


def _dominance(value: float) -> Signal:
    if value > 55:
        return Signal.BUY
    if value > 45:
        return Signal.NEUTRAL
    return Signal.SELL


def _long_short(value: float) -> Signal:
    if value < 0.8:
        return Signal.BUY
    if value < 1.3:
        return Signal.NEUTRAL
    return Signal.SELL


def _sp500(week_change: float) -> Signal:
    if week_change > 1:
        return Signal.BUY
    if week_change < -2:
        return Signal.SELL
    return Signal.NEUTRAL


SIGNAL_LADDERS: Dict[str, Callable[[float], Signal]] = {
    "mvrv": _ladder(0.8, 1.0, 2.5, 3.5),
    "puell": _ladder(0.5, 0.65, 1.5, 4.0),
    "s2f_dev": _ladder(-50, -20, 50, 100),
    "fear_greed": _ladder(15, 30, 60, 80),
    "rsi": _ladder(25, 40, 60, 75),
    "ma200": _ladder(-25, -10, 30, 60),
    "dxy": _ladder(-2, -0.5, 0.5, 2),
    "halving": _ladder(25, 50, 70, 85),
    "dominance": _dominance,
    "funding": _ladder(-0.05, -0.01, 0.05, 0.1),
    "ls_ratio": _long_short,
    "difficulty": lambda compression: Signal.STRONG_BUY if compression else Signal.NEUTRAL,
    "hashrate": lambda _value: Signal.NEUTRAL,
    "open_interest": lambda _value: Signal.NEUTRAL,
    "sp500": _sp500,
}


def get_signal(ladder: str, value: float) -> Signal:
    classify = SIGNAL_LADDERS.get(ladder)
    if classify is None:
        return Signal.NEUTRAL
    return classify(value)


# ── 指标公式 ──────────────────────────────────────────────

def calc_mvrv(price: float, prices: Sequence[float]) -> Tuple[float, float]:
    """MVRV 近似：实现价 ≈ 近 365 日收盘均价；返回 (mvrv, realized_price)"""
    if not prices or len(prices) < MIN_HISTORY:
        return 1.0, price
    realized = round_half_up(_mean(prices))
    mvrv = round(price / realized, 2) if realized > 0 else 1.0
    return mvrv, realized


def calc_puell_multiple(price: float, prices: Sequence[float]) -> float:
    """Puell 倍数：当日矿工收入 / 365 日平均日收入"""
    if not prices or len(prices) < MIN_HISTORY:
        return 1.0
    daily_revenue = DAILY_ISSUANCE_BTC * price
    avg_daily_revenue = DAILY_ISSUANCE_BTC * _mean(prices)
    return round(daily_revenue / avg_daily_revenue, 2) if avg_daily_revenue > 0 else 1.0


def calc_stock_to_flow(circulating_supply: float) -> Tuple[float, int]:
    """返回 (s2f, model_price)"""
    circulating = circulating_supply if circulating_supply and circulating_supply > 0 else FALLBACK_CIRCULATING
    s2f = round(circulating / ANNUAL_ISSUANCE_BTC, 1)
    if s2f <= 0:
        return s2f, 0
    model_price = round_half_up(math.exp(S2F_SLOPE * math.log(s2f) + S2F_INTERCEPT))
    return s2f, model_price


def s2f_deviation(price: float, model_price: float) -> float:
    """当前价格相对 S2F 模型价的偏离（%）"""
    return (price / model_price - 1) * 100 if model_price > 0 else 0.0


def calc_difficulty_ribbon(difficulty: float) -> Tuple[float, bool]:
    """返回 (难度 T, 是否压缩)"""
    diff_t = round(difficulty / 1e12, 2) if difficulty > 0 else 0.0
    return diff_t, diff_t > 80


def calc_rsi(prices: Sequence[float]) -> float:
    """RSI(14)：取最近 15 个收盘价的 14 个涨跌幅"""
    if not prices or len(prices) < RSI_PERIOD + 2:
        return 50.0
    recent = pd.Series(list(prices[-(RSI_PERIOD + 1):]), dtype="float64")
    delta = recent.diff().dropna()
    avg_gain = float(delta[delta > 0].sum()) / RSI_PERIOD
    avg_loss = float(-delta[delta < 0].sum()) / RSI_PERIOD
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return round(100 - 100 / (1 + rs), 1)


def calc_ma200_position(price: float, prices: Sequence[float]) -> Tuple[float, float]:
    """价格相对 MA200 的位置（%）；不足 200 条时使用全部可用数据"""
    if not prices or len(prices) < MIN_HISTORY:
        return 0.0, price
    if len(prices) >= 200:
        ma200 = round_half_up(_mean(prices[-200:]))
        position = round((price / ma200 - 1) * 100, 1) if ma200 > 0 else 0.0
        return position, ma200
    ma = _mean(prices)
    position = round((price / ma - 1) * 100, 1) if ma > 0 else 0.0
    return position, round_half_up(ma)


def calc_halving_cycle(now: Optional[datetime] = None) -> Tuple[int, int]:
    """返回 (本轮减半周期已过百分比, 距下次减半天数)"""
    now = now or datetime.now(tz=timezone.utc)
    total_days = (NEXT_HALVING - LAST_HALVING).total_seconds() / _DAY_SECONDS
    elapsed = (now - LAST_HALVING).total_seconds() / _DAY_SECONDS
    remaining = round_half_up((NEXT_HALVING - now).total_seconds() / _DAY_SECONDS)
    return round_half_up(elapsed / total_days * 100), remaining


def calc_week_change(points: Iterable[IndexPoint]) -> Optional[Tuple[float, float]]:
    """
    外部指数 7 日涨跌幅

    以最新一条为基准，取不晚于其 7 天前的最近一条收盘价；不足 2 条返回 None
    """
    ordered = sorted(points, key=lambda p: p.ts)
    if len(ordered) < 2:
        return None
    current = ordered[-1].close
    cutoff = ordered[-1].ts - 7 * _DAY_SECONDS
    week_ago = ordered[0].close
    for point in ordered:
        if point.ts <= cutoff:
            week_ago = point.close
    change = (current / week_ago - 1) * 100 if week_ago > 0 else 0.0
    return current, change


def hash_rate_ehs(hash_rate: float) -> int:
    """blockchain.info 的 GH/s 换算为 EH/s"""
    if hash_rate > 1e9:
        return round_half_up(hash_rate / 1e9)
    return round_half_up(hash_rate / 1e6)


def open_interest_usd_bn(open_interest: float, price: float) -> float:
    return round(open_interest * price / 1e9, 1) if open_interest > 0 else 0.0


# ── 指标注册表 ────────────────────────────────────────────

@dataclass(frozen=True)
class MarketInputs:
    """一次刷新周期内所有指标共享的输入"""
    price: PriceQuote
    prices: Sequence[float]
    sentiment: Sentiment = field(default_factory=Sentiment)
    supply: Optional[SupplyInfo] = None
    chain: ChainMetrics = field(default_factory=ChainMetrics)
    derivatives: Derivatives = field(default_factory=Derivatives)
    global_market: GlobalMarket = field(default_factory=GlobalMarket)
    dxy: Sequence[IndexPoint] = ()
    sp500: Sequence[IndexPoint] = ()
    now: Optional[datetime] = None


def _build_mvrv(inputs: MarketInputs) -> Indicator:
    mvrv, realized = calc_mvrv(inputs.price.current, inputs.prices)
    return Indicator(
        value=mvrv,
        label=f"MVRV≈{_fmt(mvrv)}x | 实现价≈${round_half_up(realized):,}",
        signal=get_signal("mvrv", mvrv),
    )


def _build_puell(inputs: MarketInputs) -> Indicator:
    puell = calc_puell_multiple(inputs.price.current, inputs.prices)
    return Indicator(value=puell, label=f"{_fmt(puell)}x", signal=get_signal("puell", puell))


def _build_s2f(inputs: MarketInputs) -> Indicator:
    circulating = inputs.supply.circulating if inputs.supply else FALLBACK_CIRCULATING
    s2f, model_price = calc_stock_to_flow(circulating)
    deviation = s2f_deviation(inputs.price.current, model_price)
    return Indicator(
        value=s2f,
        label=f"S2F: {_fmt(s2f)} | 模型: ${model_price:,}",
        signal=get_signal("s2f_dev", deviation),
    )


def _build_difficulty(inputs: MarketInputs) -> Indicator:
    diff_t, compression = calc_difficulty_ribbon(inputs.chain.difficulty)
    state = "🟢 压缩" if compression else "🔴 扩张"
    return Indicator(
        value=diff_t,
        label=f"{_fmt(diff_t)}T {state}",
        signal=get_signal("difficulty", compression),
        compression=compression,
    )


def _build_hash_rate(inputs: MarketInputs) -> Indicator:
    ehs = hash_rate_ehs(inputs.chain.hash_rate)
    return Indicator(value=ehs, label=f"{ehs} EH/s", signal=get_signal("hashrate", ehs))


def _build_fear_greed(inputs: MarketInputs) -> Indicator:
    fg = inputs.sentiment
    return Indicator(
        value=fg.value,
        label=f"{fg.value} - {fg.classification}",
        signal=get_signal("fear_greed", fg.value),
    )


def _build_rsi(inputs: MarketInputs) -> Indicator:
    rsi = calc_rsi(inputs.prices)
    return Indicator(value=rsi, label=_fmt(rsi), signal=get_signal("rsi", rsi))


def _build_ma200(inputs: MarketInputs) -> Indicator:
    position, _ma200 = calc_ma200_position(inputs.price.current, inputs.prices)
    sign = "+" if position > 0 else ""
    return Indicator(value=position, label=f"{sign}{_fmt(position)}%", signal=get_signal("ma200", position))


def _build_dxy(inputs: MarketInputs) -> Indicator:
    result = calc_week_change(inputs.dxy)
    if result is None:
        return Indicator(value=0, label="N/A", signal=Signal.NEUTRAL, week_change=0)
    current, change = result
    sign = "+" if change >= 0 else ""
    return Indicator(
        value=round(current, 2),
        label=f"{current:.2f} ({sign}{change:.2f}% 7天)",
        signal=get_signal("dxy", change),
        week_change=round(change, 2),
    )


def _build_sp500(inputs: MarketInputs) -> Indicator:
    result = calc_week_change(inputs.sp500)
    if result is None:
        return Indicator(value=0, label="N/A", signal=Signal.NEUTRAL, week_change=0)
    current, change = result
    level = round_half_up(current)
    sign = "+" if change >= 0 else ""
    return Indicator(
        value=level,
        label=f"{level} ({sign}{change:.2f}% 7天)",
        signal=get_signal("sp500", change),
        week_change=round(change, 2),
    )


def _build_halving(inputs: MarketInputs) -> Indicator:
    percent, remaining = calc_halving_cycle(inputs.now)
    return Indicator(
        value=percent,
        label=f"{percent}% (距减半 {remaining} 天)",
        signal=get_signal("halving", percent),
    )


def _build_dominance(inputs: MarketInputs) -> Indicator:
    dominance = round(inputs.global_market.btc_dominance, 1)
    return Indicator(value=dominance, label=f"{_fmt(dominance)}%", signal=get_signal("dominance", dominance))


def _build_funding(inputs: MarketInputs) -> Indicator:
    funding = inputs.derivatives.funding_rate_pct
    return Indicator(
        value=round(funding, 3),
        label=f"{funding:.3f}%",
        signal=get_signal("funding", funding),
    )


def _build_long_short(inputs: MarketInputs) -> Indicator:
    ratio = inputs.derivatives.long_short_ratio
    return Indicator(value=round(ratio, 2), label=f"{ratio:.2f}", signal=get_signal("ls_ratio", ratio))


def _build_open_interest(inputs: MarketInputs) -> Indicator:
    usd_bn = open_interest_usd_bn(inputs.derivatives.open_interest, inputs.price.current)
    label = f"${usd_bn:.1f}B" if inputs.derivatives.open_interest > 0 else "$0B"
    return Indicator(value=usd_bn, label=label, signal=get_signal("open_interest", usd_bn))


INDICATOR_BUILDERS: Dict[str, Callable[[MarketInputs], Indicator]] = {
    "mvrv_approx": _build_mvrv,
    "puell_multiple": _build_puell,
    "stock_to_flow": _build_s2f,
    "difficulty_ribbon": _build_difficulty,
    "hash_rate": _build_hash_rate,
    "fear_greed": _build_fear_greed,
    "rsi": _build_rsi,
    "ma_200_position": _build_ma200,
    "dxy": _build_dxy,
    "sp500": _build_sp500,
    "halving_cycle": _build_halving,
    "btc_dominance": _build_dominance,
    "funding_rate": _build_funding,
    "long_short_ratio": _build_long_short,
    "open_interest": _build_open_interest,
}


# 以当前价格为输入的指标；价格未知（0）时不参与计算
PRICE_DEPENDENT = frozenset({
    "mvrv_approx",
    "puell_multiple",
    "stock_to_flow",
    "ma_200_position",
    "open_interest",
})


class AnalysisLayer:
    """指标分析层：按注册表计算全部指标"""

    @property
    def indicator_ids(self) -> List[str]:
        return list(INDICATOR_BUILDERS)

    def compute_all(self, inputs: MarketInputs) -> Dict[str, Indicator]:
        """
        一次性计算所有已注册指标

        价格未知时跳过 PRICE_DEPENDENT 中的指标，评分层按缺失处理（不加分也不扣分）
        """
        skip = PRICE_DEPENDENT if inputs.price.current <= 0 else frozenset()
        if skip:
            logger.warning(f"价格未知，跳过依赖价格的指标: {', '.join(sorted(skip))}")
        return {
            indicator_id: builder(inputs).model_copy(update={"id": indicator_id})
            for indicator_id, builder in INDICATOR_BUILDERS.items()
            if indicator_id not in skip
        }

    def validate_weights(self, weights: Dict[str, int]) -> None:
        """启动时校验：每个带权重的指标都必须有对应计算，权重须为正整数"""
        unknown = sorted(set(weights) - set(INDICATOR_BUILDERS))
        if unknown:
            raise ValueError(f"权重表包含未注册的指标: {unknown}")
        invalid = sorted(
            k for k, w in weights.items()
            if isinstance(w, bool) or not isinstance(w, int) or w <= 0
        )
        if invalid:
            raise ValueError(f"权重必须为正整数: {invalid}")


# ── 模块级别单例 ──────────────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis
