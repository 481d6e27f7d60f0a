"""
Layer 5 – 综合评分层
按静态权重表把各指标信号加权汇总为 0~100 的综合评分及总体信号
"""

from typing import Mapping, Optional

from dashboard_service.layers.analysis import round_half_up
from dashboard_service.models.market import Composite, Indicator, Signal

BAND_SCORES = {
    Signal.STRONG_BUY: 100,
    Signal.BUY: 75,
    Signal.NEUTRAL: 50,
    Signal.SELL: 25,
    Signal.STRONG_SELL: 0,
}


def composite_signal(score: int) -> Signal:
    if score >= 80:
        return Signal.STRONG_BUY
    if score >= 65:
        return Signal.BUY
    if score >= 35:
        return Signal.NEUTRAL
    if score >= 20:
        return Signal.SELL
    return Signal.STRONG_SELL


def score_indicators(
    indicators: Mapping[str, Indicator],
    weights: Mapping[str, int],
) -> Composite:
    """
    加权综合评分

    只统计同时出现在指标集合与权重表中的指标；缺失的指标既不加分也不扣分，
    归一化分母为实际累计的权重。没有任何可用指标时评分为 50。
    """
    total_weight = 0
    weighted_sum = 0
    for indicator_id, weight in weights.items():
        indicator: Optional[Indicator] = indicators.get(indicator_id)
        if indicator is None:
            continue
        weighted_sum += BAND_SCORES.get(indicator.signal, 50) * weight
        total_weight += weight

    score = round_half_up(weighted_sum / total_weight) if total_weight > 0 else 50
    return Composite(score=score, signal=composite_signal(score))
