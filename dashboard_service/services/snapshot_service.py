"""
快照服务
并发调用数据获取层与历史序列缓存，经分析层、评分层汇总为不可变快照，
并通过结果缓存对外提供（60 秒 TTL，刷新失败时返回旧快照）
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from dashboard_service.config import DashboardSettings, settings as default_settings
from dashboard_service.layers.acquisition import ProviderError, ProviderGateway, get_provider_gateway
from dashboard_service.layers.analysis import MarketInputs, get_analysis_layer, round_half_up
from dashboard_service.layers.cache import HistoricalSeriesCache, ResultCache, get_result_cache
from dashboard_service.layers.scoring import score_indicators
from dashboard_service.models.market import (
    ChainMetrics,
    HistoricalSeries,
    IndexPoint,
    Portfolio,
    PriceQuote,
    Snapshot,
)

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "snapshot"


def build_portfolio(price: float, btc_amount: float, avg_price: float) -> Portfolio:
    """持仓估值：value = 数量 × 现价，pnl = value − 成本；价格未知时盈亏记为 0"""
    invested = btc_amount * avg_price
    if price <= 0:
        return Portfolio(
            btc_amount=btc_amount,
            avg_price=avg_price,
            invested=invested,
            current_value=0,
            pnl_usd=0,
            pnl_percent=0.0,
        )
    value = btc_amount * price
    pnl_usd = value - invested
    pnl_pct = (value / invested - 1) * 100 if invested > 0 else 0.0
    return Portfolio(
        btc_amount=btc_amount,
        avg_price=avg_price,
        invested=invested,
        current_value=round_half_up(value),
        pnl_usd=round_half_up(pnl_usd),
        pnl_percent=round(pnl_pct, 2),
    )


def _degraded(
    price: PriceQuote,
    series: HistoricalSeries,
    chain: ChainMetrics,
    dxy: List[IndexPoint],
    sp500: List[IndexPoint],
) -> List[str]:
    """标记本轮使用了默认值（即“未知”）的数据类型"""
    flags = []
    if price.current <= 0:
        flags.append("price")
    if len(series) == 0:
        flags.append("history")
    if chain.hash_rate <= 0:
        flags.append("hash_rate")
    if chain.difficulty <= 0:
        flags.append("difficulty")
    if len(dxy) < 2:
        flags.append("dxy")
    if len(sp500) < 2:
        flags.append("sp500")
    return flags


class SnapshotService:
    """快照组装服务"""

    def __init__(
        self,
        gateway: Optional[ProviderGateway] = None,
        series_cache: Optional[HistoricalSeriesCache] = None,
        result_cache: Optional[ResultCache] = None,
        config: Optional[DashboardSettings] = None,
    ):
        self._settings = config or default_settings
        self._gateway = gateway or get_provider_gateway()
        self._series = series_cache or HistoricalSeriesCache(
            self._gateway.fetch_historical_series, ttl=self._settings.SERIES_TTL
        )
        self._cache = result_cache or get_result_cache()
        self._analysis = get_analysis_layer()

    @property
    def series_cache(self) -> HistoricalSeriesCache:
        return self._series

    async def get_snapshot(self) -> Snapshot:
        """读路径：缓存未过期直接返回，否则同步刷新"""
        return await self._cache.get_or_refresh(
            SNAPSHOT_KEY, self._settings.SNAPSHOT_TTL, self.build_snapshot
        )

    async def build_snapshot(self) -> Snapshot:
        """执行一次完整刷新周期，返回新的快照"""
        gw = self._gateway
        (
            price,
            supply,
            global_market,
            sentiment,
            chain,
            derivatives,
            series,
            dxy,
            sp500,
        ) = await asyncio.gather(
            gw.fetch_price(),
            gw.fetch_supply(),
            gw.fetch_global(),
            gw.fetch_sentiment(),
            gw.fetch_chain_metrics(),
            gw.fetch_derivatives(),
            self._series.get(HistoricalSeriesCache.CANONICAL_DAYS),
            gw.fetch_index_series("dxy"),
            gw.fetch_index_series("sp500"),
        )

        if price.current <= 0 and self._cache.peek(SNAPSHOT_KEY) is not None:
            # 已有快照时不用未知价格覆盖，交由结果缓存返回旧快照
            raise ProviderError("所有价格来源均失败")

        now = datetime.now(tz=timezone.utc)
        inputs = MarketInputs(
            price=price,
            prices=series.closes,
            sentiment=sentiment,
            supply=supply,
            chain=chain,
            derivatives=derivatives,
            global_market=global_market,
            dxy=dxy,
            sp500=sp500,
            now=now,
        )
        indicators = self._analysis.compute_all(inputs)
        composite = score_indicators(indicators, self._settings.INDICATOR_WEIGHTS)
        portfolio = build_portfolio(
            price.current, self._settings.HOLDINGS_BTC, self._settings.HOLDINGS_AVG_PRICE
        )
        degraded = _degraded(price, series, chain, dxy, sp500)
        if degraded:
            logger.warning(f"本轮使用默认值的数据: {', '.join(degraded)}")

        snapshot = Snapshot(
            price=price,
            portfolio=portfolio,
            indicators=indicators,
            composite=composite,
            degraded=degraded,
            updated_at=now.isoformat(),
        )
        logger.info(f"快照已生成：BTC=${price.current:,.0f}，评分={composite.score}%")
        return snapshot


# ── 模块级别单例 ──────────────────────────────────────────
_snapshot_service: Optional[SnapshotService] = None


def get_snapshot_service() -> SnapshotService:
    global _snapshot_service
    if _snapshot_service is None:
        _snapshot_service = SnapshotService()
    return _snapshot_service
