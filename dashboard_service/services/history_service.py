"""
历史区间服务
按天数拉取日线价格与恐惧贪婪指数，按天数分别缓存 1 小时
"""

import asyncio
import logging
import re
from typing import List, Optional

from dashboard_service.config import DashboardSettings, settings as default_settings
from dashboard_service.layers.acquisition import ProviderError, ProviderGateway, get_provider_gateway
from dashboard_service.layers.cache import ResultCache, get_result_cache
from dashboard_service.layers.processing import MAX_SERIES_DAYS, get_processing_layer
from dashboard_service.models.market import HistoryRow

logger = logging.getLogger(__name__)

DEFAULT_DAYS = 30


def clamp_days(days: Optional[int]) -> int:
    """天数限制在 [1, 365]；未提供时默认 30"""
    if days is None:
        return DEFAULT_DAYS
    return max(1, min(int(days), MAX_SERIES_DAYS))


def parse_days(raw: Optional[str]) -> int:
    """解析查询参数：取开头的整数部分，无法解析或为 0 时使用默认 30 天，再限制到 [1, 365]"""
    match = re.match(r"\s*([+-]?\d+)", raw or "")
    days = int(match.group(1)) if match else 0
    return clamp_days(days or DEFAULT_DAYS)


class HistoryService:
    """历史区间数据服务"""

    def __init__(
        self,
        gateway: Optional[ProviderGateway] = None,
        result_cache: Optional[ResultCache] = None,
        config: Optional[DashboardSettings] = None,
    ):
        self._settings = config or default_settings
        self._gateway = gateway or get_provider_gateway()
        self._cache = result_cache or get_result_cache()
        self._proc = get_processing_layer()

    async def get_history(self, days: Optional[int] = DEFAULT_DAYS) -> List[HistoryRow]:
        """
        获取最近 days 天的每日价格 / 恐惧贪婪 / 简易买入评分

        Args:
            days: 天数，超出 [1, 365] 时截断
        """
        days = clamp_days(days)
        return await self._cache.get_or_refresh(
            f"hist_{days}",
            self._settings.HISTORICAL_RANGE_TTL,
            lambda: self._load(days),
        )

    async def _load(self, days: int) -> List[HistoryRow]:
        series, fear_greed = await asyncio.gather(
            self._gateway.fetch_price_history(days),
            self._gateway.fetch_fear_greed_history(days),
        )
        if len(series) == 0:
            # 不用空结果覆盖已缓存的历史区间
            raise ProviderError(f"历史价格获取失败（{days} 天）")
        rows = self._proc.build_history_rows(series, fear_greed)
        logger.info(f"历史区间已生成：{days} 天，{len(rows)} 条")
        return rows


# ── 模块级别单例 ──────────────────────────────────────────
_history_service: Optional[HistoryService] = None


def get_history_service() -> HistoryService:
    global _history_service
    if _history_service is None:
        _history_service = HistoryService()
    return _history_service
