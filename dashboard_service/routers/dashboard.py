"""
看板数据路由
GET /api/all                 - 最新快照（价格、持仓、指标、综合评分）
GET /api/historical?days=N   - 最近 N 天价格与恐惧贪婪历史
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from dashboard_service.layers.cache import CacheRefreshError
from dashboard_service.models.response import ApiResponse
from dashboard_service.services.history_service import HistoryService, get_history_service, parse_days
from dashboard_service.services.snapshot_service import SnapshotService, get_snapshot_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["看板数据"])


@router.get("/all")
async def get_all(svc: SnapshotService = Depends(get_snapshot_service)):
    """获取最新快照；仅在从未成功生成过快照时返回 500"""
    try:
        snapshot = await svc.get_snapshot()
    except CacheRefreshError as exc:
        logger.error(f"快照生成失败且无缓存可用: {exc.cause}", exc_info=exc.cause)
        return ApiResponse.fail(error="Failed to fetch data").to_json(
            status.HTTP_500_INTERNAL_SERVER_ERROR
        )
    return snapshot.model_dump(mode="json", exclude_none=True)


@router.get("/historical")
async def get_historical(
    days: Optional[str] = Query(default=None, description="天数，范围 1~365；缺省或无法解析时为 30"),
    svc: HistoryService = Depends(get_history_service),
):
    """获取历史区间数据"""
    try:
        rows = await svc.get_history(parse_days(days))
    except CacheRefreshError as exc:
        logger.error(f"历史区间获取失败: {exc.cause}")
        rows = []
    return {"data": [row.model_dump(mode="json") for row in rows]}
