"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/clear     - 清理缓存
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dashboard_service.layers.cache import ResultCache, get_result_cache
from dashboard_service.models.response import ApiResponse
from dashboard_service.services.snapshot_service import SnapshotService, get_snapshot_service

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    key: Optional[str] = None   # 为空时清理全部结果缓存


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(
    cache: ResultCache = Depends(get_result_cache),
    svc: SnapshotService = Depends(get_snapshot_service),
):
    """获取缓存统计信息"""
    return ApiResponse.ok(data={
        "results": cache.stats(),
        "series": svc.series_cache.stats(),
    })


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(body: ClearRequest, cache: ResultCache = Depends(get_result_cache)):
    """清理指定键（或全部）的结果缓存"""
    if body.key:
        removed = cache.invalidate(body.key)
        return ApiResponse.ok(data={"removed": int(removed)}, message=f"缓存已清理: {body.key}")
    removed = cache.clear()
    return ApiResponse.ok(data={"removed": removed}, message="缓存已全部清理")
