"""健康检查路由"""

import time

from fastapi import APIRouter, Depends

from dashboard_service import __version__
from dashboard_service.layers.cache import ResultCache, get_result_cache
from dashboard_service.services.snapshot_service import SNAPSHOT_KEY

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(cache: ResultCache = Depends(get_result_cache)):
    """服务健康检查"""
    entry = cache.peek(SNAPSHOT_KEY)
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "BTC Dashboard DataService",
            "snapshot_age_seconds": round(time.time() - entry.fetched_at, 1) if entry else None,
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(cache: ResultCache = Depends(get_result_cache)):
    """Kubernetes readiness probe：至少生成过一次快照"""
    return {"ready": cache.peek(SNAPSHOT_KEY) is not None}
