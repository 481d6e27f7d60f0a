"""
数据提供商路由
GET /api/providers  - 各数据类型的提供商顺序及最近一次尝试结果
"""

from fastapi import APIRouter, Depends

from dashboard_service.layers.acquisition import ProviderGateway, get_provider_gateway
from dashboard_service.models.response import ApiResponse

router = APIRouter(prefix="/api/providers", tags=["数据提供商"])


@router.get("", response_model=ApiResponse)
async def get_providers(gateway: ProviderGateway = Depends(get_provider_gateway)):
    """获取提供商降级顺序与健康状态"""
    status = gateway.provider_status()
    return ApiResponse.ok(data={"data_types": status, "count": len(status)})
