"""
库存可用性 API 路由
"""
from fastapi import APIRouter, Depends

from sf_core.search.runtime import SearchRuntime

from .deps import get_runtime
from .models import ApiResponse, StockCheckRequest

router = APIRouter()


@router.post("/check", response_model=ApiResponse[dict])
async def check_stock(
    body: StockCheckRequest,
    runtime: SearchRuntime = Depends(get_runtime),
):
    """收银台扣减检查：使用权威数据源的实时数字，不等待索引传播"""
    result = runtime.resolver.check_live(
        body.quantity,
        body.reserved_quantity,
        body.reorder_point,
        body.requested,
    )
    return ApiResponse.success(result)
