"""
搜索索引 API 路由
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from sf_core.search.admin import configure_indexes, sync_all
from sf_core.search.events import ChangeEvent
from sf_core.search.gateway import SearchRequest
from sf_core.search.refinement import PaginationInfo
from sf_core.search.runtime import SearchRuntime
from sf_core.utils.logger import get_logger

from .deps import get_runtime
from .models import ApiResponse, ChangeEventBody, ReplayRequest, SearchBody, SyncRequest

router = APIRouter()
logger = get_logger(__name__)


@router.post("/sync", response_model=ApiResponse[dict])
async def sync_indexes(
    body: Optional[SyncRequest] = None,
    runtime: SearchRuntime = Depends(get_runtime),
):
    """全量同步权威数据到索引"""
    body = body or SyncRequest()
    result = await sync_all(
        runtime.projector,
        runtime.source,
        collections=body.collections,
        batch_size=body.batch_size,
    )
    return ApiResponse.success(result)


@router.post("/configure", response_model=ApiResponse[dict])
async def configure(runtime: SearchRuntime = Depends(get_runtime)):
    """推送索引设置（可搜索字段、facet、排序）"""
    result = await configure_indexes(runtime.store, runtime.registry)
    return ApiResponse.success(result)


@router.post("/events", response_model=ApiResponse[dict])
async def submit_event(
    body: ChangeEventBody,
    wait: bool = Query(default=True, description="是否等待索引存储确认"),
    runtime: SearchRuntime = Depends(get_runtime),
):
    """手动提交实体变更事件"""
    event = ChangeEvent.from_dict(body.model_dump(exclude_none=True))
    if wait:
        outcome = await runtime.projector.handle(event)
    else:
        outcome = await runtime.projector.submit(event)
    return ApiResponse.success(outcome.to_dict())


@router.post("/replay", response_model=ApiResponse[dict])
async def replay(
    body: Optional[ReplayRequest] = None,
    runtime: SearchRuntime = Depends(get_runtime),
):
    """重放隔离（校验失败）与搁置（数据源不可用）的变更"""
    body = body or ReplayRequest()
    outcomes = await runtime.projector.replay_quarantined(body.event_ids)
    outcomes += await runtime.projector.replay_deferred(body.event_ids)
    return ApiResponse.success({
        "replayed": len(outcomes),
        "outcomes": [outcome.to_dict() for outcome in outcomes],
    })


@router.get("/status", response_model=ApiResponse[dict])
async def status(runtime: SearchRuntime = Depends(get_runtime)):
    """一致性状态：降级（发布重试耗尽）、隔离（校验失败）与搁置（读取失败）的变更"""
    projector = runtime.projector
    return ApiResponse.success({
        "idle": projector.is_idle(),
        "fanout_pending": projector.fanout.pending,
        "degraded": [item.to_dict() for item in runtime.publisher.degraded],
        "quarantined": [item.to_dict() for item in projector.quarantined],
        "deferred": [item.to_dict() for item in projector.deferred],
    })


@router.post("/{index}", response_model=ApiResponse[dict])
async def search_index(
    index: str,
    body: SearchBody,
    timeout: Optional[float] = Query(default=None, gt=0, description="本次查询超时（秒）"),
    runtime: SearchRuntime = Depends(get_runtime),
):
    """索引查询"""
    request = SearchRequest(
        index=index,
        query=body.query,
        refinements=body.refinements,
        filters=body.filters,
        page=body.page,
        page_size=body.page_size if body.page_size is not None else runtime.gateway.default_page_size,
    )
    response = await runtime.gateway.search(request, timeout=timeout)
    pagination = PaginationInfo.from_response(response)
    return ApiResponse.success(response.to_dict(), metadata={"pagination": pagination.to_dict()})
