"""
API 依赖注入
"""
from fastapi import Request

from sf_core.search.runtime import SearchRuntime
from sf_core.utils.errors import ServiceUnavailableError


async def get_runtime(request: Request) -> SearchRuntime:
    """依赖注入：获取搜索层运行时"""
    runtime = getattr(request.app.state, "search_runtime", None)
    if runtime is None:
        raise ServiceUnavailableError(code="SEARCH_NOT_READY", detail="Search runtime is not initialized")
    return runtime
