"""
指标收集中间件
"""
import re
import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware


# 进程级指标（多次创建 app 时复用同一组）
HTTP_REQUESTS = Counter(
    "sf_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "sf_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """指标收集中间件"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = self._get_endpoint_pattern(request)
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            HTTP_REQUESTS.labels(method=method, endpoint=endpoint, status_code="500").inc()
            HTTP_REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)
            raise

        HTTP_REQUESTS.labels(method=method, endpoint=endpoint, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)
        return response

    def _get_endpoint_pattern(self, request: Request) -> str:
        """获取端点模式（用于聚合指标）"""
        route = request.scope.get("route")
        if route is not None and getattr(route, "path", None):
            return route.path

        path = request.url.path
        # 替换 UUID 与长 ID
        path = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{uuid}', path)
        path = re.sub(r'/\d+', '/{id}', path)
        return path or "/"


async def metrics_endpoint(request: Request) -> Response:
    """Prometheus 指标端点"""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
