"""
ShelfFlow FastAPI 主应用
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from sf_core import __version__
from sf_core.config import Settings, get_settings
from sf_core.event_bus import ChangeEventConsumer
from sf_core.utils.logger import setup_logging, get_logger
from sf_core.utils.errors import ShelfFlowException
from sf_core.middleware import LoggingMiddleware, MetricsMiddleware, metrics_endpoint
from sf_core.search.runtime import SearchRuntime, build_runtime
from sf_core.api import api_router
from sf_core.api.models import ApiResponse

logger = get_logger(__name__)


def _make_lifespan(runtime: Optional[SearchRuntime]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        settings: Settings = app.state.settings
        logger.info("Starting ShelfFlow application", version=__version__)

        search_runtime = runtime or build_runtime(settings)
        app.state.search_runtime = search_runtime

        consumer = None
        if settings.change_consumer_enabled:
            consumer = ChangeEventConsumer(search_runtime.projector, settings=settings)
            await consumer.start()
        app.state.change_consumer = consumer

        logger.info("ShelfFlow application started successfully")

        yield  # 应用运行期间

        logger.info("Shutting down ShelfFlow application")
        try:
            if consumer is not None:
                await consumer.shutdown()
            await search_runtime.close()
            logger.info("ShelfFlow application shutdown complete")
        except Exception:
            logger.error("Error during application shutdown", exc_info=True)

    return lifespan


def create_app(settings: Optional[Settings] = None, runtime: Optional[SearchRuntime] = None) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        settings: 配置，默认读取环境变量
        runtime: 预先装配的搜索层（测试注入），默认在启动时按配置装配
    """
    settings = settings or (runtime.settings if runtime is not None else get_settings())

    # 设置日志
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format
    )

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="ShelfFlow Search Index & Stock-Consistency API",
        docs_url="/docs" if settings.api_debug else None,
        redoc_url="/redoc" if settings.api_debug else None,
        openapi_url="/openapi.json" if settings.api_debug else None,
        lifespan=_make_lifespan(runtime),
    )
    app.state.settings = settings
    # 注入的运行时在 lifespan 之前即可使用（测试无需触发 lifespan）
    app.state.search_runtime = runtime

    # 指标中间件
    if settings.metrics_enabled:
        app.add_middleware(MetricsMiddleware)
        app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)

    # 日志中间件
    app.add_middleware(LoggingMiddleware)

    # 添加路由
    app.include_router(api_router, prefix=settings.api_prefix)

    # 异常处理器
    @app.exception_handler(ShelfFlowException)
    async def shelfflow_exception_handler(request: Request, exc: ShelfFlowException):
        """处理 ShelfFlow 自定义异常"""
        return exc.to_response(request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理 Pydantic 验证异常"""
        logger.warning("Request validation failed", path=request.url.path, errors=str(exc.errors()))
        return JSONResponse(
            status_code=422,
            content={
                "ok": False,
                "error": {
                    "type": "about:blank",
                    "title": "Validation Error",
                    "status": 422,
                    "detail": "Request validation failed",
                    "code": "VALIDATION_ERROR",
                    "validation_errors": [
                        {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                        for error in exc.errors()
                    ]
                }
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理 FastAPI HTTP 异常"""
        body = ApiResponse.failure({
            "type": "about:blank",
            "title": exc.detail,
            "status": exc.status_code,
            "detail": exc.detail,
            "code": f"HTTP_{exc.status_code}"
        })
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))

    # 健康检查端点
    @app.get("/healthz")
    async def health_check():
        """健康检查端点"""
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "sf_core.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
    )
