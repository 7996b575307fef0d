"""
ShelfFlow 错误处理系统
遵循 RFC7807 Problem Details 标准
"""
from typing import Optional
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Query rejected",
                "status": 400,
                "detail": "attribute 'colour' is not a facet of index 'products'",
                "code": "SEARCH_QUERY_REJECTED"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class ShelfFlowException(Exception):
    """ShelfFlow 基础异常类"""

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **self.extra
        )

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        """转换为 JSON 响应"""
        instance = str(request.url) if request else None
        problem = self.to_problem_detail(instance)

        return JSONResponse(
            status_code=self.status,
            content={
                "ok": False,
                "error": problem.model_dump(exclude_none=True)
            }
        )


class BadRequestError(ShelfFlowException):
    """400 错误请求"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=400,
            code=code,
            title="Bad Request",
            detail=detail,
            **kwargs
        )


class NotFoundError(ShelfFlowException):
    """404 未找到"""
    def __init__(self, code: str, resource: str):
        super().__init__(
            status=404,
            code=code,
            title="Not Found",
            detail=f"{resource} not found"
        )


class ValidationError(ShelfFlowException):
    """422 验证失败"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=422,
            code=code,
            title="Validation Failed",
            detail=detail,
            **kwargs
        )


class ServiceUnavailableError(ShelfFlowException):
    """503 服务不可用"""
    def __init__(self, code: str = "SERVICE_UNAVAILABLE", detail: str = "Service temporarily unavailable", **kwargs):
        super().__init__(
            status=503,
            code=code,
            title="Service Unavailable",
            detail=detail,
            **kwargs
        )


class GatewayTimeoutError(ShelfFlowException):
    """504 上游超时"""
    def __init__(self, code: str = "GATEWAY_TIMEOUT", detail: str = "Upstream did not respond in time", **kwargs):
        super().__init__(
            status=504,
            code=code,
            title="Gateway Timeout",
            detail=detail,
            **kwargs
        )


# ===== 搜索索引层错误 =====

class SchemaViolation(ValidationError):
    """索引记录不符合 schema，永不发布，也不自动重试"""
    def __init__(self, index: str, detail: str, object_id: Optional[str] = None):
        self.index = index
        self.object_id = object_id
        super().__init__(
            code="SEARCH_SCHEMA_VIOLATION",
            detail=f"[{index}] {detail}",
        )


class PublishFailure(ServiceUnavailableError):
    """索引存储写入失败，retryable=False 时不再重试（如请求被存储拒绝）"""
    def __init__(self, collection: str, object_id: str, detail: str, retryable: bool = True):
        self.collection = collection
        self.object_id = object_id
        self.retryable = retryable
        super().__init__(
            code="SEARCH_PUBLISH_FAILED",
            detail=f"publish to {collection}/{object_id} failed: {detail}",
        )


class SourceUnavailable(ServiceUnavailableError):
    """权威数据源读取在重试耗尽后仍失败"""
    def __init__(self, kind: str, entity_id: str, detail: str, attempts: int):
        self.kind = kind
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            code="SEARCH_SOURCE_UNAVAILABLE",
            detail=f"loading {kind} {entity_id} failed after {attempts} attempts: {detail}",
        )


class QueryTimeout(GatewayTimeoutError):
    """索引存储未在限定时间内响应"""
    def __init__(self, index: str, timeout: float):
        self.index = index
        self.timeout = timeout
        super().__init__(
            code="SEARCH_QUERY_TIMEOUT",
            detail=f"query on index '{index}' timed out after {timeout:.2f}s",
        )


class QueryRejected(BadRequestError):
    """查询参数不合法（未知索引或非 facet 属性）"""
    def __init__(self, index: str, detail: str):
        self.index = index
        super().__init__(
            code="SEARCH_QUERY_REJECTED",
            detail=detail,
        )


class InvalidArgument(BadRequestError):
    """调用参数非法"""
    def __init__(self, detail: str):
        super().__init__(
            code="INVALID_ARGUMENT",
            detail=detail,
        )


class ReferenceNotFound(NotFoundError):
    """反规范化所需的引用实体不存在"""
    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(
            code="REFERENCE_NOT_FOUND",
            resource=f"{kind} {entity_id}",
        )
