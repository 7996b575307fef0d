"""
API 请求/响应模型
"""
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, Field, StrictInt

T = TypeVar('T')

FacetValue = Union[bool, int, float, str]


class ApiResponse(BaseModel, Generic[T]):
    """统一 API 响应格式"""
    ok: bool = Field(description="操作是否成功")
    data: Optional[T] = Field(default=None, description="响应数据")
    error: Optional[Dict[str, Any]] = Field(default=None, description="错误信息（RFC7807 Problem Details）")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="元数据")

    @classmethod
    def success(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        """创建成功响应"""
        return cls(ok=True, data=data, metadata=metadata)

    @classmethod
    def failure(cls, error: Dict[str, Any]) -> "ApiResponse[None]":
        """创建错误响应"""
        return cls(ok=False, error=error)


class SearchBody(BaseModel):
    """索引查询请求体"""
    query: str = Field(default="", description="查询文本，空字符串匹配全部")
    refinements: Dict[str, List[FacetValue]] = Field(default_factory=dict, description="facet 选择：同一属性内 OR，属性之间 AND")
    filters: Dict[str, FacetValue] = Field(default_factory=dict, description="固定过滤条件")
    page: int = Field(default=0, description="页码（从 0 开始）")
    page_size: Optional[int] = Field(default=None, description="每页条数，默认使用配置值")


class ChangeEventBody(BaseModel):
    """手动提交的实体变更事件"""
    entity_kind: str
    entity_id: str
    change_type: str
    payload: Optional[Dict[str, Any]] = None
    event_id: Optional[str] = None


class SyncRequest(BaseModel):
    """全量同步请求"""
    collections: Optional[List[str]] = Field(default=None, description="只同步这些集合，默认全部")
    batch_size: int = Field(default=100, gt=0)


class ReplayRequest(BaseModel):
    """重放隔离变更请求"""
    event_ids: Optional[List[str]] = Field(default=None, description="只重放这些事件，默认全部")


class StockCheckRequest(BaseModel):
    """实时库存扣减检查（基于权威数据源的实时数字）"""
    quantity: StrictInt
    reserved_quantity: StrictInt = 0
    reorder_point: StrictInt = 0
    requested: StrictInt
