"""
查询网关

文本 + facet 查询、refinement、分页，返回经 schema 校验的类型化命中结果。
- 同一 attribute 内多个值 OR，不同 attribute 之间 AND
- 空查询匹配全部（索引默认排序）
- 超时 -> QueryTimeout；非 facet 属性或未知索引 -> QueryRejected；二者都不重试、不降级为空结果
- 查询可取消：SearchSession 只保留最新一次查询的结果
"""
import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from sf_core.utils.errors import InvalidArgument, QueryRejected, QueryTimeout, ShelfFlowException
from sf_core.utils.logger import get_logger

from .metrics import SEARCH_ERRORS, SEARCH_QUERY_SECONDS
from .schema import (
    CustomerRecord, IndexRecord, IndexSchemaRegistry, InventoryRecord,
    ProductRecord, SupplierRecord, get_schema_registry,
)
from .store import IndexStore

logger = get_logger(__name__)

T = TypeVar("T", bound=IndexRecord)


class SearchRequest(BaseModel):
    """查询请求"""
    model_config = ConfigDict(frozen=True)

    index: str
    query: str = ""
    refinements: Dict[str, List[Any]] = Field(default_factory=dict)
    filters: Dict[str, Any] = Field(default_factory=dict)
    page: int = 0
    page_size: int = 20


@dataclass
class SearchResponse(Generic[T]):
    """查询结果"""
    index: str
    query: str
    hits: List[T]
    total_hits: int
    total_pages: int
    page: int
    page_size: int
    facets: Dict[str, Dict[str, int]] = field(default_factory=dict)
    processing_ms: Optional[int] = None

    @property
    def is_first_page(self) -> bool:
        return self.page == 0

    @property
    def is_last_page(self) -> bool:
        return self.total_pages == 0 or self.page >= self.total_pages - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "query": self.query,
            "hits": [hit.to_wire() for hit in self.hits],
            "total_hits": self.total_hits,
            "total_pages": self.total_pages,
            "page": self.page,
            "page_size": self.page_size,
            "facets": self.facets,
            "processing_ms": self.processing_ms,
            "is_first_page": self.is_first_page,
            "is_last_page": self.is_last_page,
        }


class QueryGateway:
    """查询网关（只读）"""

    def __init__(
        self,
        store: IndexStore,
        registry: Optional[IndexSchemaRegistry] = None,
        timeout: float = 3.0,
        default_page_size: int = 20,
    ):
        self.store = store
        self.registry = registry or get_schema_registry()
        self.timeout = timeout
        self.default_page_size = default_page_size

    def _validate(self, request: SearchRequest) -> None:
        if request.page_size <= 0:
            raise InvalidArgument(f"page_size must be > 0, got {request.page_size}")
        if request.page < 0:
            raise InvalidArgument(f"page must be >= 0, got {request.page}")

        if not self.registry.has_index(request.index):
            raise QueryRejected(request.index, f"unknown index '{request.index}'")

        for attribute in list(request.refinements) + list(request.filters):
            if not self.registry.is_facet_attribute(request.index, attribute):
                raise QueryRejected(
                    request.index,
                    f"attribute '{attribute}' is not a facet of index '{request.index}'",
                )

    async def search(self, request: SearchRequest, timeout: Optional[float] = None) -> SearchResponse:
        """
        执行查询

        Args:
            request: 查询请求
            timeout: 本次调用的超时（秒），默认使用网关配置

        Raises:
            InvalidArgument: page / page_size 非法
            QueryRejected: 未知索引或非 facet 属性
            QueryTimeout: 索引存储未在限定时间内响应
        """
        self._validate(request)
        schema = self.registry.get_schema(request.index)
        timeout = self.timeout if timeout is None else timeout

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.store.query(
                    request.index,
                    text=request.query,
                    refinements=request.refinements,
                    filters=request.filters,
                    page=request.page,
                    page_size=request.page_size,
                    facets=schema.facet_attributes,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            SEARCH_ERRORS.labels(index=request.index, error="timeout").inc()
            logger.warning("Search query timed out", index=request.index, timeout_s=timeout)
            raise QueryTimeout(request.index, timeout) from None
        except ShelfFlowException as e:
            SEARCH_ERRORS.labels(index=request.index, error=e.code).inc()
            raise
        finally:
            SEARCH_QUERY_SECONDS.labels(index=request.index).observe(time.perf_counter() - start)

        total_pages = math.ceil(result.total_hits / request.page_size)
        if request.page >= total_pages:
            hits = []
        else:
            hits = [self.registry.validate_hit(request.index, hit) for hit in result.hits]

        logger.debug(
            "Search completed",
            index=request.index,
            page=request.page,
            total_hits=result.total_hits,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )

        return SearchResponse(
            index=request.index,
            query=request.query,
            hits=hits,
            total_hits=result.total_hits,
            total_pages=total_pages,
            page=request.page,
            page_size=request.page_size,
            facets=result.facets,
            processing_ms=result.processing_ms,
        )

    # ===== 便捷查询 =====

    async def search_products(
        self,
        query: str = "",
        category_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 50,
    ) -> SearchResponse[ProductRecord]:
        filters: Dict[str, Any] = {}
        if category_id:
            filters["category_id"] = category_id
        if is_active is not None:
            filters["is_active"] = is_active
        return await self.search(SearchRequest(index="products", query=query, filters=filters, page_size=limit))

    async def search_products_for_pos(
        self,
        query: str = "",
        category_id: Optional[str] = None,
    ) -> SearchResponse[ProductRecord]:
        """收银台商品搜索（只返回在售商品）"""
        return await self.search_products(query, category_id=category_id, is_active=True, limit=50)

    async def search_customers(
        self,
        query: str = "",
        is_active: Optional[bool] = None,
        limit: int = 20,
    ) -> SearchResponse[CustomerRecord]:
        filters = {"is_active": is_active} if is_active is not None else {}
        return await self.search(SearchRequest(index="customers", query=query, filters=filters, page_size=limit))

    async def search_suppliers(
        self,
        query: str = "",
        is_active: Optional[bool] = None,
        limit: int = 50,
    ) -> SearchResponse[SupplierRecord]:
        filters = {"is_active": is_active} if is_active is not None else {}
        return await self.search(SearchRequest(index="suppliers", query=query, filters=filters, page_size=limit))

    async def search_inventory(
        self,
        query: str = "",
        location_id: Optional[str] = None,
        low_stock_only: bool = False,
        limit: int = 100,
    ) -> SearchResponse[InventoryRecord]:
        filters: Dict[str, Any] = {}
        if location_id:
            filters["location_id"] = location_id
        if low_stock_only:
            filters["is_low_stock"] = True
        return await self.search(SearchRequest(index="inventory", query=query, filters=filters, page_size=limit))


class SearchSession:
    """
    交互式搜索会话（最新查询优先）

    新查询会取消仍在进行的旧查询；旧查询返回 None，结果被丢弃
    """

    def __init__(self, gateway: QueryGateway):
        self.gateway = gateway
        self._generation = 0
        self._current: Optional[asyncio.Task] = None
        self.latest: Optional[SearchResponse] = None

    async def search(self, request: SearchRequest, timeout: Optional[float] = None) -> Optional[SearchResponse]:
        self._generation += 1
        generation = self._generation

        if self._current is not None and not self._current.done():
            self._current.cancel()

        task = asyncio.ensure_future(self.gateway.search(request, timeout=timeout))
        self._current = task
        try:
            response = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                # 被更新的查询取代
                return None
            raise

        if generation != self._generation:
            return None
        self.latest = response
        return response

    def cancel(self) -> None:
        """取消进行中的查询"""
        self._generation += 1
        if self._current is not None and not self._current.done():
            self._current.cancel()
