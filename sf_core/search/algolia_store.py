"""
Algolia 索引存储（REST API）

- 写入：PUT /1/indexes/{index}/{objectID}，DELETE /1/indexes/{index}/{objectID}
- 查询：POST /1/indexes/*/queries（多查询，disjunctive facet 计数用附加查询实现）
- 设置：PUT /1/indexes/{index}/settings；清空：POST /1/indexes/{index}/clear

错误映射：
- 写入：429 / 5xx / 网络错误 -> PublishFailure（可重试）；其他 4xx -> PublishFailure（不可重试）
- 查询：超时 -> QueryTimeout；4xx -> QueryRejected；其他 -> ServiceUnavailableError
"""
import json
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote, urlencode

import httpx
from aiolimiter import AsyncLimiter

from sf_core.utils.errors import PublishFailure, QueryRejected, QueryTimeout, ServiceUnavailableError
from sf_core.utils.logger import get_logger

from .schema import facet_value
from .store import Refinements, StoreQueryResult

logger = get_logger(__name__)


def _truncate_for_log(obj: Any, max_len: int = 2000) -> Optional[str]:
    """截断对象用于日志记录"""
    if obj is None:
        return None
    try:
        s = json.dumps(obj, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        s = str(obj)
    if len(s) > max_len:
        return s[:max_len] + f"... [truncated, total {len(s)} chars]"
    return s


def _facet_filters(
    refinements: Optional[Refinements],
    filters: Optional[Mapping[str, Any]],
    exclude: Optional[str] = None,
) -> List[List[str]]:
    """内层列表为 OR，外层列表为 AND"""
    groups: List[List[str]] = []
    for attribute, values in (refinements or {}).items():
        if attribute == exclude:
            continue
        group = sorted({f"{attribute}:{facet_value(value)}" for value in values})
        if group:
            groups.append(group)
    for attribute, value in (filters or {}).items():
        groups.append([f"{attribute}:{facet_value(value)}"])
    return groups


def _encode_params(params: Dict[str, Any]) -> str:
    encoded = {}
    for key, value in params.items():
        encoded[key] = json.dumps(value) if isinstance(value, (list, dict)) else value
    return urlencode(encoded)


class AlgoliaIndexStore:
    """Algolia 索引存储"""

    def __init__(
        self,
        app_id: str,
        api_key: str,
        index_prefix: str = "",
        rate_limit: float = 50,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            app_id: Algolia Application ID
            api_key: Admin API Key（需要写权限）
            index_prefix: 索引名前缀（区分环境）
            rate_limit: 每秒请求数上限
            timeout: HTTP 超时（秒）
            transport: 自定义传输层（测试用 httpx.MockTransport）
        """
        if not app_id or not api_key:
            raise ValueError("Algolia app_id and api_key are required")

        self.app_id = app_id
        self.index_prefix = index_prefix
        self.base_url = f"https://{app_id}.algolia.net"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-Algolia-Application-Id": app_id,
                "X-Algolia-API-Key": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self.rate_limiter = AsyncLimiter(max_rate=rate_limit, time_period=1.0)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """关闭客户端连接"""
        await self.client.aclose()

    def index_name(self, collection: str) -> str:
        return f"{self.index_prefix}{collection}"

    def _object_path(self, collection: str, object_id: str) -> str:
        return f"/1/indexes/{quote(self.index_name(collection), safe='')}/{quote(object_id, safe='')}"

    async def _send(self, method: str, endpoint: str, data: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """发送请求（限流 + 请求日志），不做状态码判断"""
        await self.rate_limiter.acquire()

        request_id = str(uuid.uuid4())
        api_start = time.perf_counter()

        logger.debug(
            "Algolia API request",
            direction="outbound",
            method=method,
            endpoint=endpoint,
            request_id=request_id,
            request_body=_truncate_for_log(data),
        )

        try:
            response = await self.client.request(method, endpoint, json=data, headers={"X-Request-Id": request_id})
        except httpx.HTTPError as e:
            logger.error(
                "Algolia API request failed",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                request_id=request_id,
                latency_ms=int((time.perf_counter() - api_start) * 1000),
                error=str(e),
                error_type=type(e).__name__,
                result="error",
            )
            raise

        latency_ms = int((time.perf_counter() - api_start) * 1000)
        if response.is_success:
            logger.debug(
                "Algolia API response",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                latency_ms=latency_ms,
                request_id=request_id,
                result="success",
            )
        else:
            logger.error(
                "Algolia API error response",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                latency_ms=latency_ms,
                request_id=request_id,
                response_body=response.text[:2000],
                result="error",
            )
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return str(response.json().get("message") or response.text)
        except ValueError:
            return response.text or f"HTTP {response.status_code}"

    # ===== 写入 =====

    async def _write(self, method: str, endpoint: str, collection: str, object_id: str,
                     data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._send(method, endpoint, data)
        except httpx.HTTPError as e:
            raise PublishFailure(collection, object_id, f"{type(e).__name__}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise PublishFailure(collection, object_id, f"HTTP {response.status_code}: {self._error_message(response)}")
        if not response.is_success:
            raise PublishFailure(
                collection,
                object_id,
                f"HTTP {response.status_code}: {self._error_message(response)}",
                retryable=False,
            )
        return response.json() if response.content else {}

    async def upsert(self, collection: str, object_id: str, record: Dict[str, Any]) -> None:
        body = dict(record)
        body["objectID"] = object_id
        await self._write("PUT", self._object_path(collection, object_id), collection, object_id, body)

    async def delete(self, collection: str, object_id: str) -> None:
        # 删除不存在的对象 Algolia 也返回成功
        await self._write("DELETE", self._object_path(collection, object_id), collection, object_id)

    async def set_settings(self, collection: str, settings: Dict[str, Any]) -> None:
        endpoint = f"/1/indexes/{quote(self.index_name(collection), safe='')}/settings"
        await self._write("PUT", endpoint, collection, "settings", settings)

    async def clear(self, collection: str) -> None:
        endpoint = f"/1/indexes/{quote(self.index_name(collection), safe='')}/clear"
        await self._write("POST", endpoint, collection, "*", {})

    # ===== 查询 =====

    async def query(
        self,
        collection: str,
        text: str = "",
        refinements: Optional[Refinements] = None,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 0,
        page_size: int = 20,
        facets: Sequence[str] = (),
    ) -> StoreQueryResult:
        index_name = self.index_name(collection)
        refined = [attribute for attribute, values in (refinements or {}).items() if values]

        requests = [{
            "indexName": index_name,
            "params": _encode_params({
                "query": text,
                "page": page,
                "hitsPerPage": page_size,
                "facets": list(facets),
                "facetFilters": _facet_filters(refinements, filters),
            }),
        }]
        # disjunctive facet：每个已选 attribute 附加一次不含自身 refinement 的计数查询
        for attribute in refined:
            if attribute not in facets:
                continue
            requests.append({
                "indexName": index_name,
                "params": _encode_params({
                    "query": text,
                    "page": 0,
                    "hitsPerPage": 0,
                    "facets": [attribute],
                    "facetFilters": _facet_filters(refinements, filters, exclude=attribute),
                    "analytics": "false",
                }),
            })

        try:
            response = await self._send("POST", "/1/indexes/*/queries", {"requests": requests})
        except httpx.TimeoutException as e:
            raise QueryTimeout(collection, self.client.timeout.read or 0.0) from e
        except httpx.HTTPError as e:
            raise ServiceUnavailableError(
                code="SEARCH_UNAVAILABLE",
                detail=f"index store unreachable: {type(e).__name__}",
            ) from e

        if 400 <= response.status_code < 500 and response.status_code != 429:
            raise QueryRejected(collection, self._error_message(response))
        if not response.is_success:
            raise ServiceUnavailableError(
                code="SEARCH_UNAVAILABLE",
                detail=f"index store returned HTTP {response.status_code}",
            )

        results = response.json().get("results", [])
        main = results[0] if results else {}

        facet_counts: Dict[str, Dict[str, int]] = {
            attribute: dict(values)
            for attribute, values in (main.get("facets") or {}).items()
        }
        for extra in results[1:]:
            for attribute, values in (extra.get("facets") or {}).items():
                facet_counts[attribute] = dict(values)

        return StoreQueryResult(
            hits=list(main.get("hits", [])),
            total_hits=int(main.get("nbHits", 0)),
            facets=facet_counts,
            processing_ms=main.get("processingTimeMS"),
        )
