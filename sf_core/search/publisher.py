"""
索引发布器

"发送并确认"语义：
- 每个操作必须收到索引存储的成功确认才算完成
- 暂时性失败（PublishFailure）按指数退避重试，次数有上限
- 重试耗尽后记录为一致性降级告警（权威数据源仍然正确），绝不静默丢弃
- 同一 (collection, objectID) 的操作按提交顺序串行
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from sf_core.utils.errors import PublishFailure
from sf_core.utils.logger import get_logger

from .events import IndexOperation, OperationType
from .executor import KeyedSerialExecutor
from .metrics import INDEX_DEGRADED, INDEX_OPERATIONS, INDEX_PUBLISH_RETRIES
from .store import IndexStore

logger = get_logger(__name__)

# 这些异常视为暂时性 I/O 失败
TRANSIENT_ERRORS = (PublishFailure, asyncio.TimeoutError, ConnectionError, OSError)


@dataclass
class PublishResult:
    """单个操作的发布结果"""
    operation: IndexOperation
    confirmed: bool
    attempts: int
    error: Optional[str] = None


@dataclass
class DegradedOperation:
    """重试耗尽的操作（索引落后于权威数据源）"""
    operation: IndexOperation
    attempts: int
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "collection": self.operation.collection,
            "object_id": self.operation.object_id,
            "op": self.operation.op.value,
            "attempts": self.attempts,
            "error": self.error,
            "failed_at": self.failed_at.isoformat(),
        }


class IndexPublisher:
    """索引发布器"""

    def __init__(
        self,
        store: IndexStore,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        concurrency: int = 16,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._executor = KeyedSerialExecutor(concurrency=concurrency, name="index-publisher")
        self.degraded: List[DegradedOperation] = []

    def backoff_delay(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间：base * 2^(attempt-1)，有上限"""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    async def pause(self, attempt: int) -> None:
        """按退避策略等待（投影器读取权威数据源重试时共用）"""
        await self._sleep(self.backoff_delay(attempt))

    def submit(self, operation: IndexOperation) -> asyncio.Future:
        """提交操作（按 objectID 排队），返回 Future[PublishResult]"""
        return self._executor.submit(operation.key, lambda: self.publish(operation))

    async def publish(self, operation: IndexOperation) -> PublishResult:
        """
        立即发布单个操作（带重试）

        调用方需自行保证同一 objectID 不并发调用；一般应使用 submit()
        """
        attempt = 0
        last_error: Optional[str] = None

        while attempt < self.max_attempts:
            attempt += 1
            start = time.perf_counter()
            try:
                await self._apply(operation)
            except TRANSIENT_ERRORS as e:
                last_error = str(e)
                retryable = getattr(e, "retryable", True)
                INDEX_OPERATIONS.labels(
                    collection=operation.collection, op=operation.op.value, result="error"
                ).inc()

                if not retryable or attempt >= self.max_attempts:
                    break

                delay = self.backoff_delay(attempt)
                INDEX_PUBLISH_RETRIES.labels(collection=operation.collection).inc()
                logger.warning(
                    "Index publish failed, retrying",
                    collection=operation.collection,
                    object_id=operation.object_id,
                    op=operation.op.value,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    retry_in_s=delay,
                    error=last_error,
                )
                await self.pause(attempt)
            except Exception as e:
                # 非 I/O 错误不重试，但同样留下降级记录
                self._degrade(operation, attempt, f"{type(e).__name__}: {e}")
                raise
            else:
                INDEX_OPERATIONS.labels(
                    collection=operation.collection, op=operation.op.value, result="success"
                ).inc()
                logger.debug(
                    "Index operation confirmed",
                    collection=operation.collection,
                    object_id=operation.object_id,
                    op=operation.op.value,
                    attempt=attempt,
                    latency_ms=int((time.perf_counter() - start) * 1000),
                )
                return PublishResult(operation=operation, confirmed=True, attempts=attempt)

        return self._degrade(operation, attempt, last_error or "unknown error")

    async def _apply(self, operation: IndexOperation) -> None:
        if operation.op == OperationType.UPSERT:
            await self.store.upsert(operation.collection, operation.object_id, operation.record or {})
        else:
            await self.store.delete(operation.collection, operation.object_id)

    def _degrade(self, operation: IndexOperation, attempts: int, error: str) -> PublishResult:
        self.degraded.append(DegradedOperation(operation=operation, attempts=attempts, error=error))
        INDEX_DEGRADED.labels(collection=operation.collection).inc()
        logger.error(
            "Index publish exhausted retries, index is behind the authoritative store",
            collection=operation.collection,
            object_id=operation.object_id,
            op=operation.op.value,
            attempts=attempts,
            error=error,
            result="degraded",
        )
        return PublishResult(operation=operation, confirmed=False, attempts=attempts, error=error)

    def take_degraded(self) -> List[DegradedOperation]:
        """取出并清空降级列表（供运维重放）"""
        degraded, self.degraded = self.degraded, []
        return degraded

    def is_idle(self) -> bool:
        return self._executor.is_idle()

    async def drain(self) -> None:
        await self._executor.join()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        await self._executor.shutdown(timeout=timeout)
