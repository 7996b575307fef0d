"""
按 key 串行的异步执行器

- 同一 key 的任务严格按提交顺序执行（单写者队列）
- 不同 key 之间并发，总并发数由信号量限制
- 不使用全局锁
"""
import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Hashable, Optional, Tuple

from sf_core.utils.logger import get_logger

logger = get_logger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


def _consume_exception(future: asyncio.Future) -> None:
    # 异常已在 worker 中记录；无人 await 时避免 "exception was never retrieved"
    if not future.cancelled():
        future.exception()


class KeyedSerialExecutor:
    """按 key 串行执行器"""

    def __init__(self, concurrency: int = 16, name: str = "executor"):
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self.name = name
        self._semaphore = asyncio.Semaphore(concurrency)
        self._queues: Dict[Hashable, Deque[Tuple[JobFactory, asyncio.Future]]] = {}
        self._workers: Dict[Hashable, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def is_idle(self) -> bool:
        return not self._workers

    def submit(self, key: Hashable, job: JobFactory) -> asyncio.Future:
        """
        提交任务，立即返回 Future

        Args:
            key: 串行化 key
            job: 无参协程工厂（每个任务只调用一次）
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        future.add_done_callback(_consume_exception)

        self._queues.setdefault(key, deque()).append((job, future))
        if key not in self._workers:
            self._idle.clear()
            self._workers[key] = asyncio.create_task(self._run_key(key))
        return future

    async def _run_key(self, key: Hashable) -> None:
        queue = self._queues[key]
        try:
            while queue:
                job, future = queue.popleft()
                try:
                    async with self._semaphore:
                        result = await job()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    logger.error(
                        "Serialized job failed",
                        executor=self.name,
                        key=str(key),
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
        finally:
            # 取消时未执行的任务也要结束其 Future
            while queue:
                _, future = queue.popleft()
                future.cancel()
            self._queues.pop(key, None)
            self._workers.pop(key, None)
            if not self._workers:
                self._idle.set()

    async def join(self) -> None:
        """等待当前所有 key 的任务执行完毕"""
        await self._idle.wait()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """等待任务完成；超时后取消剩余 worker"""
        try:
            await asyncio.wait_for(self.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Executor shutdown timed out, cancelling workers", executor=self.name)
            workers = list(self._workers.values())
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
