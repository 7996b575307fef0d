"""
级联重投影队列

被引用实体（类目、供应商、商品、变体、门店）变更后，
所有反规范化了它的记录都要重新投影。

- 依赖记录按批枚举并提交，每批确认完成后再拉取下一批
- 同一引用实体的待处理 fan-out 合并：尚未开始则直接跳过，
  已在执行则在结束后再完整跑一轮
- 触发变更本身的投影不等待 fan-out
- 重投影失败的依赖记录、或枚举依赖失败的引用实体交给 on_failed 记录，供之后重放
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Set, Tuple

from sf_core.utils.logger import get_logger

from .events import ChangeEvent, ChangeType, EntityKind
from .metrics import FANOUT_REPROJECTIONS
from .references import ReferenceSource

logger = get_logger(__name__)

ReferenceKey = Tuple[EntityKind, str]
Reproject = Callable[[EntityKind, str], Awaitable[Any]]
# (变更事件, 重放时是否级联, 失败原因)
OnFailed = Callable[[ChangeEvent, bool, BaseException], None]


class ReprojectionQueue:
    """级联重投影队列"""

    def __init__(self, source: ReferenceSource, reproject: Reproject, on_failed: OnFailed, batch_size: int = 100):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.source = source
        self.batch_size = batch_size
        self._reproject = reproject
        self._on_failed = on_failed
        self._tasks: Dict[ReferenceKey, asyncio.Task] = {}
        self._started: Set[ReferenceKey] = set()
        self._rerun: Set[ReferenceKey] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def is_idle(self) -> bool:
        return not self._tasks

    def schedule(self, kind: EntityKind, entity_id: str) -> bool:
        """
        调度 fan-out

        Returns:
            True 表示新建了 fan-out；False 表示已合并到进行中的 fan-out
        """
        key = (kind, str(entity_id))
        if key in self._tasks:
            if key in self._started:
                self._rerun.add(key)
            logger.debug("Fan-out coalesced", reference_kind=kind.value, reference_id=key[1])
            return False

        self._tasks[key] = asyncio.create_task(self._run(key))
        return True

    async def _run(self, key: ReferenceKey) -> None:
        kind, entity_id = key
        try:
            while True:
                self._started.add(key)
                self._rerun.discard(key)
                total = await self._fan_out(kind, entity_id)
                logger.info(
                    "Fan-out completed",
                    reference_kind=kind.value,
                    reference_id=entity_id,
                    reprojected=total,
                )
                if key not in self._rerun:
                    break
        except Exception as e:
            logger.error(
                "Fan-out failed",
                reference_kind=kind.value,
                reference_id=entity_id,
                error=str(e),
                exc_info=True,
            )
            self._on_failed(ChangeEvent(kind, entity_id, ChangeType.UPDATE), True, e)
        finally:
            self._tasks.pop(key, None)
            self._started.discard(key)
            self._rerun.discard(key)

    async def _fan_out(self, kind: EntityKind, entity_id: str) -> int:
        total = 0
        async for batch in self.source.dependents(kind, entity_id, batch_size=self.batch_size):
            results = await asyncio.gather(
                *(self._reproject(dependent_kind, dependent_id) for dependent_kind, dependent_id in batch),
                return_exceptions=True,
            )
            for (dependent_kind, dependent_id), result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.error(
                        "Dependent re-projection failed",
                        reference_kind=kind.value,
                        reference_id=entity_id,
                        dependent_kind=dependent_kind.value,
                        dependent_id=dependent_id,
                        error=str(result),
                    )
                    self._on_failed(ChangeEvent(dependent_kind, dependent_id, ChangeType.UPDATE), False, result)
            FANOUT_REPROJECTIONS.labels(reference_kind=kind.value).inc(len(batch))
            total += len(batch)
        return total

    async def drain(self) -> None:
        """等待所有 fan-out 完成"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
