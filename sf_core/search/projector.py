"""
同步投影器

实体变更事件 -> 读取引用实体 -> 派生库存状态 -> schema 校验 -> 发布 upsert/delete

两级串行：
1. 构建阶段按 (entity_kind, entity_id) 串行；每个集合的 objectID 都等于实体主键，
   所以同一 objectID 的构建不会互相超越
2. 发布阶段按 (collection, objectID) 串行（IndexPublisher）
构建任务在同步代码中把操作提交给发布器，因此同一 objectID 的发布顺序与事件提交顺序一致

读取权威数据源失败时按发布器的退避策略有限重试；
重试耗尽的 fan-out 重投影记入 deferred，待数据源恢复后重放
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sf_core.utils.errors import ReferenceNotFound, SchemaViolation, SourceUnavailable
from sf_core.utils.logger import LogContext, get_logger

from .events import (
    COLLECTION_BY_KIND, REFERENCED_KINDS,
    ChangeEvent, ChangeType, EntityKind, IndexOperation,
)
from .executor import KeyedSerialExecutor
from .fanout import ReprojectionQueue
from .mappers import RecordMapper
from .metrics import DEFERRED_CHANGES, INDEX_SCHEMA_VIOLATIONS, INVENTORY_OVERSELL
from .publisher import IndexPublisher, PublishResult
from .references import TRANSIENT_SOURCE_ERRORS, ReferenceSource
from .schema import IndexSchemaRegistry, get_schema_registry

logger = get_logger(__name__)


@dataclass
class ProjectionOutcome:
    """单个变更事件的投影结果"""
    event: ChangeEvent
    operations: List[IndexOperation] = field(default_factory=list)
    results: List[PublishResult] = field(default_factory=list)
    quarantined: Optional[str] = None
    fanout_scheduled: bool = False
    _pending: List[asyncio.Future] = field(default_factory=list, repr=False)

    @property
    def published(self) -> int:
        return sum(1 for result in self.results if result.confirmed)

    @property
    def degraded(self) -> int:
        return sum(1 for result in self.results if not result.confirmed)

    @property
    def confirmed(self) -> bool:
        """所有操作均已被索引存储确认"""
        return self.quarantined is None and self.published == len(self.operations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event.event_id,
            "entity_kind": self.event.entity_kind.value,
            "entity_id": self.event.entity_id,
            "change_type": self.event.change_type.value,
            "operations": [
                {"op": op.op.value, "collection": op.collection, "object_id": op.object_id}
                for op in self.operations
            ],
            "published": self.published,
            "degraded": self.degraded,
            "quarantined": self.quarantined,
            "fanout_scheduled": self.fanout_scheduled,
        }


@dataclass
class QuarantinedOperation:
    """校验失败的变更（等待人工修复后重放）"""
    event: ChangeEvent
    error: str
    cascade: bool = True
    quarantined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = self.event.to_dict()
        data["error"] = self.error
        data["quarantined_at"] = self.quarantined_at.isoformat()
        return data


@dataclass
class DeferredChange:
    """读取权威数据源失败的变更（数据源恢复后重放）"""
    event: ChangeEvent
    cascade: bool
    error: str
    deferred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = self.event.to_dict()
        data["cascade"] = self.cascade
        data["error"] = self.error
        data["deferred_at"] = self.deferred_at.isoformat()
        return data


def _split(items: List[Any], event_ids: Optional[Iterable[str]]) -> Tuple[List[Any], List[Any]]:
    """按事件 ID 拆分为 (待重放, 保留)，event_ids 为空时全部重放"""
    wanted = set(event_ids) if event_ids is not None else None
    replay, keep = [], []
    for item in items:
        if wanted is None or item.event.event_id in wanted:
            replay.append(item)
        else:
            keep.append(item)
    return replay, keep


class SyncProjector:
    """同步投影器（索引存储的唯一写入方）"""

    def __init__(
        self,
        source: ReferenceSource,
        publisher: IndexPublisher,
        registry: Optional[IndexSchemaRegistry] = None,
        mapper: Optional[RecordMapper] = None,
        concurrency: int = 16,
        fanout_batch_size: int = 100,
    ):
        self.source = source
        self.publisher = publisher
        self.registry = registry or get_schema_registry()
        self.mapper = mapper or RecordMapper()
        self._builder = KeyedSerialExecutor(concurrency=concurrency, name="projector")
        self.fanout = ReprojectionQueue(source, self._reproject, self._defer, batch_size=fanout_batch_size)
        self.quarantined: List[QuarantinedOperation] = []
        self.deferred: List[DeferredChange] = []

    # ===== 入口 =====

    def submit(self, event: ChangeEvent, cascade: bool = True) -> asyncio.Future:
        """
        提交事件（不等待发布确认）

        Returns:
            Future[ProjectionOutcome]，在操作交给发布器后完成
        """
        key = (event.entity_kind, event.entity_id)
        return self._builder.submit(key, lambda: self._project(event, cascade))

    async def handle(self, event: ChangeEvent, cascade: bool = True) -> ProjectionOutcome:
        """处理事件并等待所有操作发布完成（确认或降级）"""
        return await self.settle(self.submit(event, cascade))

    async def settle(self, future: asyncio.Future) -> ProjectionOutcome:
        """等待 submit() 返回的构建结果，再等待其所有操作被确认或降级"""
        outcome = await future
        if outcome._pending:
            outcome.results = list(await asyncio.gather(*outcome._pending))
            outcome._pending = []
        return outcome

    async def handle_many(self, events: Iterable[ChangeEvent]) -> List[ProjectionOutcome]:
        """按顺序提交一组事件，并发等待结果"""
        return list(await asyncio.gather(*(self.handle(event) for event in events)))

    async def replay_quarantined(self, event_ids: Optional[Iterable[str]] = None) -> List[ProjectionOutcome]:
        """
        重放隔离的变更（运维修复权威数据后调用）

        Args:
            event_ids: 仅重放指定事件；为空时重放全部
        """
        replay, self.quarantined = _split(self.quarantined, event_ids)
        logger.info("Replaying quarantined changes", count=len(replay))
        return await self._replay(replay)

    async def replay_deferred(self, event_ids: Optional[Iterable[str]] = None) -> List[ProjectionOutcome]:
        """重放因数据源不可用而搁置的变更；仍然失败的会重新搁置"""
        replay, self.deferred = _split(self.deferred, event_ids)
        logger.info("Replaying deferred changes", count=len(replay))
        return await self._replay(replay)

    async def _replay(self, items: List[Any]) -> List[ProjectionOutcome]:
        results = await asyncio.gather(
            *(self.handle(item.event, cascade=item.cascade) for item in items),
            return_exceptions=True,
        )
        outcomes = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                self._defer(item.event, item.cascade, result)
            else:
                outcomes.append(result)
        return outcomes

    def is_idle(self) -> bool:
        return self._builder.is_idle() and self.fanout.is_idle() and self.publisher.is_idle()

    async def drain(self) -> None:
        """等待所有已提交的构建、fan-out 与发布完成"""
        while True:
            await self._builder.join()
            await self.fanout.drain()
            await self.publisher.drain()
            if self.is_idle():
                return

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        await self._builder.shutdown(timeout=timeout)
        await self.fanout.shutdown()
        await self.publisher.shutdown(timeout=timeout)

    # ===== 构建 =====

    async def _reproject(self, kind: EntityKind, entity_id: str) -> ProjectionOutcome:
        # fan-out 触发的重投影不再级联
        return await self.handle(ChangeEvent(kind, entity_id, ChangeType.UPDATE), cascade=False)

    async def _project(self, event: ChangeEvent, cascade: bool) -> ProjectionOutcome:
        collection = COLLECTION_BY_KIND.get(event.entity_kind)
        outcome = ProjectionOutcome(event=event)

        with LogContext(trace_id=event.event_id, index=collection):
            try:
                outcome.operations = await self._build_operations(event)
            except SchemaViolation as e:
                self._quarantine(event, e, cascade)
                outcome.quarantined = e.detail
                return outcome

            for operation in outcome.operations:
                outcome._pending.append(self.publisher.submit(operation))

            if cascade and event.entity_kind in REFERENCED_KINDS and event.change_type != ChangeType.CREATE:
                outcome.fanout_scheduled = self.fanout.schedule(event.entity_kind, event.entity_id)

            logger.debug(
                "Change projected",
                entity_kind=event.entity_kind.value,
                entity_id=event.entity_id,
                change_type=event.change_type.value,
                operations=len(outcome.operations),
                fanout_scheduled=outcome.fanout_scheduled,
            )
        return outcome

    async def _build_operations(self, event: ChangeEvent) -> List[IndexOperation]:
        collection = COLLECTION_BY_KIND.get(event.entity_kind)
        if collection is None:
            # 仅被引用的实体没有自己的索引记录
            return []

        if event.is_tombstone:
            return [IndexOperation.delete(collection, event.entity_id)]

        if event.payload is not None:
            entity = dict(event.payload)
        else:
            entity = await self._load(event.entity_kind, event.entity_id)

        if entity is None:
            logger.info(
                "Entity no longer exists, removing from index",
                entity_kind=event.entity_kind.value,
                entity_id=event.entity_id,
            )
            return [IndexOperation.delete(collection, event.entity_id)]

        entity["id"] = event.entity_id
        record = await self._build_record(event.entity_kind, entity)
        validated = self.registry.validate(collection, record)
        return [IndexOperation.upsert(collection, validated.objectID, validated.to_wire())]

    async def _build_record(self, kind: EntityKind, entity: Dict[str, Any]) -> Dict[str, Any]:
        if kind == EntityKind.PRODUCT:
            category = await self._load_reference(EntityKind.CATEGORY, entity.get("category_id"), entity)
            supplier = await self._load_reference(EntityKind.SUPPLIER, entity.get("supplier_id"), entity)
            return self.mapper.product_record(entity, category, supplier)

        if kind == EntityKind.CUSTOMER:
            return self.mapper.customer_record(entity)

        if kind == EntityKind.SUPPLIER:
            return self.mapper.supplier_record(entity)

        product = await self._load_reference(EntityKind.PRODUCT, entity.get("product_id"), entity)
        variant = await self._load_reference(EntityKind.VARIANT, entity.get("variant_id"), entity)
        location = await self._load_reference(EntityKind.LOCATION, entity.get("location_id"), entity)
        record, stock = self.mapper.inventory_record(entity, product, variant, location)

        if stock.is_oversold:
            INVENTORY_OVERSELL.labels(location_id=record["location_id"]).inc()
            logger.warning(
                "Reserved quantity exceeds on-hand quantity",
                object_id=record["objectID"],
                location_id=record["location_id"],
                quantity=stock.quantity,
                reserved_quantity=stock.reserved_quantity,
                available=stock.available,
                result="oversell_race",
            )
        return record

    async def _load(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        """
        读取权威实体，暂时性失败按发布器的退避策略重试

        Raises:
            SourceUnavailable: 重试耗尽
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.source.load(kind, entity_id)
            except TRANSIENT_SOURCE_ERRORS as e:
                if attempt >= self.publisher.max_attempts:
                    raise SourceUnavailable(kind.value, entity_id, str(e) or type(e).__name__, attempt) from e
                logger.warning(
                    "Authoritative store read failed, retrying",
                    entity_kind=kind.value,
                    entity_id=entity_id,
                    attempt=attempt,
                    max_attempts=self.publisher.max_attempts,
                    retry_in_s=self.publisher.backoff_delay(attempt),
                    error=str(e),
                )
                await self.publisher.pause(attempt)

    async def _load_reference(
        self,
        kind: EntityKind,
        entity_id: Optional[Any],
        dependent: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        if not entity_id:
            return None

        reference = await self._load(kind, str(entity_id))
        if reference is None:
            error = ReferenceNotFound(kind.value, str(entity_id))
            logger.warning(
                "Referenced entity missing, denormalized name left empty",
                code=error.code,
                reference_kind=kind.value,
                reference_id=str(entity_id),
                dependent_id=str(dependent.get("id")),
            )
        return reference

    def _quarantine(self, event: ChangeEvent, error: SchemaViolation, cascade: bool) -> None:
        collection = COLLECTION_BY_KIND.get(event.entity_kind, event.entity_kind.value)
        self.quarantined.append(QuarantinedOperation(event=event, error=error.detail, cascade=cascade))
        INDEX_SCHEMA_VIOLATIONS.labels(collection=collection).inc()
        logger.error(
            "Projected record violates index schema, quarantined",
            entity_kind=event.entity_kind.value,
            entity_id=event.entity_id,
            change_type=event.change_type.value,
            code=error.code,
            error=error.detail,
            result="quarantined",
        )

    def _defer(self, event: ChangeEvent, cascade: bool, error: BaseException) -> None:
        self.deferred.append(DeferredChange(event=event, cascade=cascade, error=str(error) or type(error).__name__))
        DEFERRED_CHANGES.labels(entity_kind=event.entity_kind.value).inc()
        logger.error(
            "Change could not be projected, deferred for replay",
            entity_kind=event.entity_kind.value,
            entity_id=event.entity_id,
            cascade=cascade,
            error=str(error),
            result="deferred",
        )
