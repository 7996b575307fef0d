"""
索引运维操作

- configure_indexes: 推送四个索引集合的设置（可搜索字段、facet、排序）
- sync_all: 全量重投影，用于首次建索引或降级后的修复

全量同步也走投影器：派生字段、schema 校验、发布重试与增量同步完全一致
"""
import asyncio
from typing import Any, Dict, Iterable, Optional

from sf_core.utils.errors import InvalidArgument
from sf_core.utils.logger import get_logger

from .events import COLLECTION_BY_KIND, ChangeEvent, ChangeType, EntityKind
from .projector import SyncProjector
from .references import ReferenceSource
from .schema import IndexSchemaRegistry, get_schema_registry
from .store import IndexStore

logger = get_logger(__name__)

KIND_BY_COLLECTION = {collection: kind for kind, collection in COLLECTION_BY_KIND.items()}


async def configure_indexes(
    store: IndexStore,
    registry: Optional[IndexSchemaRegistry] = None,
) -> Dict[str, Any]:
    """推送所有索引集合的设置"""
    registry = registry or get_schema_registry()
    configured = []
    for name in registry.names():
        settings = registry.get_schema(name).index_settings()
        await store.set_settings(name, settings)
        configured.append(name)
        logger.info("Index settings applied", index=name, settings=settings)
    return {"success": True, "indexes": configured}


async def _sync_collection(
    projector: SyncProjector,
    source: ReferenceSource,
    kind: EntityKind,
    batch_size: int,
) -> Dict[str, Any]:
    collection = COLLECTION_BY_KIND[kind]
    count = failed = quarantined = 0

    try:
        async for batch in source.iter_all(kind, batch_size=batch_size):
            events = [
                ChangeEvent(kind, str(entity["id"]), ChangeType.UPDATE, payload=entity)
                for entity in batch
            ]
            outcomes = await asyncio.gather(
                *(projector.handle(event, cascade=False) for event in events),
                return_exceptions=True,
            )
            for event, outcome in zip(events, outcomes):
                if isinstance(outcome, Exception):
                    failed += 1
                    logger.warning("Entity could not be synced", index=collection, entity_id=event.entity_id, error=str(outcome))
                elif outcome.quarantined is not None:
                    quarantined += 1
                elif outcome.confirmed:
                    count += 1
                else:
                    failed += 1
    except Exception as e:
        logger.error("Bulk sync failed", index=collection, synced=count, error=str(e), exc_info=True)
        return {"success": False, "count": count, "failed": failed, "quarantined": quarantined, "error": str(e)}

    logger.info(
        "Bulk sync completed",
        index=collection,
        synced=count,
        failed=failed,
        quarantined=quarantined,
    )
    return {
        "success": failed == 0 and quarantined == 0,
        "count": count,
        "failed": failed,
        "quarantined": quarantined,
    }


async def sync_all(
    projector: SyncProjector,
    source: ReferenceSource,
    collections: Optional[Iterable[str]] = None,
    batch_size: int = 100,
) -> Dict[str, Dict[str, Any]]:
    """
    全量同步

    Args:
        projector: 投影器
        source: 权威数据源
        collections: 仅同步指定集合，默认全部
        batch_size: 每批读取的实体数

    Returns:
        {collection: {success, count, failed, quarantined, error?}}
    """
    names = list(collections) if collections is not None else list(KIND_BY_COLLECTION)
    unknown = [name for name in names if name not in KIND_BY_COLLECTION]
    if unknown:
        raise InvalidArgument(f"unknown collections: {', '.join(unknown)}")

    results = await asyncio.gather(*(
        _sync_collection(projector, source, KIND_BY_COLLECTION[name], batch_size)
        for name in names
    ))
    return dict(zip(names, results))
