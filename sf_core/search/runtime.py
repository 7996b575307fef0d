"""
搜索层运行时装配

核心组件不持有全局单例：索引存储与引用数据源都通过构造参数注入，
只有这里按配置创建它们
"""
from dataclasses import dataclass
from typing import Optional

from sf_core.config import Settings, get_settings
from sf_core.database import DatabaseManager
from sf_core.utils.logger import get_logger

from .algolia_store import AlgoliaIndexStore
from .gateway import QueryGateway
from .projector import SyncProjector
from .publisher import IndexPublisher
from .references import ReferenceSource, SqlAlchemyReferenceSource
from .schema import IndexSchemaRegistry, get_schema_registry
from .stock import StockAvailabilityResolver
from .store import IndexStore, InMemoryIndexStore

logger = get_logger(__name__)


@dataclass
class SearchRuntime:
    """搜索层组件集合"""
    settings: Settings
    registry: IndexSchemaRegistry
    store: IndexStore
    source: ReferenceSource
    publisher: IndexPublisher
    projector: SyncProjector
    gateway: QueryGateway
    resolver: StockAvailabilityResolver
    db_manager: Optional[DatabaseManager] = None

    async def close(self) -> None:
        """等待在途操作完成后释放连接"""
        await self.projector.shutdown(timeout=30.0)
        await self.store.close()
        if self.db_manager is not None:
            await self.db_manager.close()


def build_store(settings: Settings) -> IndexStore:
    """按配置创建索引存储"""
    if settings.search_backend == "algolia":
        return AlgoliaIndexStore(
            app_id=settings.algolia_app_id,
            api_key=settings.algolia_api_key,
            index_prefix=settings.search_index_prefix,
            rate_limit=settings.search_rate_limit,
            timeout=settings.search_request_timeout,
        )
    return InMemoryIndexStore()


def build_runtime(
    settings: Optional[Settings] = None,
    store: Optional[IndexStore] = None,
    source: Optional[ReferenceSource] = None,
) -> SearchRuntime:
    """
    装配搜索层

    Args:
        settings: 配置，默认读取环境变量
        store: 索引存储，默认按 search_backend 创建
        source: 引用数据源，默认使用权威数据库
    """
    settings = settings or get_settings()
    registry = get_schema_registry()
    store = store or build_store(settings)

    db_manager = None
    if source is None:
        db_manager = DatabaseManager(settings)
        source = SqlAlchemyReferenceSource(db_manager)

    publisher = IndexPublisher(
        store,
        max_attempts=settings.publish_max_attempts,
        backoff_base=settings.publish_backoff_base_seconds,
        backoff_max=settings.publish_backoff_max_seconds,
        concurrency=settings.projector_concurrency,
    )
    projector = SyncProjector(
        source,
        publisher,
        registry=registry,
        concurrency=settings.projector_concurrency,
        fanout_batch_size=settings.fanout_batch_size,
    )
    gateway = QueryGateway(
        store,
        registry=registry,
        timeout=settings.query_timeout_seconds,
        default_page_size=settings.default_page_size,
    )

    logger.info(
        "Search runtime assembled",
        backend=settings.search_backend,
        projector_concurrency=settings.projector_concurrency,
        query_timeout_s=settings.query_timeout_seconds,
    )
    return SearchRuntime(
        settings=settings,
        registry=registry,
        store=store,
        source=source,
        publisher=publisher,
        projector=projector,
        gateway=gateway,
        resolver=projector.mapper.resolver,
        db_manager=db_manager,
    )
