"""
ShelfFlow 搜索索引与库存一致性层
"""
from .events import ChangeEvent, ChangeType, EntityKind, IndexOperation, OperationType
from .gateway import QueryGateway, SearchRequest, SearchResponse, SearchSession
from .projector import ProjectionOutcome, SyncProjector
from .publisher import DegradedOperation, IndexPublisher, PublishResult
from .refinement import PaginationInfo, RefinementState, RefinementStateManager
from .references import InMemoryReferenceSource, ReferenceSource, SqlAlchemyReferenceSource
from .schema import IndexSchema, IndexSchemaRegistry, get_schema_registry
from .stock import StockAvailability, StockAvailabilityResolver, check_live_availability, resolve_stock
from .store import IndexStore, InMemoryIndexStore, StoreQueryResult

__all__ = [
    "ChangeEvent",
    "ChangeType",
    "EntityKind",
    "IndexOperation",
    "OperationType",
    "QueryGateway",
    "SearchRequest",
    "SearchResponse",
    "SearchSession",
    "ProjectionOutcome",
    "SyncProjector",
    "DegradedOperation",
    "IndexPublisher",
    "PublishResult",
    "PaginationInfo",
    "RefinementState",
    "RefinementStateManager",
    "InMemoryReferenceSource",
    "ReferenceSource",
    "SqlAlchemyReferenceSource",
    "IndexSchema",
    "IndexSchemaRegistry",
    "get_schema_registry",
    "StockAvailability",
    "StockAvailabilityResolver",
    "check_live_availability",
    "resolve_stock",
    "IndexStore",
    "InMemoryIndexStore",
    "StoreQueryResult",
]
