"""
引用数据源

投影器通过它读取权威实体及其反规范化引用，并枚举某个引用实体的依赖记录：
- category  -> 该类目下的商品
- supplier  -> 该供应商的商品
- product   -> 该商品的所有库存行
- variant   -> 该变体的所有库存行
- location  -> 该门店的所有库存行
"""
import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError

from sf_core.database import DatabaseManager
from sf_core.models import (
    Category, Customer, InventoryItem, Location, Product, ProductVariant, Supplier,
)
from sf_core.utils.errors import InvalidArgument

from .events import EntityKind

# 依赖记录：(实体类型, 实体 ID)
Dependent = Tuple[EntityKind, str]

# 读取权威数据源时视为暂时性的失败
TRANSIENT_SOURCE_ERRORS = (asyncio.TimeoutError, OSError, OperationalError, InterfaceError)


class ReferenceSource(Protocol):
    """引用数据源协议（只读）"""

    async def load(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        """读取单个实体，不存在时返回 None"""
        ...

    def dependents(self, kind: EntityKind, entity_id: str, batch_size: int = 100) -> AsyncIterator[List[Dependent]]:
        """分批枚举依赖于该引用实体的记录"""
        ...

    def iter_all(self, kind: EntityKind, batch_size: int = 100) -> AsyncIterator[List[Dict[str, Any]]]:
        """分批遍历某类实体的全部记录（全量同步用）"""
        ...


def _check_batch_size(batch_size: int) -> None:
    if batch_size <= 0:
        raise InvalidArgument("batch_size must be > 0")


class InMemoryReferenceSource:
    """内存引用数据源（测试与本地开发）"""

    def __init__(self):
        self._entities: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {kind: {} for kind in EntityKind}

    def put(self, kind: EntityKind, entity: Dict[str, Any]) -> Dict[str, Any]:
        """写入实体（entity 必须带 id）"""
        entity = dict(entity)
        self._entities[kind][str(entity["id"])] = entity
        return entity

    def remove(self, kind: EntityKind, entity_id: str) -> None:
        self._entities[kind].pop(str(entity_id), None)

    async def load(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        entity = self._entities[kind].get(str(entity_id))
        return dict(entity) if entity is not None else None

    async def dependents(self, kind: EntityKind, entity_id: str, batch_size: int = 100) -> AsyncIterator[List[Dependent]]:
        _check_batch_size(batch_size)
        entity_id = str(entity_id)

        if kind in (EntityKind.CATEGORY, EntityKind.SUPPLIER):
            field = f"{kind.value}_id"
            found = [
                (EntityKind.PRODUCT, product_id)
                for product_id, product in self._entities[EntityKind.PRODUCT].items()
                if str(product.get(field)) == entity_id
            ]
        elif kind in (EntityKind.PRODUCT, EntityKind.VARIANT, EntityKind.LOCATION):
            field = f"{kind.value}_id"
            found = [
                (EntityKind.INVENTORY, item_id)
                for item_id, item in self._entities[EntityKind.INVENTORY].items()
                if str(item.get(field)) == entity_id
            ]
        else:
            found = []

        for start in range(0, len(found), batch_size):
            yield found[start:start + batch_size]

    async def iter_all(self, kind: EntityKind, batch_size: int = 100) -> AsyncIterator[List[Dict[str, Any]]]:
        _check_batch_size(batch_size)
        entities = [dict(entity) for entity in self._entities[kind].values()]
        for start in range(0, len(entities), batch_size):
            yield entities[start:start + batch_size]


# 实体类型 -> ORM 模型
MODEL_BY_KIND = {
    EntityKind.PRODUCT: Product,
    EntityKind.CUSTOMER: Customer,
    EntityKind.SUPPLIER: Supplier,
    EntityKind.INVENTORY: InventoryItem,
    EntityKind.CATEGORY: Category,
    EntityKind.LOCATION: Location,
    EntityKind.VARIANT: ProductVariant,
}

# 引用实体类型 -> (依赖实体类型, 外键列)
DEPENDENT_COLUMNS = {
    EntityKind.CATEGORY: (EntityKind.PRODUCT, Product.category_id),
    EntityKind.SUPPLIER: (EntityKind.PRODUCT, Product.supplier_id),
    EntityKind.PRODUCT: (EntityKind.INVENTORY, InventoryItem.product_id),
    EntityKind.VARIANT: (EntityKind.INVENTORY, InventoryItem.variant_id),
    EntityKind.LOCATION: (EntityKind.INVENTORY, InventoryItem.location_id),
}


class SqlAlchemyReferenceSource:
    """
    权威数据源（PostgreSQL）只读访问

    分批查询使用主键 keyset 分页，避免大表 OFFSET 扫描
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def load(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        model = MODEL_BY_KIND[kind]
        async with self.db_manager.get_session() as session:
            entity = await session.get(model, str(entity_id))
            return entity.to_dict() if entity is not None else None

    async def dependents(self, kind: EntityKind, entity_id: str, batch_size: int = 100) -> AsyncIterator[List[Dependent]]:
        _check_batch_size(batch_size)
        if kind not in DEPENDENT_COLUMNS:
            return

        dependent_kind, column = DEPENDENT_COLUMNS[kind]
        model = MODEL_BY_KIND[dependent_kind]
        last_id: Optional[str] = None

        while True:
            stmt = select(model.id).where(column == str(entity_id)).order_by(model.id).limit(batch_size)
            if last_id is not None:
                stmt = stmt.where(model.id > last_id)

            async with self.db_manager.get_session() as session:
                result = await session.execute(stmt)
                ids = list(result.scalars().all())

            if not ids:
                break
            yield [(dependent_kind, dependent_id) for dependent_id in ids]
            if len(ids) < batch_size:
                break
            last_id = ids[-1]

    async def iter_all(self, kind: EntityKind, batch_size: int = 100) -> AsyncIterator[List[Dict[str, Any]]]:
        _check_batch_size(batch_size)
        model = MODEL_BY_KIND[kind]
        last_id: Optional[str] = None

        while True:
            stmt = select(model).order_by(model.id).limit(batch_size)
            if last_id is not None:
                stmt = stmt.where(model.id > last_id)

            async with self.db_manager.get_session() as session:
                result = await session.execute(stmt)
                rows = [row.to_dict() for row in result.scalars().all()]

            if not rows:
                break
            yield rows
            if len(rows) < batch_size:
                break
            last_id = rows[-1]["id"]
