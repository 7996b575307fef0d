"""
Pytest 配置和 fixtures
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from sf_core.config import Settings
from sf_core.search.admin import configure_indexes
from sf_core.search.events import EntityKind
from sf_core.search.gateway import QueryGateway
from sf_core.search.projector import SyncProjector
from sf_core.search.publisher import IndexPublisher
from sf_core.search.references import InMemoryReferenceSource
from sf_core.search.store import InMemoryIndexStore
from sf_core.utils.errors import PublishFailure


CREATED_AT = datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc)
UPDATED_AT = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


async def no_sleep(delay: float) -> None:
    """退避等待替身：测试中不真正睡眠"""
    return None


class FlakyStore(InMemoryIndexStore):
    """前 failures 次写入失败的内存存储"""

    def __init__(self, failures=0, retryable=True, error=None):
        super().__init__()
        self.failures = failures
        self.retryable = retryable
        self.error = error
        self.calls = 0

    async def upsert(self, collection, object_id, record):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.calls <= self.failures:
            raise PublishFailure(collection, object_id, "HTTP 503", retryable=self.retryable)
        await super().upsert(collection, object_id, record)


class FlakySource:
    """包装内存数据源：按实体注入读取失败，每次读取可挂起 delay 秒"""

    def __init__(self, inner, failures=None, delay=0.0, dependents_error=None):
        self.inner = inner
        self.failures = dict(failures or {})
        self.delay = delay
        self.dependents_error = dependents_error
        self.loads = []

    async def load(self, kind, entity_id):
        self.loads.append((kind, entity_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures.get((kind, entity_id), 0) > 0:
            self.failures[(kind, entity_id)] -= 1
            raise ConnectionError(f"connection reset while loading {kind.value} {entity_id}")
        return await self.inner.load(kind, entity_id)

    async def dependents(self, kind, entity_id, batch_size=100):
        if self.dependents_error is not None:
            raise self.dependents_error
        async for batch in self.inner.dependents(kind, entity_id, batch_size=batch_size):
            yield batch

    def iter_all(self, kind, batch_size=100):
        return self.inner.iter_all(kind, batch_size=batch_size)


def product_data(**overrides):
    data = {
        "id": "p1",
        "name": "Red Summer Dress",
        "description": "Light cotton dress",
        "sku": "RSD-001",
        "barcode": "4006381333931",
        "category_id": "c1",
        "supplier_id": "s1",
        "cost_price": Decimal("18.50"),
        "selling_price": Decimal("49.90"),
        "tags": ["summer", "red", "summer"],
        "is_active": True,
        "has_variants": True,
        "image_url": "https://cdn.example.com/p1.jpg",
        "created_at": CREATED_AT,
        "updated_at": UPDATED_AT,
    }
    data.update(overrides)
    return data


def inventory_data(**overrides):
    data = {
        "id": "i1",
        "product_id": "p1",
        "variant_id": None,
        "location_id": "l1",
        "quantity": 5,
        "reserved_quantity": 2,
        "reorder_point": 3,
    }
    data.update(overrides)
    return data


def customer_data(**overrides):
    data = {
        "id": "cu1",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "phone": "+44 20 7946 0000",
        "city": "London",
        "total_orders": 12,
        "total_spent": Decimal("1520.40"),
        "loyalty_points": 300,
        "is_active": True,
        "created_at": CREATED_AT,
    }
    data.update(overrides)
    return data


def supplier_data(**overrides):
    data = {
        "id": "s1",
        "name": "Acme Textiles",
        "contact_person": "Jane Roe",
        "email": "orders@acme.example.com",
        "phone": None,
        "address": "1 Mill Lane",
        "payment_terms": "NET30",
        "lead_time_days": 14,
        "is_active": True,
        "created_at": CREATED_AT,
    }
    data.update(overrides)
    return data


@pytest.fixture
def settings():
    """测试配置（不读取 .env）"""
    return Settings(_env_file=None, search_backend="memory", metrics_enabled=False)


@pytest.fixture
def store():
    """内存索引存储"""
    return InMemoryIndexStore()


@pytest_asyncio.fixture
async def configured_store(store):
    """已推送索引设置的内存索引存储"""
    await configure_indexes(store)
    return store


@pytest.fixture
def source():
    """预置商品目录的内存引用数据源"""
    src = InMemoryReferenceSource()
    src.put(EntityKind.CATEGORY, {"id": "c1", "name": "Dresses"})
    src.put(EntityKind.CATEGORY, {"id": "c2", "name": "Shoes"})
    src.put(EntityKind.SUPPLIER, supplier_data())
    src.put(EntityKind.SUPPLIER, supplier_data(id="s2", name="Northwind Leather", lead_time_days=None))
    src.put(EntityKind.LOCATION, {"id": "l1", "name": "Main Street", "address": "10 Main St"})
    src.put(EntityKind.LOCATION, {"id": "l2", "name": "Warehouse", "address": None})

    src.put(EntityKind.PRODUCT, product_data())
    src.put(EntityKind.PRODUCT, product_data(
        id="p2", name="Leather Boots", description="Waterproof winter boots", sku="LB-002", barcode="4006381333948",
        category_id="c2", supplier_id="s2", tags=["winter"], has_variants=False,
        selling_price=Decimal("129.00"), updated_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
    ))
    src.put(EntityKind.PRODUCT, product_data(
        id="p3", name="Blue Evening Dress", sku="BED-003", barcode="4006381333955",
        tags=None, is_active=False, has_variants=False,
        updated_at=datetime(2025, 1, 15, tzinfo=timezone.utc),
    ))
    src.put(EntityKind.VARIANT, {"id": "v1", "product_id": "p1", "sku": "RSD-001-M", "option_values": {"size": "M"}})

    src.put(EntityKind.INVENTORY, inventory_data())
    src.put(EntityKind.INVENTORY, inventory_data(id="i2", product_id="p2", quantity=10, reserved_quantity=0, reorder_point=2))
    src.put(EntityKind.INVENTORY, inventory_data(id="i3", variant_id="v1", location_id="l2", quantity=4, reserved_quantity=1, reorder_point=1))

    src.put(EntityKind.CUSTOMER, customer_data())
    return src


@pytest.fixture
def publisher(store):
    """发布器（退避不睡眠）"""
    return IndexPublisher(store, max_attempts=3, backoff_base=0.5, backoff_max=4.0, sleep=no_sleep)


@pytest.fixture
def projector(source, publisher):
    """投影器"""
    return SyncProjector(source, publisher, concurrency=4, fanout_batch_size=2)


@pytest.fixture
def gateway(configured_store):
    """查询网关"""
    return QueryGateway(configured_store, timeout=1.0)
