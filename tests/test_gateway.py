"""
查询网关测试
"""
import asyncio

import pytest

from sf_core.search.events import ChangeEvent, ChangeType, EntityKind
from sf_core.search.gateway import QueryGateway, SearchRequest, SearchSession
from sf_core.search.mappers import RecordMapper
from sf_core.search.schema import ProductRecord
from sf_core.search.store import InMemoryIndexStore
from sf_core.utils.errors import InvalidArgument, QueryRejected, QueryTimeout, SchemaViolation

from conftest import customer_data


class SlowStore(InMemoryIndexStore):
    """按查询文本决定延迟的内存存储"""

    def __init__(self, delays=None):
        super().__init__()
        self.delays = delays or {}

    async def query(self, collection, text="", **kwargs):
        await asyncio.sleep(self.delays.get(text, 0))
        return await super().query(collection, text=text, **kwargs)


async def _seed_customers(store, count):
    mapper = RecordMapper()
    for n in range(count):
        record = mapper.customer_record(customer_data(id=f"cu{n:02d}", first_name=f"Name{n:02d}"))
        await store.upsert("customers", record["objectID"], record)


async def _project_catalog(projector):
    events = [
        ChangeEvent(EntityKind.PRODUCT, pid, ChangeType.UPDATE)
        for pid in ("p1", "p2", "p3")
    ]
    events += [
        ChangeEvent(EntityKind.INVENTORY, iid, ChangeType.UPDATE)
        for iid in ("i1", "i2", "i3")
    ]
    await projector.handle_many(events)


class TestPagination:
    """分页"""

    async def test_pages_are_counted(self, gateway, configured_store):
        await _seed_customers(configured_store, 45)

        response = await gateway.search(SearchRequest(index="customers", page_size=20))
        assert response.total_hits == 45
        assert response.total_pages == 3
        assert len(response.hits) == 20
        assert response.is_first_page
        assert not response.is_last_page

        last = await gateway.search(SearchRequest(index="customers", page=2, page_size=20))
        assert len(last.hits) == 5
        assert last.is_last_page

    async def test_page_past_the_end_is_empty(self, gateway, configured_store):
        await _seed_customers(configured_store, 45)
        response = await gateway.search(SearchRequest(index="customers", page=5, page_size=20))
        assert response.hits == []
        assert response.total_pages == 3
        assert response.total_hits == 45

    async def test_empty_index(self, gateway):
        response = await gateway.search(SearchRequest(index="suppliers"))
        assert response.total_hits == 0
        assert response.total_pages == 0
        assert response.hits == []
        assert response.is_last_page


class TestQuery:
    """文本与 facet 查询"""

    async def test_hits_are_typed_records(self, gateway, projector):
        await _project_catalog(projector)
        response = await gateway.search(SearchRequest(index="products", query="dress"))

        assert {hit.objectID for hit in response.hits} == {"p1", "p3"}
        assert all(isinstance(hit, ProductRecord) for hit in response.hits)
        # desc(updated_at)
        assert [hit.objectID for hit in response.hits] == ["p1", "p3"]

    async def test_empty_query_matches_everything(self, gateway, projector):
        await _project_catalog(projector)
        response = await gateway.search(SearchRequest(index="products"))
        assert response.total_hits == 3

    async def test_refinements_or_within_and_across(self, gateway, projector):
        await _project_catalog(projector)

        either = await gateway.search(SearchRequest(index="products", refinements={"category_id": ["c1", "c2"]}))
        assert either.total_hits == 3

        both = await gateway.search(SearchRequest(
            index="products",
            refinements={"category_id": ["c1", "c2"], "is_active": [True]},
        ))
        assert {hit.objectID for hit in both.hits} == {"p1", "p2"}

    async def test_facet_counts_are_disjunctive(self, gateway, projector):
        await _project_catalog(projector)
        response = await gateway.search(SearchRequest(index="products", refinements={"category_id": ["c1"]}))

        assert response.total_hits == 2
        assert response.facets["category_id"] == {"c1": 2, "c2": 1}
        assert response.facets["is_active"] == {"false": 1, "true": 1}

    async def test_filters(self, gateway, projector):
        await _project_catalog(projector)
        response = await gateway.search(SearchRequest(index="inventory", filters={"location_id": "l1"}))
        assert {hit.objectID for hit in response.hits} == {"i1", "i2"}

    async def test_invalid_hit_fails_loudly(self, gateway, configured_store):
        await configured_store.upsert("suppliers", "s1", {"objectID": "s1", "name": "Broken"})
        with pytest.raises(SchemaViolation):
            await gateway.search(SearchRequest(index="suppliers"))


class TestRejections:
    """非法查询"""

    async def test_unknown_index(self, gateway):
        with pytest.raises(QueryRejected):
            await gateway.search(SearchRequest(index="orders"))

    async def test_non_facet_attribute(self, gateway):
        with pytest.raises(QueryRejected) as exc_info:
            await gateway.search(SearchRequest(index="products", refinements={"selling_price": [10]}))
        assert "selling_price" in exc_info.value.detail

        with pytest.raises(QueryRejected):
            await gateway.search(SearchRequest(index="products", filters={"name": "Dress"}))

    @pytest.mark.parametrize("page,page_size", [(-1, 20), (0, 0), (0, -5)])
    async def test_invalid_paging(self, gateway, page, page_size):
        with pytest.raises(InvalidArgument):
            await gateway.search(SearchRequest(index="products", page=page, page_size=page_size))

    async def test_timeout(self):
        gateway = QueryGateway(SlowStore({"slow": 1.0}), timeout=0.01)
        with pytest.raises(QueryTimeout) as exc_info:
            await gateway.search(SearchRequest(index="products", query="slow"))
        assert exc_info.value.status == 504

    async def test_per_call_timeout(self):
        gateway = QueryGateway(SlowStore({"slow": 0.05}), timeout=0.01)
        response = await gateway.search(SearchRequest(index="products", query="slow"), timeout=1.0)
        assert response.total_hits == 0


class TestConvenienceSearches:
    """按业务场景封装的查询"""

    async def test_products_for_pos_only_active(self, gateway, projector):
        await _project_catalog(projector)
        response = await gateway.search_products_for_pos("dress")
        assert [hit.objectID for hit in response.hits] == ["p1"]

    async def test_products_by_category(self, gateway, projector):
        await _project_catalog(projector)
        response = await gateway.search_products(category_id="c2")
        assert [hit.name for hit in response.hits] == ["Leather Boots"]
        assert response.page_size == 50

    async def test_low_stock_inventory(self, gateway, projector):
        await _project_catalog(projector)
        response = await gateway.search_inventory(low_stock_only=True)
        assert {hit.objectID for hit in response.hits} == {"i1"}

        at_warehouse = await gateway.search_inventory(location_id="l2")
        assert [hit.objectID for hit in at_warehouse.hits] == ["i3"]

    async def test_customers_and_suppliers(self, gateway, projector):
        await projector.handle(ChangeEvent(EntityKind.CUSTOMER, "cu1", ChangeType.UPDATE))
        await projector.handle(ChangeEvent(EntityKind.SUPPLIER, "s2", ChangeType.UPDATE, payload=None))

        customers = await gateway.search_customers("ada")
        assert [hit.full_name for hit in customers.hits] == ["Ada Lovelace"]

        suppliers = await gateway.search_suppliers("northwind", is_active=True)
        assert [hit.objectID for hit in suppliers.hits] == ["s2"]


class TestSearchSession:
    """最新查询优先"""

    async def test_superseded_query_returns_none(self):
        gateway = QueryGateway(SlowStore({"old": 0.2}), timeout=1.0)
        session = SearchSession(gateway)

        old = asyncio.create_task(session.search(SearchRequest(index="products", query="old")))
        await asyncio.sleep(0.01)
        new = await session.search(SearchRequest(index="products", query="new"))

        assert await old is None
        assert new is not None
        assert session.latest is new

    async def test_cancel(self):
        gateway = QueryGateway(SlowStore({"slow": 0.2}), timeout=1.0)
        session = SearchSession(gateway)

        pending = asyncio.create_task(session.search(SearchRequest(index="products", query="slow")))
        await asyncio.sleep(0.01)
        session.cancel()

        assert await pending is None
        assert session.latest is None
