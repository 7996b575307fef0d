"""
HTTP API 测试
"""
import httpx
import pytest_asyncio

from sf_core.app import create_app
from sf_core.search.events import EntityKind
from sf_core.search.runtime import build_runtime

from conftest import product_data

PREFIX = "/api/sf/v1"


@pytest_asyncio.fixture
async def runtime(settings, configured_store, source):
    runtime = build_runtime(settings, store=configured_store, source=source)
    yield runtime
    await runtime.projector.drain()


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime=runtime)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


class TestSearchApi:
    """索引查询接口"""

    async def test_sync_then_search(self, client):
        response = await client.post(f"{PREFIX}/search/sync", json={"batch_size": 2})
        assert response.status_code == 200
        assert response.json()["data"]["products"]["count"] == 3

        response = await client.post(f"{PREFIX}/search/products", json={
            "query": "dress",
            "refinements": {"is_active": [True]},
        })
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert [hit["objectID"] for hit in body["data"]["hits"]] == ["p1"]
        assert body["data"]["facets"]["is_active"] == {"true": 1, "false": 1}
        assert body["metadata"]["pagination"]["pages"] == [0]

    async def test_non_facet_attribute_is_rejected(self, client):
        response = await client.post(f"{PREFIX}/search/products", json={"filters": {"selling_price": 10}})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "SEARCH_QUERY_REJECTED"
        assert "selling_price" in error["detail"]

    async def test_unknown_index(self, client):
        response = await client.post(f"{PREFIX}/search/orders", json={})
        assert response.status_code == 400
        assert response.json()["ok"] is False

    async def test_invalid_page(self, client):
        response = await client.post(f"{PREFIX}/search/products", json={"page": -1})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_ARGUMENT"

    async def test_body_validation(self, client):
        response = await client.post(f"{PREFIX}/search/products", json={"page": "first"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestEventApi:
    """变更事件与一致性状态接口"""

    async def test_submit_event(self, client):
        response = await client.post(f"{PREFIX}/search/events", json={
            "entity_kind": "inventory",
            "entity_id": "i1",
            "change_type": "update",
        })
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["published"] == 1
        assert data["operations"][0]["object_id"] == "i1"

        response = await client.post(f"{PREFIX}/search/inventory", json={"filters": {"is_low_stock": True}})
        hits = response.json()["data"]["hits"]
        assert hits[0]["available"] == 3

    async def test_invalid_event(self, client):
        response = await client.post(f"{PREFIX}/search/events", json={
            "entity_kind": "order",
            "entity_id": "o1",
            "change_type": "update",
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_ARGUMENT"

    async def test_quarantine_status_and_replay(self, client, source):
        source.put(EntityKind.PRODUCT, product_data(name=None))
        response = await client.post(f"{PREFIX}/search/events", json={
            "entity_kind": "product",
            "entity_id": "p1",
            "change_type": "update",
        })
        assert response.json()["data"]["quarantined"] is not None

        status = (await client.get(f"{PREFIX}/search/status")).json()["data"]
        assert len(status["quarantined"]) == 1
        assert status["degraded"] == []
        assert status["deferred"] == []

        source.put(EntityKind.PRODUCT, product_data())
        response = await client.post(f"{PREFIX}/search/replay", json={})
        assert response.json()["data"]["replayed"] == 1

        status = (await client.get(f"{PREFIX}/search/status")).json()["data"]
        assert status["quarantined"] == []

    async def test_configure(self, client):
        response = await client.post(f"{PREFIX}/search/configure")
        assert response.status_code == 200
        assert response.json()["data"]["success"] is True


class TestStockApi:
    """实时库存检查接口"""

    async def test_check(self, client):
        response = await client.post(f"{PREFIX}/stock/check", json={
            "quantity": 5, "reserved_quantity": 2, "reorder_point": 3, "requested": 4,
        })
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["available"] == 3
        assert data["can_fulfil"] is False

    async def test_check_rejects_negative_quantity(self, client):
        response = await client.post(f"{PREFIX}/stock/check", json={"quantity": -1, "requested": 1})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "SEARCH_SCHEMA_VIOLATION"


class TestInfrastructure:
    """健康检查与请求追踪"""

    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_trace_id_is_echoed(self, client):
        response = await client.get("/healthz", headers={"X-Trace-Id": "trace-123"})
        assert response.headers["X-Trace-Id"] == "trace-123"

    async def test_runtime_not_ready(self, settings):
        app = create_app(settings=settings)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            response = await ac.get(f"{PREFIX}/search/status")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SEARCH_NOT_READY"

    async def test_metrics_endpoint(self, settings, runtime):
        app = create_app(settings=settings.model_copy(update={"metrics_enabled": True}), runtime=runtime)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            await ac.get("/healthz")
            response = await ac.get("/metrics")
        assert response.status_code == 200
        assert 'sf_http_requests_total{method="GET",endpoint="/healthz",status_code="200"}' in response.text
