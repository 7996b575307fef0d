"""
内存索引存储测试
"""
import pytest
import pytest_asyncio

from sf_core.search.store import InMemoryIndexStore, StoreQueryResult


@pytest_asyncio.fixture
async def shoes():
    store = InMemoryIndexStore()
    await store.set_settings("shoes", {
        "searchableAttributes": ["name", "tags"],
        "customRanking": ["desc(rank)"],
    })
    records = [
        {"objectID": "a", "name": "Trail Runner", "brand": "north", "color": "red", "tags": ["sport"], "rank": 1},
        {"objectID": "b", "name": "City Runner", "brand": "north", "color": "blue", "tags": ["urban"], "rank": 3},
        {"objectID": "c", "name": "Hiking Boot", "brand": "peak", "color": "red", "tags": ["sport", "winter"], "rank": 2},
        {"objectID": "d", "name": "Sandal", "brand": "peak", "color": "green", "tags": None},
    ]
    for record in records:
        await store.upsert("shoes", record["objectID"], record)
    return store


class TestWrites:
    """写入语义"""

    async def test_upsert_replaces_whole_record(self):
        store = InMemoryIndexStore()
        await store.upsert("c", "1", {"name": "a", "extra": True})
        await store.upsert("c", "1", {"name": "b"})
        assert store.get("c", "1") == {"objectID": "1", "name": "b"}

    async def test_stored_record_is_a_copy(self):
        store = InMemoryIndexStore()
        record = {"tags": ["x"]}
        await store.upsert("c", "1", record)
        record["tags"].append("y")
        assert store.get("c", "1")["tags"] == ["x"]

    async def test_delete_missing_is_fine(self):
        store = InMemoryIndexStore()
        await store.delete("c", "nope")
        assert store.count("c") == 0

    async def test_clear(self, shoes):
        await shoes.clear("shoes")
        assert shoes.count("shoes") == 0
        assert shoes.get_settings("shoes")["customRanking"] == ["desc(rank)"]


class TestQuery:
    """查询语义"""

    async def test_text_terms_all_must_match(self, shoes):
        result = await shoes.query("shoes", text="runner")
        assert [hit["objectID"] for hit in result.hits] == ["b", "a"]

        result = await shoes.query("shoes", text="trail RUN")
        assert [hit["objectID"] for hit in result.hits] == ["a"]

    async def test_text_searches_only_searchable_attributes(self, shoes):
        result = await shoes.query("shoes", text="peak")
        assert result.total_hits == 0

        result = await shoes.query("shoes", text="winter")
        assert [hit["objectID"] for hit in result.hits] == ["c"]

    async def test_ranking_puts_missing_values_last(self, shoes):
        result = await shoes.query("shoes")
        assert [hit["objectID"] for hit in result.hits] == ["b", "c", "a", "d"]

    async def test_refinements(self, shoes):
        result = await shoes.query("shoes", refinements={"color": ["red", "green"]})
        assert {hit["objectID"] for hit in result.hits} == {"a", "c", "d"}

        result = await shoes.query("shoes", refinements={"color": ["red"], "brand": ["peak"]})
        assert [hit["objectID"] for hit in result.hits] == ["c"]

    async def test_list_attribute_refinement(self, shoes):
        result = await shoes.query("shoes", refinements={"tags": ["sport"]})
        assert {hit["objectID"] for hit in result.hits} == {"a", "c"}

    async def test_empty_refinement_list_is_ignored(self, shoes):
        result = await shoes.query("shoes", refinements={"color": []})
        assert result.total_hits == 4

    async def test_disjunctive_facet_counts(self, shoes):
        result = await shoes.query(
            "shoes",
            refinements={"color": ["red"], "brand": ["north"]},
            facets=["color", "brand", "tags"],
        )
        assert [hit["objectID"] for hit in result.hits] == ["a"]
        # color 计数不应用 color 自身的 refinement
        assert result.facets["color"] == {"blue": 1, "red": 1}
        assert result.facets["brand"] == {"north": 1, "peak": 1}
        assert result.facets["tags"] == {"sport": 1}

    async def test_pagination(self, shoes):
        result = await shoes.query("shoes", page=1, page_size=3)
        assert [hit["objectID"] for hit in result.hits] == ["d"]
        assert result.total_hits == 4
        assert result.total_pages(3) == 2

    async def test_unknown_collection_is_empty(self):
        result = await InMemoryIndexStore().query("nothing")
        assert result.hits == []
        assert result.total_hits == 0


def test_total_pages():
    assert StoreQueryResult(hits=[], total_hits=45).total_pages(20) == 3
    assert StoreQueryResult(hits=[], total_hits=0).total_pages(20) == 0
    assert StoreQueryResult(hits=[], total_hits=5).total_pages(0) == 0
