"""
索引运维操作测试
"""
import pytest

from sf_core.search.admin import configure_indexes, sync_all
from sf_core.search.events import EntityKind
from sf_core.utils.errors import InvalidArgument


class TestConfigureIndexes:
    """索引设置推送"""

    async def test_pushes_settings_for_every_collection(self, store):
        result = await configure_indexes(store)

        assert result["success"] is True
        assert set(result["indexes"]) == {"products", "customers", "suppliers", "inventory"}
        settings = store.get_settings("inventory")
        assert settings["customRanking"] == ["asc(quantity)"]
        assert "location_id" in settings["attributesForFaceting"]
        assert not any(a.startswith("filterOnly(") for a in settings["attributesForFaceting"])


class TestSyncAll:
    """全量同步"""

    async def test_syncs_every_collection(self, projector, source, configured_store):
        result = await sync_all(projector, source, batch_size=2)

        assert result["products"] == {"success": True, "count": 3, "failed": 0, "quarantined": 0}
        assert result["inventory"]["count"] == 3
        assert result["customers"]["count"] == 1
        assert result["suppliers"]["count"] == 2

        assert configured_store.count("products") == 3
        assert configured_store.get("products", "p2")["category_name"] == "Shoes"
        assert configured_store.get("inventory", "i3")["available"] == 3

    async def test_selected_collections(self, projector, source, store):
        result = await sync_all(projector, source, collections=["customers"])
        assert list(result) == ["customers"]
        assert store.count("products") == 0

    async def test_counts_quarantined_records(self, projector, source, store):
        source.put(EntityKind.CUSTOMER, {"id": "cu2", "first_name": "No"})
        result = await sync_all(projector, source, collections=["customers"])

        assert result["customers"]["success"] is False
        assert result["customers"]["count"] == 1
        assert result["customers"]["quarantined"] == 1

    async def test_unknown_collection(self, projector, source):
        with pytest.raises(InvalidArgument):
            await sync_all(projector, source, collections=["orders"])

    async def test_source_failure_is_reported(self, projector, source):
        async def broken_iter_all(kind, batch_size=100):
            raise ConnectionError("database is down")
            yield []

        source.iter_all = broken_iter_all
        result = await sync_all(projector, source, collections=["suppliers"])

        assert result["suppliers"]["success"] is False
        assert "database is down" in result["suppliers"]["error"]
