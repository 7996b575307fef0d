"""
变更事件消费者测试（内存版 Redis 替身）
"""
import json

import pytest
from redis.exceptions import ResponseError

from sf_core.event_bus import ChangeEventConsumer
from sf_core.search.events import ChangeEvent, ChangeType, EntityKind
from sf_core.search.projector import SyncProjector
from sf_core.search.publisher import IndexPublisher

from conftest import FlakyStore, inventory_data, no_sleep, product_data


class FakeRedis:
    """只实现消费者用到的 Stream 命令"""

    def __init__(self, group_exists=False):
        self.streams = {}
        self.acked = []
        self.groups = set()
        if group_exists:
            self.groups.add(("sf:changes", "sf:group:projector"))
        self.pending = []
        self.claims = []
        self.claim_calls = []
        self.closed = False

    async def ping(self):
        return True

    async def xgroup_create(self, stream, group, id="0", mkstream=False):
        if (stream, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.groups.add((stream, group))
        return True

    async def xadd(self, stream, fields):
        entries = self.streams.setdefault(stream, [])
        message_id = f"{len(entries) + 1}-0"
        entries.append((message_id, dict(fields)))
        return message_id

    async def xack(self, stream, group, *ids):
        self.acked.extend(ids)
        return len(ids)

    async def xpending(self, stream, group):
        return {"pending": len(self.pending)}

    async def xpending_range(self, stream, group, min, max, count):
        return self.pending[:count]

    async def xautoclaim(self, stream, group, consumer, min_idle_time, start_id="0-0", count=None):
        self.claim_calls.append((start_id, min_idle_time, count))
        if not self.claims:
            return ["0-0", [], []]
        return self.claims.pop(0)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def consumer(projector, settings, fake_redis):
    return ChangeEventConsumer(projector, settings=settings, redis_client=fake_redis)


def _message(event):
    return {"data": json.dumps(event.to_dict())}


class TestChangeEventConsumer:
    """消息处理与 ACK"""

    async def test_valid_messages_are_projected_then_acked(self, consumer, fake_redis, projector, store):
        messages = [
            ("1-0", _message(ChangeEvent(EntityKind.INVENTORY, "i1", ChangeType.UPDATE))),
            ("2-0", _message(ChangeEvent(EntityKind.CUSTOMER, "cu1", ChangeType.UPDATE))),
        ]
        acked = await consumer.process_batch(messages)
        await projector.drain()

        assert acked == 2
        assert fake_redis.acked == ["1-0", "2-0"]
        assert store.get("inventory", "i1")["available"] == 3
        assert store.get("customers", "cu1") is not None

    async def test_payload_travels_through_the_stream(self, consumer, fake_redis, projector, store):
        event = ChangeEvent(
            EntityKind.INVENTORY, "i1", ChangeType.UPDATE,
            payload=inventory_data(quantity=10),
        )
        assert await consumer.process_message("1-0", _message(event)) is True
        await projector.drain()
        assert store.get("inventory", "i1")["available"] == 8

    async def test_malformed_message_is_dead_lettered(self, consumer, fake_redis):
        messages = [
            ("1-0", {"data": "{not json"}),
            ("2-0", {"data": json.dumps({"entity_kind": "order", "entity_id": "o1", "change_type": "update"})}),
            ("3-0", {"data": json.dumps({"entity_kind": "product", "change_type": "update"})}),
        ]
        acked = await consumer.process_batch(messages)

        assert acked == 3
        dead = fake_redis.streams["sf:changes:dead"]
        assert [entry["message_id"] for _, entry in dead] == ["1-0", "2-0", "3-0"]
        assert fake_redis.acked == ["1-0", "2-0", "3-0"]

    async def test_failed_projection_is_left_pending(self, consumer, fake_redis, projector):
        async def broken(event, cascade):
            raise RuntimeError("source unavailable")

        projector._project = broken
        event = ChangeEvent(EntityKind.PRODUCT, "p1", ChangeType.UPDATE)
        assert await consumer.process_message("1-0", _message(event)) is False
        assert fake_redis.acked == []

    async def test_publish_change(self, consumer, fake_redis):
        event = ChangeEvent(EntityKind.PRODUCT, "p1", ChangeType.DELETE)
        message_id = await consumer.publish_change(event)

        stored_id, fields = fake_redis.streams["sf:changes"][0]
        assert stored_id == message_id
        assert ChangeEvent.from_dict(json.loads(fields["data"])) == event

    async def test_pending_messages(self, consumer, fake_redis):
        assert await consumer.get_pending_messages() == []

        fake_redis.pending.append({
            "message_id": "4-0",
            "consumer": "projector-1",
            "time_since_delivered": 1500,
            "times_delivered": 3,
        })
        pending = await consumer.get_pending_messages(count=10)
        assert pending == [{
            "message_id": "4-0",
            "consumer": "projector-1",
            "idle_time_ms": 1500,
            "delivery_count": 3,
        }]

    async def test_unconfirmed_publish_is_left_pending(self, source, settings, fake_redis):
        publisher = IndexPublisher(FlakyStore(failures=10), max_attempts=2, sleep=no_sleep)
        consumer = ChangeEventConsumer(SyncProjector(source, publisher), settings=settings, redis_client=fake_redis)

        event = ChangeEvent(EntityKind.CUSTOMER, "cu1", ChangeType.UPDATE)
        assert await consumer.process_message("1-0", _message(event)) is False
        assert fake_redis.acked == []
        assert [op.operation.object_id for op in publisher.degraded] == ["cu1"]

    async def test_quarantined_change_is_acked(self, consumer, fake_redis, projector, source):
        source.put(EntityKind.PRODUCT, product_data(name=None))
        event = ChangeEvent(EntityKind.PRODUCT, "p1", ChangeType.UPDATE)

        assert await consumer.process_message("1-0", _message(event)) is True
        assert fake_redis.acked == ["1-0"]
        assert len(projector.quarantined) == 1

    async def test_reclaim_stale(self, consumer, fake_redis, projector, store, settings):
        fake_redis.claims = [
            ["5-0", [("3-0", _message(ChangeEvent(EntityKind.INVENTORY, "i1", ChangeType.UPDATE))), (None, None)], []],
            ["0-0", [("5-0", _message(ChangeEvent(EntityKind.CUSTOMER, "cu1", ChangeType.UPDATE)))], []],
        ]
        assert await consumer.reclaim_stale() == 2
        await projector.drain()

        assert fake_redis.acked == ["3-0", "5-0"]
        assert [start_id for start_id, _, _ in fake_redis.claim_calls] == ["0-0", "5-0"]
        assert fake_redis.claim_calls[0][1] == settings.change_claim_idle_ms
        assert store.get("inventory", "i1") is not None
        assert store.get("customers", "cu1") is not None


class TestLifecycle:
    """消费组与关闭"""

    async def test_ensure_group_is_idempotent(self, projector, settings):
        fake = FakeRedis(group_exists=True)
        consumer = ChangeEventConsumer(projector, settings=settings, redis_client=fake)
        await consumer.ensure_group()
        assert ("sf:changes", "sf:group:projector") in fake.groups

    async def test_ensure_group_propagates_other_errors(self, projector, settings):
        class BrokenRedis(FakeRedis):
            async def xgroup_create(self, *args, **kwargs):
                raise ResponseError("NOPERM this user has no permissions")

        consumer = ChangeEventConsumer(projector, settings=settings, redis_client=BrokenRedis())
        with pytest.raises(ResponseError):
            await consumer.ensure_group()

    async def test_shutdown_closes_connection(self, consumer, fake_redis):
        await consumer.shutdown()
        assert fake_redis.closed
        assert consumer.redis_client is None
