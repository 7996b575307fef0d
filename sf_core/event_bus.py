"""
ShelfFlow 变更事件总线
基于 Redis Streams 消费权威数据源的实体变更事件

- 消息格式：{"data": json({entity_kind, entity_id, change_type, payload?, event_id, ts})}
- 消息在其所有索引操作被确认（或变更被隔离）后才 ACK；
  其余消息留在 pending 列表，空闲超过 change_claim_idle_ms 后由 XAUTOCLAIM 重新认领处理
- 无法解析的消息写入死信流 {stream}:dead 后 ACK
"""
import asyncio
import json
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ResponseError

from sf_core.config import Settings, get_settings
from sf_core.search.events import ChangeEvent
from sf_core.search.projector import SyncProjector
from sf_core.utils.errors import InvalidArgument
from sf_core.utils.logger import LogContext, get_logger

logger = get_logger(__name__)


class ChangeEventConsumer:
    """变更事件消费者"""

    def __init__(
        self,
        projector: SyncProjector,
        settings: Optional[Settings] = None,
        redis_client: Optional[redis.Redis] = None,
        batch_size: int = 10,
        block_ms: int = 1000,
    ):
        self.settings = settings or get_settings()
        self.projector = projector
        self.redis_client = redis_client
        self.stream_name = self.settings.change_stream
        self.group_name = self.settings.change_consumer_group
        self.dead_letter_stream = f"{self.stream_name}:dead"
        self.consumer_name = f"{self.group_name}:{uuid.uuid4().hex[:8]}"
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.claim_idle_ms = self.settings.change_claim_idle_ms
        self._last_claim = 0.0
        self._consumer_task: Optional[asyncio.Task] = None
        self._running = False

    def _get_redis(self) -> redis.Redis:
        """获取 Redis 连接"""
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self.redis_client

    async def ensure_group(self) -> None:
        """创建消费组（如果不存在）"""
        r = self._get_redis()
        try:
            await r.xgroup_create(self.stream_name, self.group_name, id="0", mkstream=True)
            logger.info("Created consumer group", group=self.group_name, stream=self.stream_name)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def start(self) -> None:
        """启动消费任务"""
        r = self._get_redis()
        await r.ping()
        await self.ensure_group()

        self._running = True
        self._consumer_task = asyncio.create_task(self._consume())
        logger.info("Change event consumer started", consumer=self.consumer_name, stream=self.stream_name)

    async def shutdown(self) -> None:
        """停止消费并关闭连接"""
        self._running = False
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
            self._consumer_task = None

        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
        logger.info("Change event consumer stopped", consumer=self.consumer_name)

    async def publish_change(self, event: ChangeEvent) -> str:
        """发布变更事件到流（权威数据源协作方或测试使用）"""
        r = self._get_redis()
        message_id = await r.xadd(self.stream_name, {"data": json.dumps(event.to_dict(), default=str)})
        logger.debug("Published change event", event_id=event.event_id, message_id=message_id)
        return message_id

    async def _consume(self) -> None:
        """消费 Redis Stream"""
        while self._running:
            try:
                if time.monotonic() - self._last_claim >= self.claim_idle_ms / 1000:
                    await self.reclaim_stale()

                r = self._get_redis()
                messages = await r.xreadgroup(
                    self.group_name,
                    self.consumer_name,
                    {self.stream_name: ">"},
                    count=self.batch_size,
                    block=self.block_ms,
                )
                if not messages:
                    continue

                for _, stream_messages in messages:
                    await self.process_batch(stream_messages)

            except asyncio.CancelledError:
                logger.info("Consumer cancelled", consumer=self.consumer_name)
                break
            except Exception:
                logger.error("Consumer error", consumer=self.consumer_name, exc_info=True)
                await asyncio.sleep(5)  # 错误后等待重试

    async def _dead_letter(self, message_id: str, data: Dict[str, Any], error: Exception) -> None:
        r = self._get_redis()
        await r.xadd(self.dead_letter_stream, {
            "message_id": message_id,
            "data": data.get("data", ""),
            "error": str(error),
        })
        await r.xack(self.stream_name, self.group_name, message_id)
        logger.error("Malformed change event moved to dead letter stream", message_id=message_id, error=str(error))

    async def process_batch(self, stream_messages: List[Tuple[str, Dict[str, Any]]]) -> int:
        """
        处理一批消息

        先按流顺序全部提交给投影器（保证同一实体的顺序），再逐条等待发布确认后 ACK

        Returns:
            已 ACK 的消息数
        """
        r = self._get_redis()
        acked = 0
        accepted = []

        for message_id, data in stream_messages:
            try:
                event = ChangeEvent.from_dict(json.loads(data.get("data", "{}")))
            except (ValueError, TypeError, InvalidArgument) as e:
                # 无法解析的消息不会因重试而变好
                await self._dead_letter(message_id, data, e)
                acked += 1
                continue
            accepted.append((message_id, event, self.projector.submit(event)))

        for message_id, event, future in accepted:
            with LogContext(trace_id=event.event_id):
                try:
                    outcome = await self.projector.settle(future)
                except Exception:
                    logger.error(
                        "Projector rejected change event, left pending",
                        message_id=message_id,
                        entity_kind=event.entity_kind.value,
                        entity_id=event.entity_id,
                        exc_info=True,
                    )
                    continue

                if not outcome.confirmed and outcome.quarantined is None:
                    logger.warning(
                        "Index publish not confirmed, left pending",
                        message_id=message_id,
                        entity_kind=event.entity_kind.value,
                        entity_id=event.entity_id,
                        degraded=outcome.degraded,
                    )
                    continue

                await r.xack(self.stream_name, self.group_name, message_id)
                acked += 1
                logger.debug("Processed change event", message_id=message_id, entity_id=event.entity_id)
        return acked

    async def process_message(self, message_id: str, data: Dict[str, Any]) -> bool:
        """处理单条消息，返回是否已 ACK"""
        return await self.process_batch([(message_id, data)]) == 1

    async def reclaim_stale(self) -> int:
        """
        认领空闲过久的 pending 消息（包括其他已退出消费者的）并重新处理

        Returns:
            本轮已 ACK 的消息数
        """
        r = self._get_redis()
        self._last_claim = time.monotonic()
        acked = 0
        start_id = "0-0"
        while True:
            result = await r.xautoclaim(
                self.stream_name,
                self.group_name,
                self.consumer_name,
                min_idle_time=self.claim_idle_ms,
                start_id=start_id,
                count=self.batch_size,
            )
            start_id, claimed = result[0], result[1]
            # 已从流中删除的条目没有字段
            messages = [(message_id, data) for message_id, data in claimed if message_id and data is not None]
            if messages:
                logger.info("Reclaimed stale pending messages", count=len(messages), consumer=self.consumer_name)
                acked += await self.process_batch(messages)
            if start_id in ("0-0", b"0-0"):
                return acked

    async def get_pending_messages(self, count: int = 100) -> List[Dict[str, Any]]:
        """获取待处理（已投递未 ACK）的消息"""
        r = self._get_redis()
        pending = await r.xpending(self.stream_name, self.group_name)
        if not pending or pending.get("pending", 0) == 0:
            return []

        messages = await r.xpending_range(self.stream_name, self.group_name, min="-", max="+", count=count)
        return [
            {
                "message_id": msg["message_id"],
                "consumer": msg["consumer"],
                "idle_time_ms": msg["time_since_delivered"],
                "delivery_count": msg["times_delivered"],
            }
            for msg in messages
        ]
