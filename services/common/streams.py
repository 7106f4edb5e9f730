"""
ファンアウトチャネル — Redis Streams

Redis Pub/Sub は fire-and-forget 方式で、購読者がダウンしている間の
イベントは失われる。ここでは Redis Streams + コンシューマグループを使い、
購読キューごとに独立した耐久性と ACK を持たせる。

┌──────────────┐  XADD   ┌──────────────────┐  group: inventory ─▶ Inventory Service
│ Order Service │ ──────▶ │ orders.exchange  │  group: payments  ─▶ Payments Service
└──────────────┘         │   (Redis Stream)  │  group: rewards   ─▶ Rewards Service
                         └──────────────────┘

配信保証は at-least-once:
  ハンドラ処理後、XACK 前にクラッシュすると同じメッセージが再配信される。
  各コンシューマは event_id (注文 ID) で冪等に処理しなければならない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError, ResponseError

from .events import ORDER_CREATED_EVENT, OrderCreatedEvent

logger = logging.getLogger(__name__)

Handler = Callable[[OrderCreatedEvent], Awaitable[None]]


async def publish(redis: aioredis.Redis, topic: str, event: OrderCreatedEvent) -> str:
    """イベントをストリームに追記し、メッセージ ID を返す。"""
    return await redis.xadd(
        topic,
        {"pattern": event.pattern, "data": event.to_json()},
    )


async def ensure_group(redis: aioredis.Redis, stream: str, group: str) -> None:
    """
    コンシューマグループを作成する（既に存在すれば何もしない）。

    id="0" で作成するため、グループ作成前に発行されたイベントも配信される。
    """
    try:
        await redis.xgroup_create(stream, group, id="0", mkstream=True)
        logger.info("Created consumer group %s on %s", group, stream)
    except ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


class StreamConsumer:
    """1つの購読キュー(コンシューマグループ)からイベントを取り出してハンドラに渡す。"""

    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        group: str,
        consumer: str,
        handler: Handler,
        *,
        batch_size: int = 10,
        block_ms: int | None = 1000,
        claim_idle_ms: int | None = 60_000,
    ):
        self.redis = redis
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.handler = handler
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.stream}.dead"

    async def consume_once(self) -> int:
        """
        1回分の取り出しを行い、ACK したメッセージ数を返す。

        1. 停止したコンシューマが抱えたままのメッセージを引き取る (XAUTOCLAIM)
        2. 自分の未 ACK メッセージを再処理する（再配信）
        3. 新着メッセージを処理する
        """
        if self.claim_idle_ms is not None:
            await self.redis.xautoclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle_time=self.claim_idle_ms,
                start_id="0-0",
                count=self.batch_size,
                justid=True,
            )

        acked = await self._read_and_handle("0", block=None)
        acked += await self._read_and_handle(">", block=self.block_ms)
        return acked

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで取り出しを繰り返す。"""
        await ensure_group(self.redis, self.stream, self.group)
        logger.info(
            "Consuming %s as %s/%s", self.stream, self.group, self.consumer
        )
        while not shutdown_event.is_set():
            try:
                acked = await self.consume_once()
            except RedisError:
                logger.exception("Redis error while consuming %s", self.stream)
                acked = 0
            if not acked:
                await asyncio.sleep(0.1)

    async def _read_and_handle(self, last_id: str, block: int | None) -> int:
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: last_id},
            count=self.batch_size,
            block=block,
        )
        acked = 0
        for _stream, entries in response or []:
            for message_id, fields in entries:
                if await self._handle(message_id, fields):
                    await self.redis.xack(self.stream, self.group, message_id)
                    acked += 1
        return acked

    async def _handle(self, message_id: str, fields: dict | None) -> bool:
        """処理できたら True（ACK してよい）を返す。"""
        if not fields:
            # ストリームからトリムされたエントリ
            return True

        try:
            if fields.get("pattern") != ORDER_CREATED_EVENT:
                raise ValueError(f"unknown pattern: {fields.get('pattern')!r}")
            event = OrderCreatedEvent.from_json(fields["data"])
        except (KeyError, ValueError, ValidationError):
            logger.exception(
                "Undecodable message %s on %s, moving to %s",
                message_id, self.stream, self.dead_letter_stream,
            )
            await self.redis.xadd(
                self.dead_letter_stream,
                {**fields, "source_id": message_id, "group": self.group},
            )
            return True

        try:
            await self.handler(event)
        except Exception:
            # ACK しない → 未 ACK のまま残り、次の取り出しで再配信される
            logger.exception(
                "[%s] Failed to handle %s (%s), will be redelivered",
                self.group, event.event_id, message_id,
            )
            return False

        logger.info("[%s] Acknowledged %s (%s)", self.group, event.event_id, message_id)
        return True
