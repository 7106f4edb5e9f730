from datetime import datetime, timezone
from decimal import Decimal

from services.common import streams
from services.common.events import (
    ORDERS_EXCHANGE,
    SUBSCRIBER_GROUPS,
    EventOrder,
    EventOrderItem,
    OrderCreatedEvent,
)
from services.common.streams import StreamConsumer
from services.order.app.publisher import EventPublisher
from services.order.app.schemas import PublishStatus


def make_event(order_id=1, user_id=7) -> OrderCreatedEvent:
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return OrderCreatedEvent(
        event_id=f"order-{order_id}",
        order=EventOrder(id=order_id, user_id=user_id, total=Decimal("450"), created_at=now, updated_at=now),
        order_items=[
            EventOrderItem(product_id=1, quantity=2, price=Decimal("200")),
            EventOrderItem(product_id=2, quantity=1, price=Decimal("250")),
        ],
    )


class Recorder:
    def __init__(self, failures=0):
        self.events = []
        self.failures = failures

    async def __call__(self, event):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("consumer crashed before ack")
        self.events.append(event)


def consumer(redis, group, handler, name="c1"):
    return StreamConsumer(
        redis, ORDERS_EXCHANGE, group, name, handler, block_ms=None, claim_idle_ms=None
    )


async def pending_count(redis, group):
    info = await redis.xpending(ORDERS_EXCHANGE, group)
    return info["pending"]


async def test_every_group_receives_its_own_copy(redis):
    await EventPublisher(redis).declare_subscribers()
    await streams.publish(redis, ORDERS_EXCHANGE, make_event())

    recorders = {group: Recorder() for group in SUBSCRIBER_GROUPS}
    for group, recorder in recorders.items():
        assert await consumer(redis, group, recorder).consume_once() == 1

    for recorder in recorders.values():
        assert [e.event_id for e in recorder.events] == ["order-1"]
        assert recorder.events[0].order_items[0].price == Decimal("200")


async def test_group_created_after_publish_still_receives_event(redis):
    await streams.publish(redis, ORDERS_EXCHANGE, make_event())

    await streams.ensure_group(redis, ORDERS_EXCHANGE, "inventory")
    recorder = Recorder()
    await consumer(redis, "inventory", recorder).consume_once()

    assert len(recorder.events) == 1


async def test_ensure_group_is_idempotent(redis):
    await streams.ensure_group(redis, ORDERS_EXCHANGE, "inventory")
    await streams.ensure_group(redis, ORDERS_EXCHANGE, "inventory")

    assert await pending_count(redis, "inventory") == 0


async def test_failed_handler_leaves_message_pending_and_redelivers(redis):
    await streams.ensure_group(redis, ORDERS_EXCHANGE, "payments")
    await streams.publish(redis, ORDERS_EXCHANGE, make_event())
    recorder = Recorder(failures=1)
    payments = consumer(redis, "payments", recorder)

    assert await payments.consume_once() == 0
    assert await pending_count(redis, "payments") == 1

    assert await payments.consume_once() == 1
    assert [e.event_id for e in recorder.events] == ["order-1"]
    assert await pending_count(redis, "payments") == 0


async def test_failing_subscriber_does_not_block_others(redis):
    await EventPublisher(redis).declare_subscribers()
    await streams.publish(redis, ORDERS_EXCHANGE, make_event(1))
    await streams.publish(redis, ORDERS_EXCHANGE, make_event(2))

    broken = Recorder(failures=100)
    healthy = Recorder()
    await consumer(redis, "payments", broken).consume_once()
    await consumer(redis, "rewards", healthy).consume_once()

    assert [e.event_id for e in healthy.events] == ["order-1", "order-2"]
    assert await pending_count(redis, "payments") == 2
    assert await pending_count(redis, "rewards") == 0


async def test_undecodable_message_goes_to_dead_letter(redis):
    await streams.ensure_group(redis, ORDERS_EXCHANGE, "rewards")
    await redis.xadd(ORDERS_EXCHANGE, {"pattern": "order_created", "data": "{not json"})
    recorder = Recorder()
    rewards = consumer(redis, "rewards", recorder)

    assert await rewards.consume_once() == 1

    assert recorder.events == []
    dead = await redis.xrange(rewards.dead_letter_stream)
    assert len(dead) == 1
    assert dead[0][1]["group"] == "rewards"
    assert await pending_count(redis, "rewards") == 0


async def test_unknown_pattern_goes_to_dead_letter(redis):
    await streams.ensure_group(redis, ORDERS_EXCHANGE, "rewards")
    await redis.xadd(ORDERS_EXCHANGE, {"pattern": "order_shipped", "data": make_event().to_json()})
    rewards = consumer(redis, "rewards", Recorder())

    await rewards.consume_once()

    assert await redis.xlen(rewards.dead_letter_stream) == 1


async def test_publisher_reports_failure_when_channel_down(broken_redis):
    status = await EventPublisher(broken_redis).publish(make_event())

    assert status is PublishStatus.PUBLISH_FAILED

