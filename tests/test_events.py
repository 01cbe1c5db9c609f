"""Tests for typed events and queue-based delivery."""

from unittest.mock import AsyncMock

from core.enums import EventType
from core.events import EventBus, GroupDeactivatedEvent, GroupErrorEvent, TradingStoppedEvent


class TestEvents:
    def test_event_type_and_timestamp_are_set(self):
        event = GroupDeactivatedEvent(group_id="group_1", reason="all_pairs_insufficient_margin")

        assert event.event_type == EventType.GROUP_DEACTIVATED
        assert event.timestamp is not None
        assert event.error == ""


class TestEventBus:
    async def test_delivers_to_global_and_group_subscribers(self):
        bus = EventBus()
        await bus.start()
        everyone = AsyncMock()
        only_group_2 = AsyncMock()
        await bus.subscribe(EventType.GROUP_ERROR, everyone)
        await bus.subscribe(EventType.GROUP_ERROR, only_group_2, group_id="group_2")

        await bus.publish(GroupErrorEvent(group_id="group_1", error="boom"))
        await bus.publish(GroupErrorEvent(group_id="group_2", error="bang"))
        await bus.stop()

        assert everyone.await_count == 2
        only_group_2.assert_awaited_once()
        assert only_group_2.await_args.args[0].error == "bang"

    async def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        await bus.start()
        broken = AsyncMock(side_effect=RuntimeError("handler failed"))
        healthy = AsyncMock()
        await bus.subscribe(EventType.TRADING_STOPPED, broken)
        await bus.subscribe(EventType.TRADING_STOPPED, healthy)

        await bus.publish(TradingStoppedEvent(group_id="system"))
        await bus.stop()

        healthy.assert_awaited_once()

    async def test_publish_before_start_is_dropped(self):
        bus = EventBus()
        handler = AsyncMock()
        await bus.subscribe(EventType.TRADING_STOPPED, handler)

        await bus.publish(TradingStoppedEvent(group_id="system"))

        handler.assert_not_awaited()

    async def test_unsubscribe_removes_handler(self):
        bus = EventBus()
        await bus.start()
        handler = AsyncMock()
        await bus.subscribe(EventType.TRADING_STOPPED, handler)
        await bus.unsubscribe(handler)

        await bus.publish(TradingStoppedEvent(group_id="system"))
        await bus.stop()

        handler.assert_not_awaited()
