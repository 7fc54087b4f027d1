"""
Unit tests for the ride chat channel and its store.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError
from unittest.mock import AsyncMock, MagicMock

from rider_gateway.errors import ChatSendError
from rider_gateway.schemas.schemas import SenderRoleEnum
from rider_gateway.services.chat import ChatChannel, ChatStore, RedisBroker, room_for

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def row(msg_id, sender="drv-1", role="driver", text="On my way"):
    return SimpleNamespace(
        id=msg_id, ride_id="r1", chat_session_id="s1", sender_by=sender, sender_role=role,
        message=text, is_read=False, is_deleted=False, created_at=NOW,
    )


def event(msg_id, sender="drv-1", role="driver", text="On my way", kind="chat_message"):
    payload = vars(row(msg_id, sender, role, text)).copy()
    payload["created_at"] = NOW.isoformat()
    return {"event": kind, "payload": payload}


class FakeBroker:
    def __init__(self):
        self.published = []
        self.queue: asyncio.Queue = asyncio.Queue()
        self.subscribed = []
        self.unsubscribed = []

    async def publish(self, room, event_type, payload):
        self.published.append((room, event_type, payload))

    @asynccontextmanager
    async def subscribe(self, room):
        self.subscribed.append(room)
        try:
            yield SimpleNamespace(next_event=self._next)
        finally:
            self.unsubscribed.append(room)

    async def _next(self, timeout=1.0):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


def channel_with(store=None, broker=None):
    session = SimpleNamespace(id="s1", ride_id="r1", room_name=room_for("r1"))
    if store is None:
        store = AsyncMock()
        store.list_messages.return_value = [row("m1")]
    return ChatChannel(store, broker or FakeBroker(), session, "cust-1")


@pytest.mark.asyncio
class TestChatChannel:
    async def test_open_loads_history_and_always_unsubscribes(self):
        broker = FakeBroker()
        channel = channel_with(broker=broker)
        with pytest.raises(RuntimeError):
            async with channel.open():
                assert [m.id for m in channel.messages] == ["m1"]
                assert channel.subscribed
                raise RuntimeError("view closed")
        assert broker.subscribed == broker.unsubscribed == ["roomr1"]
        assert not channel.subscribed

    async def test_duplicate_and_own_echo_dropped(self):
        channel = channel_with()
        await channel.load()
        assert await channel.handle_incoming(event("m1")) is None
        assert await channel.handle_incoming(event("m2", sender="cust-1", role="customer")) is None
        fresh = await channel.handle_incoming(event("m3"))
        assert fresh.id == "m3"
        assert await channel.handle_incoming(event("m3")) is None
        assert [m.id for m in channel.messages] == ["m1", "m3"]

    async def test_other_event_types_ignored(self):
        channel = channel_with()
        assert await channel.handle_incoming(event("m9", kind="typing")) is None

    async def test_driver_message_raises_notice(self):
        notices = []

        async def sink(notice):
            notices.append(notice)

        channel = channel_with()
        async with channel.open(on_notice=sink):
            await channel.handle_incoming(event("m5", text="I'm outside"))
        assert notices[0].description == "I'm outside"

    async def test_notices_can_be_disabled(self):
        sink = AsyncMock()
        channel = channel_with()
        async with channel.open(on_notice=sink, notifications_enabled=False):
            await channel.handle_incoming(event("m5"))
        sink.assert_not_awaited()

    async def test_listen_returns_broadcast_message(self):
        broker = FakeBroker()
        channel = channel_with(broker=broker)
        async with channel.open():
            await broker.queue.put(event("m7"))
            msg = await channel.listen(timeout=0.5)
        assert msg.id == "m7"

    async def test_send_persists_then_broadcasts(self):
        broker = FakeBroker()
        store = AsyncMock()
        store.list_messages.return_value = []
        store.add_message.return_value = row("m8", sender="cust-1", role="customer", text="Thanks")
        channel = channel_with(store=store, broker=broker)

        msg = await channel.send("  Thanks ")

        store.add_message.assert_awaited_once_with(channel.session, "cust-1", SenderRoleEnum.customer, "Thanks")
        assert channel.messages[-1].id == "m8"
        room, kind, payload = broker.published[0]
        assert (room, kind, payload["id"]) == ("roomr1", "chat_message", "m8")
        # our own echo coming back over the broadcast is not appended twice
        assert await channel.handle_incoming(event("m8", sender="cust-1", role="customer")) is None
        assert msg.message == "Thanks"

    async def test_persist_failure_notifies_and_skips_broadcast(self):
        broker = FakeBroker()
        store = AsyncMock()
        store.list_messages.return_value = []
        store.add_message.side_effect = ChatSendError("Your message could not be saved. Please try again.")
        sink = AsyncMock()
        channel = channel_with(store=store, broker=broker)

        async with channel.open(on_notice=sink):
            with pytest.raises(ChatSendError):
                await channel.send("hello")

        assert broker.published == []
        assert channel.messages == []
        notice = sink.await_args.args[0]
        assert notice.title == "Failed to Send Message"
        assert notice.variant == "destructive"


@pytest.mark.asyncio
class TestChatStore:
    async def test_commit_failure_rolls_back(self):
        db = MagicMock()
        db.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
        db.rollback = AsyncMock()
        db.refresh = AsyncMock()
        store = ChatStore(db)
        session = SimpleNamespace(id="s1", ride_id="r1")

        with pytest.raises(ChatSendError):
            await store.add_message(session, "cust-1", SenderRoleEnum.customer, "hi")
        db.rollback.assert_awaited_once()


@pytest.mark.asyncio
class TestRedisBroker:
    async def test_publish_wraps_event(self):
        redis = AsyncMock()
        await RedisBroker(redis).publish("roomr1", "chat_message", {"id": "m1"})
        redis.publish.assert_awaited_once_with("roomr1", '{"event": "chat_message", "payload": {"id": "m1"}}')

    async def test_subscribe_closes_pubsub(self):
        pubsub = AsyncMock()
        redis = MagicMock()
        redis.pubsub.return_value = pubsub
        async with RedisBroker(redis).subscribe("roomr1"):
            pubsub.subscribe.assert_awaited_once_with("roomr1")
        pubsub.unsubscribe.assert_awaited_once_with("roomr1")
        pubsub.aclose.assert_awaited_once()
