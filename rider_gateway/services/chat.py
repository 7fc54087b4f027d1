"""
Ride chat: persisted history plus realtime delivery over Redis pub/sub.

Messages are written to Postgres first and only then broadcast, so a message
that failed to persist is never seen by the other party.
"""
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rider_gateway.errors import ChatSendError, ValidationFault
from rider_gateway.models.chat import ChatMessage, ChatSession
from rider_gateway.schemas.schemas import ChatMessageOut, SenderRoleEnum
from rider_gateway.services.notifications import Notice, NoticeSink

logger = logging.getLogger(__name__)


def room_for(ride_id: str) -> str:
    return f"room{ride_id}"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class ChatStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_session(self, ride_id: str) -> Optional[ChatSession]:
        result = await self.db.execute(
            select(ChatSession)
            .where(ChatSession.ride_id == ride_id, ChatSession.is_active.is_(True))
            .order_by(ChatSession.created_at.desc())
        )
        return result.scalars().first()

    async def open_session(self, ride_id: str, customer_id: str, driver_id: Optional[str]) -> ChatSession:
        """Return the ride's active session, creating it on first use."""
        session = await self.get_session(ride_id)
        if session is not None:
            if driver_id and session.driver_id != driver_id:
                session.driver_id = driver_id
                await self.db.commit()
            return session

        session = ChatSession(
            ride_id=ride_id,
            customer_id=customer_id,
            driver_id=driver_id,
            room_name=room_for(ride_id),
        )
        self.db.add(session)
        await self.db.commit()
        await self.db.refresh(session)
        logger.info("Chat session %s opened for ride %s", session.id, ride_id)
        return session

    async def list_messages(self, session: ChatSession) -> list[ChatMessage]:
        result = await self.db.execute(
            select(ChatMessage)
            .where(ChatMessage.chat_session_id == session.id, ChatMessage.is_deleted.is_(False))
            .order_by(ChatMessage.created_at.asc())
        )
        return list(result.scalars().all())

    async def add_message(
        self, session: ChatSession, sender_id: str, role: SenderRoleEnum, text: str
    ) -> ChatMessage:
        msg = ChatMessage(
            ride_id=session.ride_id,
            chat_session_id=session.id,
            sender_by=sender_id,
            sender_role=role.value,
            message=text,
        )
        try:
            self.db.add(msg)
            await self.db.commit()
            await self.db.refresh(msg)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Persisting chat message for ride %s failed: %s", session.ride_id, exc)
            raise ChatSendError("Your message could not be saved. Please try again.") from exc
        return msg


# ---------------------------------------------------------------------------
# Realtime broadcast
# ---------------------------------------------------------------------------

class Subscription:
    def __init__(self, pubsub):
        self._pubsub = pubsub

    async def next_event(self, timeout: float = 1.0) -> Optional[dict]:
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        try:
            return json.loads(message["data"])
        except (json.JSONDecodeError, TypeError) as exc:
            logger.error("Dropping malformed broadcast: %s", exc)
            return None


class RedisBroker:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish(self, room: str, event: str, payload: dict) -> None:
        await self.redis.publish(room, json.dumps({"event": event, "payload": payload}, default=str))

    @asynccontextmanager
    async def subscribe(self, room: str) -> AsyncIterator[Subscription]:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(room)
        logger.debug("Subscribed to %s", room)
        try:
            yield Subscription(pubsub)
        finally:
            await pubsub.unsubscribe(room)
            await pubsub.aclose()
            logger.debug("Unsubscribed from %s", room)


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

class ChatChannel:
    def __init__(
        self,
        store: ChatStore,
        broker: RedisBroker,
        session: ChatSession,
        user_id: str,
        event_type: str = "chat_message",
        role: SenderRoleEnum = SenderRoleEnum.customer,
    ):
        self.store = store
        self.broker = broker
        self.session = session
        self.user_id = user_id
        self.event_type = event_type
        self.role = role
        self.messages: list[ChatMessageOut] = []
        self._seen: set[str] = set()
        self._subscription: Optional[Subscription] = None
        self._on_notice: Optional[NoticeSink] = None
        self._notifications_enabled = False

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    async def load(self) -> list[ChatMessageOut]:
        rows = await self.store.list_messages(self.session)
        self.messages = [ChatMessageOut.model_validate(r) for r in rows]
        self._seen = {m.id for m in self.messages}
        return self.messages

    @asynccontextmanager
    async def open(
        self, on_notice: Optional[NoticeSink] = None, notifications_enabled: bool = True
    ) -> AsyncIterator["ChatChannel"]:
        await self.load()
        async with self.broker.subscribe(self.session.room_name) as subscription:
            self._subscription = subscription
            self._on_notice = on_notice
            self._notifications_enabled = notifications_enabled
            try:
                yield self
            finally:
                self._subscription = None
                self._on_notice = None

    async def _notify(self, notice: Notice) -> None:
        if self._on_notice is not None:
            await self._on_notice(notice)

    async def handle_incoming(self, event: dict) -> Optional[ChatMessageOut]:
        """Apply one broadcast. Returns the message if it is new to this channel."""
        if event.get("event") != self.event_type:
            return None
        try:
            msg = ChatMessageOut.model_validate(event.get("payload") or {})
        except ValidationError as exc:
            logger.error("Dropping malformed chat payload: %s", exc)
            return None

        if msg.id in self._seen or msg.sender_by == self.user_id:
            return None
        self._seen.add(msg.id)
        self.messages.append(msg)

        if msg.sender_role == SenderRoleEnum.driver and self._notifications_enabled:
            await self._notify(Notice(title="New message from driver", description=msg.message))
        return msg

    async def listen(self, timeout: float = 1.0) -> Optional[ChatMessageOut]:
        """Wait up to `timeout` seconds for the next new message."""
        if self._subscription is None:
            raise RuntimeError("channel is not open")
        event = await self._subscription.next_event(timeout)
        if event is None:
            return None
        return await self.handle_incoming(event)

    async def send(self, text: str) -> ChatMessageOut:
        text = text.strip()
        if not text:
            raise ValidationFault("Message is empty")
        try:
            row = await self.store.add_message(self.session, self.user_id, self.role, text)
        except ChatSendError as exc:
            await self._notify(Notice.from_error(exc))
            raise

        msg = ChatMessageOut.model_validate(row)
        self._seen.add(msg.id)
        self.messages.append(msg)
        await self.broker.publish(self.session.room_name, self.event_type, msg.model_dump(mode="json"))
        return msg
