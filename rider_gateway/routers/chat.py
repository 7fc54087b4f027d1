"""
Chat router: message history, send, and the realtime WebSocket for a ride.
"""
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from rider_gateway.config import get_settings
from rider_gateway.database import AsyncSessionLocal, get_db
from rider_gateway.dependencies import get_backend, get_broker, get_ws_backend
from rider_gateway.errors import GatewayError
from rider_gateway.middleware.auth import get_current_customer, get_websocket_customer
from rider_gateway.redis_client import get_redis
from rider_gateway.schemas.schemas import ChatMessageIn, ChatMessageOut
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.chat import ChatChannel, ChatStore, RedisBroker
from rider_gateway.services.notifications import Notice
from rider_gateway.services.polling import race

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/chat", tags=["Chat"])


async def _open_channel(
    ride_id: str, customer_id: str, backend: BackendClient, store: ChatStore, broker: RedisBroker
) -> ChatChannel:
    ride = await backend.get_customer_ride(ride_id, customer_id)
    driver_id = ride.driver.id if ride.driver else ride.driver_id
    session = await store.open_session(ride_id, customer_id, driver_id)
    return ChatChannel(store, broker, session, customer_id, event_type=get_settings().chat_event_type)


@router.get("/{ride_id}/messages", response_model=list[ChatMessageOut])
async def list_messages(
    ride_id: str,
    db: AsyncSession = Depends(get_db),
    backend: BackendClient = Depends(get_backend),
    broker: RedisBroker = Depends(get_broker),
    customer_id: str = Depends(get_current_customer),
):
    channel = await _open_channel(ride_id, customer_id, backend, ChatStore(db), broker)
    return await channel.load()


@router.post("/{ride_id}/messages", response_model=ChatMessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    ride_id: str,
    payload: ChatMessageIn,
    db: AsyncSession = Depends(get_db),
    backend: BackendClient = Depends(get_backend),
    broker: RedisBroker = Depends(get_broker),
    customer_id: str = Depends(get_current_customer),
):
    channel = await _open_channel(ride_id, customer_id, backend, ChatStore(db), broker)
    return await channel.send(payload.message)


@router.websocket("/{ride_id}/ws")
async def chat_ws(
    websocket: WebSocket,
    ride_id: str,
    notifications: bool = Query(True),
    customer_id: str = Depends(get_websocket_customer),
    backend: BackendClient = Depends(get_ws_backend),
):
    """
    Sends `history` once, then `message` for each new message from the other
    party and `notice` for toasts. Text frames from the client are sent as
    chat messages.
    The socket closes if the realtime relay fails.
    """
    await websocket.accept()
    redis = await get_redis()

    async def push_notice(notice: Notice) -> None:
        await websocket.send_json({"type": "notice", "data": notice.model_dump()})

    async with AsyncSessionLocal() as db:
        store = ChatStore(db)
        try:
            channel = await _open_channel(ride_id, customer_id, backend, store, RedisBroker(redis))
        except GatewayError as exc:
            await push_notice(Notice.from_error(exc))
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return

        async def relay() -> None:
            while True:
                msg = await channel.listen(timeout=1.0)
                if msg is not None:
                    await websocket.send_json({"type": "message", "data": msg.model_dump(mode="json")})

        async def receive() -> None:
            while True:
                text = await websocket.receive_text()
                try:
                    sent = await channel.send(text)
                except GatewayError as exc:
                    # persist failures already raised a notice via on_notice
                    if exc.status_code == 422:
                        await push_notice(Notice.from_error(exc))
                    continue
                await websocket.send_json({"type": "sent", "data": sent.model_dump(mode="json")})

        try:
            async with channel.open(on_notice=push_notice, notifications_enabled=notifications):
                await websocket.send_json({
                    "type": "history",
                    "data": [m.model_dump(mode="json") for m in channel.messages],
                })
                # a dead relay ends the socket instead of leaving a send-only chat
                await race(receive(), relay())
        except WebSocketDisconnect:
            logger.info("Chat for ride %s closed by customer %s", ride_id, customer_id)
