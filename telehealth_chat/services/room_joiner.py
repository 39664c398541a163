"""
Room joins on top of an authenticated socket.

Server handlers disagree on which join event and payload they expect, so an order
room is joined under both `joinOrderChatRoom` and `joinPharmacyChatRoom`. Joins are
idempotent per room id and replayed after every re-authentication. Direct doctor/patient
conversations are broadcast to the sorted-pair room, joined with `join-chat-room`.
"""
from typing import Any, Dict, List, Tuple

from telehealth_chat.constants import (
    EMIT_JOIN_CHAT_ROOM,
    EMIT_JOIN_ORDER_ROOM,
    EMIT_JOIN_PATIENT_ROOM,
    EMIT_JOIN_PHARMACY_ROOM,
    EMIT_LEAVE_ROOM,
    EVENT_CHAT_ROOM_JOINED,
    EVENT_PHARMACY_ROOM_JOINED,
)
from telehealth_chat.errors import ChatTransportError
from telehealth_chat.models import RoomContext
from telehealth_chat.schemas import JoinPharmacyRoomPayload
from telehealth_chat.services.connection_manager import ConnectionManager
from telehealth_chat.utils.logger import get_logger

logger = get_logger("room_joiner")


class RoomJoiner:
    def __init__(self, connection: ConnectionManager) -> None:
        self.connection = connection
        self.joined_rooms: set[str] = set()
        self.acknowledged_rooms: set[str] = set()
        self._contexts: Dict[str, RoomContext] = {}
        self._personal_room_for: str | None = None
        connection.on_disconnected(self.reset)
        connection.on_authenticated(self._handle_authenticated)
        connection.subscribe(EVENT_PHARMACY_ROOM_JOINED, self._handle_room_joined)
        connection.subscribe(EVENT_CHAT_ROOM_JOINED, self._handle_room_joined)

    @staticmethod
    def join_events(context: RoomContext) -> List[Tuple[str, Any]]:
        """Every (event, payload) needed for the server to put this socket in the context's room."""
        events: List[Tuple[str, Any]] = []
        kind = context.kind
        if kind == "order":
            events.append((EMIT_JOIN_ORDER_ROOM, context.order_key))
            if context.pharmacy_id:
                payload = JoinPharmacyRoomPayload(
                    pharmacy_id=context.pharmacy_id,
                    medical_request_id=context.order_key,
                    order_id=context.order_key,
                )
                events.append((EMIT_JOIN_PHARMACY_ROOM, payload.model_dump(by_alias=True, exclude_none=True)))
            else:
                logger.warning(f"⚠️ No pharmacy id for order {context.order_key}; joining the order room only")
        elif kind == "pharmacy":
            payload = JoinPharmacyRoomPayload(pharmacy_id=context.pharmacy_id, patient_id=context.patient_id)
            events.append((EMIT_JOIN_PHARMACY_ROOM, payload.model_dump(by_alias=True, exclude_none=True)))
        elif kind == "direct":
            events.append((EMIT_JOIN_CHAT_ROOM, {"roomId": context.room_id}))
        return events

    async def _join_personal_room(self) -> None:
        user_id = self.connection.user_id
        if not user_id or self._personal_room_for == user_id:
            return
        await self.connection.emit(EMIT_JOIN_PATIENT_ROOM, user_id)
        self._personal_room_for = user_id

    async def join_room(self, context: RoomContext) -> str:
        """Join the context's room. Raises MissingRoomIdentifierError before emitting anything."""
        room_id = context.require_room_id()
        self._contexts[room_id] = context
        if room_id in self.joined_rooms:
            return room_id
        if not self.connection.is_authenticated:
            logger.info(f"ℹ️ Room {room_id} will be joined once the socket is authenticated")
            return room_id

        await self._join_personal_room()
        for event, payload in self.join_events(context):
            await self.connection.emit(event, payload)
        self.joined_rooms.add(room_id)
        logger.info(f"👤 Joined chat room {room_id}")
        return room_id

    async def leave_room(self, room_id: str) -> None:
        self._contexts.pop(room_id, None)
        self.acknowledged_rooms.discard(room_id)
        if room_id not in self.joined_rooms:
            return
        self.joined_rooms.discard(room_id)
        if self.connection.connected:
            try:
                await self.connection.emit(EMIT_LEAVE_ROOM, {"roomId": room_id})
            except ChatTransportError as e:
                logger.warning(f"⚠️ Could not announce leaving {room_id}: {e}")
        logger.info(f"👋 Left chat room {room_id}")

    async def rejoin_all(self) -> None:
        for context in list(self._contexts.values()):
            try:
                await self.join_room(context)
            except ChatTransportError as e:
                logger.error(f"❌ Rejoin of {context.room_id} failed: {e}")

    def reset(self) -> None:
        """The server forgets room membership with the socket; so do we."""
        self.joined_rooms.clear()
        self.acknowledged_rooms.clear()
        self._personal_room_for = None

    def forget_all(self) -> None:
        self.reset()
        self._contexts.clear()

    async def _handle_authenticated(self, data: Dict[str, Any] | None = None) -> None:
        await self.rejoin_all()

    def _handle_room_joined(self, data: Dict[str, Any] | None = None) -> None:
        room_id = (data or {}).get("roomId")
        if room_id:
            self.acknowledged_rooms.add(str(room_id))
            logger.info(f"💬 Server confirmed chat room {room_id}")
