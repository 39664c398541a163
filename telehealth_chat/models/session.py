from typing import Optional, Set

from pydantic import BaseModel, Field

from telehealth_chat.constants import ConnectionState
from telehealth_chat.errors import MissingRoomIdentifierError
from telehealth_chat.utils.conversation_keys import (
    appointment_room_id,
    direct_room_id,
    pharmacy_request_room_id,
    pharmacy_room_id,
)


class RoomContext(BaseModel):
    """Business identifiers known for the conversation a chat surface shows.

    Whichever of the ids are known may be set; `kind` decides which room they describe:
    an order (medication request) room, the general pharmacy/patient room, or a direct
    doctor/patient conversation (optionally tied to an appointment).
    """
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    medical_request_id: Optional[str] = None
    pharmacy_id: Optional[str] = None
    patient_id: Optional[str] = None
    appointment_id: Optional[str] = None
    counterpart_id: Optional[str] = None
    receiver_model: str = "User"

    @property
    def order_key(self) -> str | None:
        return self.order_id or self.medical_request_id

    @property
    def kind(self) -> str | None:
        if self.order_key:
            return "order"
        if self.pharmacy_id and self.patient_id:
            return "pharmacy"
        if self.counterpart_id and self.user_id:
            return "direct"
        return None

    @property
    def room_id(self) -> str | None:
        kind = self.kind
        if kind == "order":
            return self.order_key
        if kind == "pharmacy":
            return pharmacy_room_id(self.pharmacy_id, self.patient_id)
        if kind == "direct":
            return direct_room_id(self.user_id, self.counterpart_id)
        return None

    def require_room_id(self) -> str:
        room_id = self.room_id
        if not room_id:
            raise MissingRoomIdentifierError(
                "Cannot resolve a chat room: need an order id, a pharmacy and patient id, "
                "or the current user and a counterpart id"
            )
        return room_id

    @property
    def recipient_id(self) -> str | None:
        """Who a message from the current user is addressed to."""
        if self.counterpart_id:
            return self.counterpart_id
        if self.pharmacy_id and self.pharmacy_id != self.user_id:
            return self.pharmacy_id
        if self.patient_id and self.patient_id != self.user_id:
            return self.patient_id
        return None

    def conversation_keys(self) -> Set[str]:
        """Every normalized key an inbound message may carry for this room."""
        kind = self.kind
        keys: Set[str] = set()
        if kind == "order":
            keys.add(self.order_key)
            if self.pharmacy_id:
                keys.add(pharmacy_request_room_id(self.pharmacy_id, self.order_key))
        elif kind == "pharmacy":
            keys.add(pharmacy_room_id(self.pharmacy_id, self.patient_id))
            keys.add(direct_room_id(self.pharmacy_id, self.patient_id))
        elif kind == "direct":
            keys.add(direct_room_id(self.user_id, self.counterpart_id))
            if self.appointment_id:
                keys.add(appointment_room_id(self.appointment_id))
        return keys


class ConversationSession(BaseModel):
    """State of one open chat surface."""
    room_id: Optional[str] = None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    joined_rooms: Set[str] = Field(default_factory=set)
