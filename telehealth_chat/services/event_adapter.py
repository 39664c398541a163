"""
Adapter from the backend's "a message arrived" socket events to one normalized shape.

`newMessage`, `new-message` and `pharmacy-chat-message` carry the message flat;
`newPharmacyChatMessage` wraps it as `{message: {...}, roomId, orderId, medicalRequestId}`.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping

from telehealth_chat.constants import EVENT_NEW_PHARMACY_CHAT_MESSAGE, MESSAGE_EVENTS
from telehealth_chat.errors import MessageShapeError
from telehealth_chat.models import Message
from telehealth_chat.utils.conversation_keys import ORDER_KEY_ALIASES


@dataclass(frozen=True)
class InboundMessage:
    event: str
    message: Message


def _unwrap(event: str, payload: Any) -> Any:
    if event != EVENT_NEW_PHARMACY_CHAT_MESSAGE or not isinstance(payload, Mapping):
        return payload
    inner = payload.get("message")
    if not isinstance(inner, Mapping):
        # some emitters send the message itself under this event name
        return payload
    merged: Dict[str, Any] = dict(inner)
    # the envelope knows the order/room even when the inner object does not
    for key in (*ORDER_KEY_ALIASES, "roomId"):
        if not merged.get(key) and payload.get(key):
            merged[key] = payload[key]
    return merged


def normalize_inbound(event: str, payload: Any, arrived_at: datetime | None = None) -> InboundMessage:
    """Raises MessageShapeError for unknown events or unusable payloads."""
    if event not in MESSAGE_EVENTS:
        raise MessageShapeError(f"Not a message event: {event}")
    return InboundMessage(event=event, message=Message.from_payload(_unwrap(event, payload), fallback_time=arrived_at))
