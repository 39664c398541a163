"""
Conversation key normalization.

The backend tags the same order-scoped conversation as `orderId`, `medicalRequestId`
or `requestId` depending on which handler produced the event. Everything inside the
client works with one canonical key; the aliases are resolved here, in this order:

    orderId -> medicalRequestId -> requestId

Messages without any order alias fall back to their `roomId`, then to the sorted
sender/receiver pair (the backend's direct-chat room id).
"""
from typing import Any, Mapping

ORDER_KEY_ALIASES = ("orderId", "medicalRequestId", "requestId")


def as_id(value: Any) -> str | None:
    """Coerce an id-ish wire value to a string.

    Populated references arrive as objects (`{"_id": ..., "name": ...}`).
    """
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("_id") or value.get("id")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def normalize_order_key(payload: Mapping[str, Any]) -> str | None:
    for alias in ORDER_KEY_ALIASES:
        key = as_id(payload.get(alias))
        if key:
            return key
    return None


def direct_room_id(user_id: str, other_id: str) -> str:
    ids = sorted([str(user_id), str(other_id)])
    return f"{ids[0]}_{ids[1]}"


def pharmacy_room_id(pharmacy_id: str, patient_id: str) -> str:
    return f"pharmacy_{pharmacy_id}_patient_{patient_id}"


def pharmacy_request_room_id(pharmacy_id: str, request_id: str) -> str:
    return f"pharmacy_{pharmacy_id}_request_{request_id}"


def appointment_room_id(appointment_id: str) -> str:
    return f"appointment_{appointment_id}"


def conversation_key_of(payload: Mapping[str, Any]) -> str | None:
    """Resolve the canonical conversation key of a raw message payload."""
    order_key = normalize_order_key(payload)
    if order_key:
        return order_key

    room_id = as_id(payload.get("roomId"))
    if room_id:
        return room_id

    sender_id = as_id(payload.get("senderId"))
    receiver_id = as_id(payload.get("receiverId"))
    if sender_id and receiver_id:
        return direct_room_id(sender_id, receiver_id)
    return None
