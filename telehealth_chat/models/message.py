from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field

from telehealth_chat.constants import MessageStatus, TEMP_ID_PREFIX
from telehealth_chat.errors import MessageShapeError
from telehealth_chat.utils.conversation_keys import as_id, conversation_key_of, normalize_order_key

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

BODY_FIELDS = ("message", "text", "content", "body")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string, epoch number (seconds or milliseconds) or datetime into UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # JS Date.now() style millisecond stamps
        seconds = value / 1000 if abs(value) > 1e11 else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Message(BaseModel):
    """One chat message, either server-sourced or an optimistic local placeholder."""
    id: str
    conversation_key: Optional[str] = None
    room_id: Optional[str] = None
    order_id: Optional[str] = None
    sender_id: Optional[str] = None
    receiver_id: Optional[str] = None
    sender_role: Optional[str] = None
    sender_name: Optional[str] = None
    body: str = ""
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_read: bool = False
    status: MessageStatus = MessageStatus.CONFIRMED
    client_message_id: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def is_pending(self) -> bool:
        return self.status == MessageStatus.PENDING

    def is_own(self, user_id: Any) -> bool:
        """Right/left alignment: sender compared as string."""
        return user_id is not None and self.sender_id is not None and self.sender_id == str(user_id)

    @classmethod
    def from_payload(cls, payload: Any, fallback_time: datetime | None = None) -> "Message":
        """Build a message from any of the wire shapes the backend produces.

        Timestamp falls back through `createdAt` -> `timestamp` -> `fallback_time`
        (arrival time when omitted).
        """
        if not isinstance(payload, Mapping):
            raise MessageShapeError(f"Message payload must be an object, got {type(payload).__name__}")

        message_id = as_id(payload.get("_id")) or as_id(payload.get("id"))
        if not message_id:
            raise MessageShapeError("Message payload has no id")

        body = None
        for field in BODY_FIELDS:
            value = payload.get(field)
            if isinstance(value, str):
                body = value
                break
        file_url = payload.get("fileUrl")
        if body is None and not file_url:
            raise MessageShapeError(f"Message {message_id} has neither text nor attachment")

        timestamp = (
            parse_timestamp(payload.get("createdAt"))
            or parse_timestamp(payload.get("timestamp"))
            or fallback_time
            or datetime.now(timezone.utc)
        )

        return cls(
            id=message_id,
            conversation_key=conversation_key_of(payload),
            room_id=as_id(payload.get("roomId")),
            order_id=normalize_order_key(payload),
            sender_id=as_id(payload.get("senderId")) or as_id(payload.get("sender")),
            receiver_id=as_id(payload.get("receiverId")),
            sender_role=payload.get("senderRole"),
            sender_name=payload.get("senderName"),
            body=body or "",
            file_url=file_url,
            file_name=payload.get("fileName"),
            file_type=payload.get("fileType"),
            timestamp=timestamp,
            is_read=bool(payload.get("isRead", False)),
            status=MessageStatus.CONFIRMED,
            client_message_id=payload.get("clientMessageId") or payload.get("correlationId"),
        )
