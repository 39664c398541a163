from enum import Enum

class Role(str, Enum):
    """Roles that can take part in a conversation."""
    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"
    PHARMACY = "pharmacy"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


class MessageStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class SendState(str, Enum):
    """Lifecycle of a single send attempt."""
    COMPOSING = "composing"
    OPTIMISTICALLY_SENT = "optimistically-sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SendChannel(str, Enum):
    SOCKET = "socket"
    REST = "rest"


TEMP_ID_PREFIX = "temp_"

# Inbound socket events meaning "a message arrived"
EVENT_NEW_MESSAGE = "newMessage"
EVENT_NEW_PHARMACY_CHAT_MESSAGE = "newPharmacyChatMessage"
EVENT_PHARMACY_CHAT_MESSAGE = "pharmacy-chat-message"
EVENT_NEW_MESSAGE_LEGACY = "new-message"
MESSAGE_EVENTS = (
    EVENT_NEW_MESSAGE,
    EVENT_NEW_PHARMACY_CHAT_MESSAGE,
    EVENT_PHARMACY_CHAT_MESSAGE,
    EVENT_NEW_MESSAGE_LEGACY,
)

# Other inbound events
EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"
EVENT_AUTHENTICATED = "authenticated"
EVENT_PHARMACY_ROOM_JOINED = "pharmacy-chat-room-joined"
EVENT_CHAT_ROOM_JOINED = "chat-room-joined"
EVENT_CHAT_ERROR = "chat-error"

# Outbound events
EMIT_AUTHENTICATE = "authenticate"
EMIT_JOIN_PATIENT_ROOM = "joinPatientRoom"
EMIT_JOIN_ORDER_ROOM = "joinOrderChatRoom"
EMIT_JOIN_PHARMACY_ROOM = "joinPharmacyChatRoom"
EMIT_JOIN_CHAT_ROOM = "join-chat-room"
EMIT_LEAVE_ROOM = "leave-chat-room"
EMIT_PATIENT_SEND = "patientSendMessage"
EMIT_PATIENT_TO_PHARMACY = "patientToPharmacyMessage"

# chat-error texts the server sends when a room join fails rather than a send
JOIN_ERROR_MARKERS = ("join", "order not found")
