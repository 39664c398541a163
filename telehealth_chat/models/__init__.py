# Re-export client-side models
from .message import Message, parse_timestamp
from .session import RoomContext, ConversationSession
