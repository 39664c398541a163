"""
Ordered, de-duplicated message list for the active room.

Three sources feed it: REST history, optimistic local sends, and inbound socket
events. Entries are kept ascending by timestamp with arrival order breaking ties;
server ids are unique. Optimistic placeholders are correlated to their server copy by
the client message id when the transport echoes it, otherwise by (own sender, text),
oldest placeholder first. A text match must be a server id not seen before in this room
and must not predate the send by more than the allowed clock skew.
"""
import asyncio
import bisect
import itertools
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from telehealth_chat.constants import MessageStatus, TEMP_ID_PREFIX
from telehealth_chat.errors import ChatClientError, MessageShapeError
from telehealth_chat.models import Message, RoomContext
from telehealth_chat.models.message import EPOCH
from telehealth_chat.services.event_adapter import normalize_inbound
from telehealth_chat.utils.logger import get_logger

logger = get_logger("message_store")

HistoryFetcher = Callable[[], Awaitable[List[Any]]]
ChangeListener = Callable[[int, int], None]


@dataclass(eq=False)
class OptimisticHandle:
    """Ties one in-flight send to its placeholder entry."""
    temp_id: str
    client_message_id: str
    text: str
    created_at: float = field(default_factory=time.monotonic)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message: Optional[Message] = None
    failed: bool = False
    error: Optional[str] = None
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def confirmed(self) -> bool:
        return self.message is not None

    async def wait(self, timeout: float) -> bool:
        """Wait until confirmed or rolled back; True only if confirmed in time."""
        try:
            await asyncio.wait_for(self.settled.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.confirmed


class MessageStore:
    def __init__(self, context: RoomContext | None = None, match_skew_seconds: float = 30.0) -> None:
        self._entries: List[Message] = []
        self._arrival: Dict[str, int] = {}
        # server ids listed at any point since the room became active
        self._seen_ids: set[str] = set()
        self.match_skew = timedelta(seconds=match_skew_seconds)
        self._pending: Dict[str, OptimisticHandle] = {}
        self._seq = itertools.count()
        self._temp_seq = itertools.count()
        self._listeners: List[ChangeListener] = []
        self._generation = 0
        self.context: RoomContext | None = None
        self._keys: set[str] = set()
        self.error: str | None = None
        self.loading = False
        if context is not None:
            self.set_active_room(context)

    # ------------------------------------------------------------------ state

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._entries)

    def texts(self) -> List[str]:
        return [m.body for m in self._entries]

    def ids(self) -> List[str]:
        return [m.id for m in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._arrival

    @property
    def user_id(self) -> str | None:
        return self.context.user_id if self.context else None

    @property
    def pending(self) -> List[OptimisticHandle]:
        return list(self._pending.values())

    def on_change(self, listener: ChangeListener) -> None:
        """Listener receives (old_length, new_length) after every mutation that changes the list."""
        self._listeners.append(listener)

    def _notify(self, before: int) -> None:
        after = len(self._entries)
        for listener in list(self._listeners):
            try:
                listener(before, after)
            except Exception as e:
                logger.error(f"❌ Message list listener failed: {e}")

    def set_active_room(self, context: RoomContext | None) -> None:
        """Switch rooms; the previous room's entries and placeholders are discarded."""
        before = len(self._entries)
        for handle in self._pending.values():
            handle.failed = True
            handle.settled.set()
        self._entries.clear()
        self._arrival.clear()
        self._seen_ids.clear()
        self._pending.clear()
        self._generation += 1
        self.context = context
        self._keys = context.conversation_keys() if context else set()
        self.error = None
        if before:
            self._notify(before)

    def clear(self) -> None:
        self.set_active_room(None)

    def accepts(self, message: Message) -> bool:
        """Room isolation: only messages whose normalized key belongs to the active room."""
        return bool(message.conversation_key) and message.conversation_key in self._keys

    # ------------------------------------------------------------- ordering

    def _sort_key(self, message: Message) -> Tuple[datetime, int]:
        return (message.timestamp, self._arrival[message.id])

    def _insert_sorted(self, message: Message) -> None:
        self._arrival[message.id] = next(self._seq)
        if not message.is_pending:
            self._seen_ids.add(message.id)
        bisect.insort(self._entries, message, key=self._sort_key)

    def _index_of(self, message_id: str) -> int:
        for i in range(len(self._entries) - 1, -1, -1):
            if self._entries[i].id == message_id:
                return i
        return -1

    def _in_order_at(self, index: int) -> bool:
        key = self._sort_key(self._entries[index])
        if index > 0 and self._sort_key(self._entries[index - 1]) > key:
            return False
        if index + 1 < len(self._entries) and key > self._sort_key(self._entries[index + 1]):
            return False
        return True

    def _remove(self, message_id: str) -> bool:
        index = self._index_of(message_id)
        if index < 0:
            return False
        self._entries.pop(index)
        self._arrival.pop(message_id, None)
        return True

    # --------------------------------------------------------------- history

    def _parse_many(self, items: Iterable[Any], fallback: datetime | None) -> List[Message]:
        parsed: List[Message] = []
        for item in items:
            try:
                parsed.append(Message.from_payload(item, fallback_time=fallback))
            except MessageShapeError as e:
                logger.warning(f"⚠️ Skipping malformed history entry: {e}")
        return parsed

    async def load_history(self, fetch: HistoryFetcher) -> bool:
        """Replace the list with a fresh REST fetch. Never raises; returns False on failure.

        In-flight placeholders survive the replacement.
        """
        generation = self._generation
        self.loading = True
        try:
            items = await fetch()
        except ChatClientError as e:
            if generation == self._generation:
                before = len(self._entries)
                self._entries = [m for m in self._entries if m.is_pending]
                self._arrival = {m.id: self._arrival[m.id] for m in self._entries}
                self.error = f"Failed to load chat history: {e}"
                logger.error(f"❌ {self.error}")
                self._notify(before)
            return False
        finally:
            if generation == self._generation:
                self.loading = False

        if generation != self._generation:
            logger.info("ℹ️ Discarding history fetched for a room that is no longer active")
            return False

        if not isinstance(items, list):
            items = []
        parsed = self._parse_many(items, EPOCH)
        # history is sorted by createdAt -> timestamp -> 0; stable sort keeps server order on ties
        parsed.sort(key=lambda m: m.timestamp)

        before = len(self._entries)
        placeholders = [m for m in self._entries if m.is_pending]
        self._entries = []
        self._arrival = {}
        for message in parsed:
            if message.id in self._arrival:
                continue
            handle = self._find_pending_for(message)
            if handle is not None:
                message = self._settle(handle, message, insert_if_missing=False)
            self._arrival[message.id] = next(self._seq)
            self._seen_ids.add(message.id)
            self._entries.append(message)
        still_pending = self._pending_temp_ids()
        for placeholder in placeholders:
            if placeholder.id in still_pending:
                self._insert_sorted(placeholder)
        self.error = None
        logger.info(f"📥 Loaded {len(parsed)} message(s) for room {self.context.room_id if self.context else None}")
        self._notify(before)
        return True

    def merge_history(self, items: Iterable[Any]) -> int:
        """Reconcile a re-fetched history into the current list; returns how many entries were added."""
        before = len(self._entries)
        added = 0
        for message in self._parse_many(items, EPOCH):
            existing = self._index_of(message.id)
            if existing >= 0:
                if message.is_read and not self._entries[existing].is_read:
                    self._entries[existing] = self._entries[existing].model_copy(update={"is_read": True})
                continue
            if self._confirm_matching_pending(message):
                continue
            self._insert_sorted(message)
            added += 1
        if len(self._entries) != before or added:
            self._notify(before)
        return added

    # --------------------------------------------------------------- inbound

    def apply_inbound(self, event: str, payload: Any, arrived_at: datetime | None = None) -> Message | None:
        """Store a live message if it belongs to the active room and is not already present."""
        try:
            inbound = normalize_inbound(event, payload, arrived_at or datetime.now(timezone.utc))
        except MessageShapeError as e:
            logger.warning(f"⚠️ Dropping {event} payload: {e}")
            return None

        message = inbound.message
        if not self.accepts(message):
            logger.debug(f"Dropping {event} for conversation {message.conversation_key} (active: {sorted(self._keys)})")
            return None
        if message.id in self._arrival:
            return None

        before = len(self._entries)
        if not self._confirm_matching_pending(message):
            self._insert_sorted(message)
        self._notify(before)
        return message

    # ------------------------------------------------------------ optimistic

    def _pending_temp_ids(self) -> set[str]:
        return {h.temp_id for h in self._pending.values()}

    def _new_temp_id(self) -> str:
        return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}_{next(self._temp_seq)}"

    def insert_optimistic(
        self,
        text: str,
        sender_id: str | None = None,
        sender_name: str | None = None,
        sender_role: str | None = None,
    ) -> OptimisticHandle:
        handle = OptimisticHandle(
            temp_id=self._new_temp_id(),
            client_message_id=uuid.uuid4().hex,
            text=text,
        )
        placeholder = Message(
            id=handle.temp_id,
            conversation_key=self.context.room_id if self.context else None,
            order_id=self.context.order_key if self.context else None,
            sender_id=sender_id or self.user_id,
            sender_name=sender_name,
            sender_role=sender_role,
            body=text,
            timestamp=handle.sent_at,
            status=MessageStatus.PENDING,
            client_message_id=handle.client_message_id,
        )
        before = len(self._entries)
        self._pending[handle.client_message_id] = handle
        self._insert_sorted(placeholder)
        self._notify(before)
        return handle

    def _find_pending_for(self, message: Message) -> OptimisticHandle | None:
        if message.client_message_id and message.client_message_id in self._pending:
            return self._pending[message.client_message_id]
        if not message.is_own(self.user_id) or message.id in self._seen_ids:
            return None
        cutoff = message.timestamp + self.match_skew
        candidates = [h for h in self._pending.values() if h.text == message.body and h.sent_at <= cutoff]
        if not candidates:
            return None
        return min(candidates, key=lambda h: h.created_at)

    def _confirm_matching_pending(self, message: Message, insert_if_missing: bool = True) -> bool:
        handle = self._find_pending_for(message)
        if handle is None:
            return False
        self._settle(handle, message, insert_if_missing=insert_if_missing)
        return True

    def _settle(self, handle: OptimisticHandle, message: Message, insert_if_missing: bool = True) -> Message:
        self._pending.pop(handle.client_message_id, None)
        confirmed = message.model_copy(update={
            "status": MessageStatus.CONFIRMED,
            "conversation_key": message.conversation_key or (self.context.room_id if self.context else None),
            "client_message_id": handle.client_message_id,
        })

        index = self._index_of(handle.temp_id)
        if confirmed.id in self._arrival:
            # the server copy is already listed; the placeholder just goes away
            if index >= 0:
                self._remove(handle.temp_id)
        elif index >= 0:
            seq = self._arrival.pop(handle.temp_id)
            self._entries[index] = confirmed
            self._arrival[confirmed.id] = seq
            if not self._in_order_at(index):
                # server clock moved it; keep the list sorted
                self._entries.pop(index)
                bisect.insort(self._entries, confirmed, key=self._sort_key)
        elif insert_if_missing:
            self._insert_sorted(confirmed)

        self._seen_ids.add(confirmed.id)
        handle.message = confirmed
        handle.settled.set()
        return confirmed

    def confirm_optimistic(self, handle: OptimisticHandle, server_message: Message | Mapping[str, Any]) -> Message:
        """Swap the placeholder for the server copy in place; it only moves if the server timestamp requires it."""
        if handle.confirmed:
            return handle.message
        if not isinstance(server_message, Message):
            index = self._index_of(handle.temp_id)
            fallback = self._entries[index].timestamp if index >= 0 else datetime.now(timezone.utc)
            server_message = Message.from_payload(server_message, fallback_time=fallback)
        before = len(self._entries)
        confirmed = self._settle(handle, server_message)
        self._notify(before)
        return confirmed

    def rollback_optimistic(self, handle: OptimisticHandle, reason: str | None = None) -> bool:
        """Remove the placeholder. The caller restores the composer text."""
        if handle.confirmed:
            return False
        before = len(self._entries)
        self._pending.pop(handle.client_message_id, None)
        removed = self._remove(handle.temp_id)
        handle.failed = True
        handle.error = reason
        handle.settled.set()
        if removed:
            self._notify(before)
        return removed

    def expire_pending(self, max_age: float) -> List[OptimisticHandle]:
        """Drop placeholders older than `max_age` seconds that were never confirmed."""
        now = time.monotonic()
        expired = [h for h in self._pending.values() if now - h.created_at >= max_age]
        for handle in expired:
            self.rollback_optimistic(handle)
        if expired:
            logger.warning(f"⚠️ Expired {len(expired)} unconfirmed message(s)")
        return expired
