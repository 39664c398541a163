"""
One open chat surface: socket, room membership, message list and sending, wired together.

    async with ChatSession(RoomContext(user_id=me, order_id=order)) as chat:
        await chat.send("Hello")
"""
from functools import partial
from typing import Any, Dict, Optional

from telehealth_chat.config import Settings, get_settings
from telehealth_chat.constants import EVENT_CHAT_ERROR, JOIN_ERROR_MARKERS, MESSAGE_EVENTS
from telehealth_chat.errors import ChatClientError, ChatTransportError, MissingRoomIdentifierError
from telehealth_chat.models import ConversationSession, RoomContext
from telehealth_chat.schemas import ChatErrorPayload
from telehealth_chat.services.chat_api import ChatApiClient
from telehealth_chat.services.connection_manager import ConnectionManager
from telehealth_chat.services.message_sender import Composer, MessageSender, SendResult
from telehealth_chat.services.message_store import MessageStore
from telehealth_chat.services.notifier import Notifier
from telehealth_chat.services.polling import PollingSupervisor
from telehealth_chat.services.room_joiner import RoomJoiner
from telehealth_chat.services.scroll_controller import ScrollController, Viewport
from telehealth_chat.utils.endpoints import EndpointResolver, make_endpoint_resolver
from telehealth_chat.utils.logger import get_logger
from telehealth_chat.utils.token_store import TokenStore

logger = get_logger("chat_session")


def is_join_failure(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in JOIN_ERROR_MARKERS)


class ChatSession:
    def __init__(
        self,
        context: RoomContext,
        *,
        settings: Settings | None = None,
        token_store: TokenStore | None = None,
        api: ChatApiClient | None = None,
        connection: ConnectionManager | None = None,
        polling: PollingSupervisor | None = None,
        notifier: Notifier | None = None,
        composer: Composer | None = None,
        viewport: Viewport | None = None,
        endpoint_resolver: EndpointResolver | None = None,
        sender_name: str | None = None,
        sender_role: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.token_store = token_store or TokenStore(settings=self.settings)
        if context.user_id is None:
            context = context.model_copy(update={"user_id": self.token_store.user_id()})
        self.context = context

        self.api = api or ChatApiClient(self.token_store, self.settings)
        self.connection = connection or ConnectionManager(self.settings, self.token_store)
        self.joiner = RoomJoiner(self.connection)
        self.store = MessageStore(match_skew_seconds=self.settings.ECHO_MATCH_SKEW_SECONDS)
        self.notifier = notifier or Notifier()
        self.sender = MessageSender(
            self.store,
            self.connection,
            self.api,
            notifier=self.notifier,
            composer=composer,
            settings=self.settings,
            sender_name=sender_name,
            sender_role=sender_role or self._token_role(),
        )
        self.polling = polling or PollingSupervisor(self.settings)
        self.scroll: Optional[ScrollController] = None
        if viewport is not None:
            self.scroll = ScrollController(viewport, self.settings)
            self.store.on_change(self.scroll.on_messages_changed)
        self.endpoint_resolver = endpoint_resolver or make_endpoint_resolver(settings=self.settings)

        self.opened = False
        self._authenticated_once = False

        # listeners go in before connect so nothing that arrives early is missed
        for event in MESSAGE_EVENTS:
            self.connection.subscribe(event, partial(self._handle_inbound, event))
        self.connection.subscribe(EVENT_CHAT_ERROR, self._handle_chat_error)
        self.connection.on_authenticated(self._handle_authenticated)
        self.connection.on_exhausted(self._handle_exhausted)

    def _token_role(self) -> str | None:
        role = self.token_store.role()
        return role.value if role else None

    @property
    def composer(self) -> Composer:
        return self.sender.composer

    @property
    def session(self) -> ConversationSession:
        return ConversationSession(
            room_id=self.context.room_id,
            connection_state=self.connection.state,
            joined_rooms=set(self.joiner.joined_rooms),
        )

    @property
    def poll_job_id(self) -> str:
        return f"chat_refresh_{self.context.room_id}"

    @property
    def polls_while_live(self) -> bool:
        """Direct conversations are kept in sync by polling even with a healthy socket."""
        return self.context.kind == "direct"

    # ------------------------------------------------------------- lifecycle

    async def open(self) -> bool:
        """Bring the surface up. False when the conversation has no room identifiers."""
        self.store.set_active_room(self.context)
        self.opened = True
        if self.context.room_id is None:
            self.store.error = "This conversation is missing its identifiers"
            self.notifier.error(self.store.error)
            return False

        await self._join()
        if await self.connection.connect(self.endpoint_resolver) and self.context.user_id:
            await self.connection.authenticate(self.context.user_id)
        await self.load_history()
        if self.polls_while_live:
            self._start_polling()
        return True

    async def switch(self, context: RoomContext) -> bool:
        """Move the surface to another conversation; nothing from the old room carries over."""
        if context.user_id is None:
            context = context.model_copy(update={"user_id": self.context.user_id})
        previous = self.context
        self.polling.stop(self.poll_job_id)
        if previous.room_id:
            await self.joiner.leave_room(previous.room_id)
        self.joiner.forget_all()
        self.sender.restored.clear()
        if self.scroll is not None:
            self.scroll.reset()

        self.context = context
        self.store.set_active_room(context)
        logger.info(f"🔀 Switched chat from {previous.room_id} to {context.room_id}")
        if context.room_id is None:
            self.store.error = "This conversation is missing its identifiers"
            self.notifier.error(self.store.error)
            return False

        await self._join()
        await self.load_history()
        if self.connection.exhausted or self.polls_while_live:
            self._start_polling()
        return True

    async def close(self) -> None:
        """Release everything this surface holds. Safe to call more than once."""
        self.polling.shutdown()
        if self.scroll is not None:
            self.scroll.close()
        self.joiner.forget_all()
        self.sender.restored.clear()
        await self.connection.disconnect()
        self.store.clear()
        await self.api.aclose()
        self.opened = False
        logger.info("👋 Chat session closed")

    async def __aenter__(self) -> "ChatSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -------------------------------------------------------------- actions

    async def send(self, text: str | None = None) -> SendResult:
        result = await self.sender.send(text)
        if result.ok and self.scroll is not None:
            self.scroll.scroll_to_latest()
        return result

    async def load_history(self) -> bool:
        try:
            fetch = self.api.history_fetcher(self.context)
        except MissingRoomIdentifierError as e:
            self.notifier.error(str(e))
            return False
        ok = await self.store.load_history(fetch)
        if not ok and self.store.error:
            self.notifier.error(self.store.error)
        elif ok and self.scroll is not None:
            self.scroll.scroll_to_latest()
        return ok

    async def refresh(self) -> int:
        """Merge a fresh history fetch into the list. Runs on the polling schedule; never raises."""
        context = self.context
        try:
            items = await self.api.history_fetcher(context)()
        except ChatClientError as e:
            logger.warning(f"⚠️ Chat refresh for {context.room_id} failed: {e}")
            return 0
        if self.context is not context:
            return 0
        added = self.store.merge_history(items)
        self.store.expire_pending(self.settings.PENDING_MAX_AGE_SECONDS)
        if added:
            logger.info(f"📥 Refresh added {added} message(s) to {context.room_id}")
        return added

    def set_visible(self, visible: bool) -> None:
        """Polling is suspended while the surface is hidden."""
        if visible:
            self.polling.resume(self.poll_job_id)
        else:
            self.polling.pause(self.poll_job_id)

    # ------------------------------------------------------------- internals

    async def _join(self) -> None:
        try:
            await self.joiner.join_room(self.context)
        except MissingRoomIdentifierError as e:
            self.notifier.error(str(e))
        except ChatTransportError as e:
            logger.error(f"❌ Could not join {self.context.room_id}: {e}")
            self.notifier.error("Could not join the chat room; messages may be delayed")

    def _start_polling(self) -> None:
        if self.context.room_id and not self.polling.is_running(self.poll_job_id):
            self.polling.start_chat_refresh(self.poll_job_id, self.refresh)

    def _handle_inbound(self, event: str, payload: Any = None) -> None:
        message = self.store.apply_inbound(event, payload)
        if message is not None:
            self.sender.withdraw_if_delivered(message)

    def _handle_chat_error(self, data: Dict[str, Any] | None = None) -> None:
        text = ChatErrorPayload.model_validate(data if isinstance(data, dict) else {}).message
        in_flight = [h for h in self.store.pending if h in self.sender.in_flight]
        if not in_flight or is_join_failure(text):
            logger.warning(f"⚠️ Server chat error: {text}")
            self.notifier.error(text)
            return
        # one error answers one send; the sender restores the composer and reports it
        oldest = min(in_flight, key=lambda h: h.created_at)
        self.store.rollback_optimistic(oldest, reason=text)

    async def _handle_authenticated(self, data: Dict[str, Any] | None = None) -> None:
        if not self.polls_while_live:
            self.polling.stop(self.poll_job_id)
        if not self._authenticated_once:
            self._authenticated_once = True
            return
        logger.info(f"🔄 Re-authenticated; catching up on {self.context.room_id}")
        await self.refresh()
        self.notifier.success("Reconnected")

    def _handle_exhausted(self) -> None:
        self.notifier.info("Live updates are unavailable; refreshing periodically")
        self._start_polling()
