"""
Message submission with optimistic UI.

Each send: composing -> optimistically-sent -> confirmed | failed.
The socket is preferred when authenticated and the room has a socket send event; those
events speak for the patient, so other roles always POST /chats. A failed send removes
its placeholder and puts the text back into the composer so nothing the user believes
was sent is silently lost.
"""
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from telehealth_chat.config import Settings, get_settings
from telehealth_chat.constants import EMIT_PATIENT_SEND, EMIT_PATIENT_TO_PHARMACY, Role, SendChannel, SendState
from telehealth_chat.errors import ChatClientError, ChatResponseError, ChatTransportError, ChatValidationError
from telehealth_chat.models import Message, RoomContext
from telehealth_chat.schemas import PatientSendMessagePayload, PatientToPharmacyPayload, SendMessageIn
from telehealth_chat.services.chat_api import ChatApiClient
from telehealth_chat.services.connection_manager import ConnectionManager
from telehealth_chat.services.message_store import MessageStore, OptimisticHandle
from telehealth_chat.services.notifier import Notifier
from telehealth_chat.utils.logger import get_logger

logger = get_logger("message_sender")


class Composer:
    """The message input field."""

    def __init__(self, text: str = "") -> None:
        self.text = text

    def take(self) -> str:
        text, self.text = self.text, ""
        return text

    def restore(self, text: str) -> None:
        # keep anything typed while the failed send was in flight
        self.text = f"{text} {self.text}" if self.text.strip() else text

    def withdraw(self, text: str) -> bool:
        """Undo `restore` for `text` if the user has not edited it since."""
        if self.text.strip() == text:
            self.text = ""
            return True
        if self.text.startswith(f"{text} "):
            self.text = self.text[len(text) + 1:]
            return True
        return False


@dataclass
class SendResult:
    state: SendState
    channel: Optional[SendChannel] = None
    message: Optional[Message] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == SendState.CONFIRMED


class MessageSender:
    def __init__(
        self,
        store: MessageStore,
        connection: ConnectionManager,
        api: ChatApiClient,
        notifier: Notifier | None = None,
        composer: Composer | None = None,
        settings: Settings | None = None,
        sender_name: str | None = None,
        sender_role: str | None = None,
    ) -> None:
        self.store = store
        self.connection = connection
        self.api = api
        self.notifier = notifier or Notifier()
        self.composer = composer or Composer()
        self.settings = settings or get_settings()
        self.sender_name = sender_name
        self.sender_role = sender_role
        self.in_flight: set[OptimisticHandle] = set()
        # failed sends whose text went back into the composer
        self.restored: List[OptimisticHandle] = []
        self.state = SendState.COMPOSING

    # ------------------------------------------------------------- routing

    def socket_ready(self) -> bool:
        return self.connection.is_authenticated and not self.connection.exhausted

    @property
    def sends_as_patient(self) -> bool:
        return self.sender_role == Role.PATIENT.value

    @staticmethod
    def socket_route(context: RoomContext, text: str, client_message_id: str) -> Optional[Tuple[str, dict]]:
        """Socket event and payload for this room, or None when the room has no socket send path."""
        if context.kind == "order" and context.pharmacy_id and context.user_id:
            payload = PatientSendMessagePayload(
                pharmacy_id=context.pharmacy_id,
                medical_request_id=context.order_key,
                order_id=context.order_key,
                patient_id=context.user_id,
                sender=context.user_id,
                message=text,
                client_message_id=client_message_id,
            )
            return EMIT_PATIENT_SEND, payload.model_dump(by_alias=True, exclude_none=True)
        if context.kind == "pharmacy":
            payload = PatientToPharmacyPayload(
                pharmacy_id=context.pharmacy_id,
                message=text,
                client_message_id=client_message_id,
            )
            return EMIT_PATIENT_TO_PHARMACY, payload.model_dump(by_alias=True, exclude_none=True)
        return None

    def rest_body(self, context: RoomContext, text: str, client_message_id: str) -> SendMessageIn:
        return SendMessageIn(
            receiver_id=context.recipient_id,
            receiver_model=context.receiver_model,
            message=text,
            sender_name=self.sender_name,
            medical_request_id=context.order_key,
            pharmacy_id=context.pharmacy_id,
            patient_id=context.patient_id,
            sender_role=self.sender_role,
            client_message_id=client_message_id,
        )

    def _validate(self, text: str) -> Tuple[str, RoomContext]:
        message_text = (text or "").strip()
        if not message_text:
            raise ChatValidationError("Message text is empty")
        context = self.store.context
        if context is None or not context.room_id:
            raise ChatValidationError("No active conversation to send to")
        if context.recipient_id is None and context.kind != "order":
            raise ChatValidationError("No recipient for this conversation")
        return message_text, context

    # ---------------------------------------------------------------- send

    async def send(self, text: str | None = None) -> SendResult:
        """Send `text`, or whatever is in the composer. Never raises."""
        raw = self.composer.text if text is None else text
        try:
            message_text, context = self._validate(raw)
        except ChatValidationError as e:
            logger.info(f"ℹ️ Send rejected: {e}")
            self.state = SendState.COMPOSING
            return SendResult(state=SendState.COMPOSING, error=str(e))

        if text is None or self.composer.text.strip() == message_text:
            self.composer.take()

        handle = self.store.insert_optimistic(
            message_text,
            sender_id=context.user_id,
            sender_name=self.sender_name,
            sender_role=self.sender_role,
        )
        self.in_flight.add(handle)
        self.state = SendState.OPTIMISTICALLY_SENT
        route = self.socket_route(context, message_text, handle.client_message_id) if self.sends_as_patient else None
        channel = SendChannel.SOCKET if route and self.socket_ready() else SendChannel.REST
        logger.info(f"📤 Sending message via {channel.value} to room {context.room_id}")

        try:
            if channel == SendChannel.SOCKET:
                await self._send_via_socket(handle, route)
            else:
                await self._send_via_rest(handle, context, message_text)
        except ChatClientError as e:
            if handle.confirmed:
                self.state = SendState.CONFIRMED
                return SendResult(state=SendState.CONFIRMED, channel=channel, message=handle.message)
            self.store.rollback_optimistic(handle)
            self.composer.restore(message_text)
            self.restored.append(handle)
            self.state = SendState.FAILED
            self.notifier.error(f"Failed to send message: {e}")
            return SendResult(state=SendState.FAILED, channel=channel, error=str(e))
        finally:
            self.in_flight.discard(handle)

        self.state = SendState.CONFIRMED
        logger.info(f"✅ Message {handle.message.id} confirmed")
        return SendResult(state=SendState.CONFIRMED, channel=channel, message=handle.message)

    async def _send_via_socket(self, handle: OptimisticHandle, route: Tuple[str, Any]) -> None:
        event, payload = route
        await self.connection.emit(event, payload)
        if await handle.wait(self.settings.OPTIMISTIC_CONFIRM_SECONDS):
            return
        if handle.failed:
            raise ChatTransportError(handle.error or "Conversation closed before the message was confirmed")
        logger.warning(f"⚠️ No echo for {handle.temp_id} within {self.settings.OPTIMISTIC_CONFIRM_SECONDS}s; checking history")
        await self._reconcile()
        if not handle.confirmed:
            raise ChatTransportError("Message delivery was not confirmed")

    async def _send_via_rest(self, handle: OptimisticHandle, context: RoomContext, text: str) -> None:
        persisted = await self.api.send_message(self.rest_body(context, text, handle.client_message_id))
        if handle.confirmed:
            return
        if persisted:
            self.store.confirm_optimistic(handle, persisted)
            return
        # success without a message body: the history has it
        await self._reconcile()
        if not handle.confirmed:
            raise ChatResponseError("Server did not return the sent message")

    async def _reconcile(self) -> None:
        context = self.store.context
        if context is None:
            return
        items = await self.api.history_fetcher(context)()
        if self.store.context is context:
            self.store.merge_history(items)

    def withdraw_if_delivered(self, message: Message) -> bool:
        """A server copy of a send already reported as failed: take its text back out of the composer."""
        if not message.is_own(self.store.user_id):
            return False
        for handle in self.restored:
            if handle.text == message.body and handle.sent_at <= message.timestamp + self.store.match_skew:
                self.restored.remove(handle)
                if self.composer.withdraw(handle.text):
                    logger.info(f"✅ Message {message.id} was delivered after it was reported failed")
                    self.notifier.info("Your message was delivered after all")
                return True
        return False
