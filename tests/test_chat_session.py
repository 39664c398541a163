"""Integration tests for a chat surface wired end to end against fakes."""

import asyncio
import json

import httpx
import pytest
from unittest.mock import MagicMock

from conftest import DOCTOR_ID, ORDER_ID, PATIENT_ID, PHARMACY_ID, ChatBackend, FakeSocket
from telehealth_chat.constants import ConnectionState, SendChannel
from telehealth_chat.models import RoomContext
from telehealth_chat.services.chat_api import ChatApiClient
from telehealth_chat.services.chat_session import ChatSession
from telehealth_chat.services.connection_manager import ConnectionManager
from telehealth_chat.services.polling import PollingSupervisor
from telehealth_chat.utils.conversation_keys import direct_room_id


class FakeViewport:
    def __init__(self):
        self.scroll_height = 1000
        self.client_height = 400
        self.scroll_top = 600
        self.scroll_calls = 0

    def scroll_to_bottom(self, smooth=True):
        self.scroll_calls += 1
        self.scroll_top = self.scroll_height - self.client_height


@pytest.fixture
def backend():
    return ChatBackend()


@pytest.fixture
def sock():
    return FakeSocket()


@pytest.fixture
def polling():
    supervisor = MagicMock(spec=PollingSupervisor)
    supervisor.is_running.return_value = False
    return supervisor


@pytest.fixture
def order_context():
    return RoomContext(order_id=ORDER_ID, pharmacy_id=PHARMACY_ID)


@pytest.fixture
def make_session(settings, token_store, backend, polling):
    def _make(context, sock, viewport=None):
        return ChatSession(
            context,
            settings=settings,
            token_store=token_store,
            api=ChatApiClient(token_store, settings, transport=httpx.MockTransport(backend)),
            connection=ConnectionManager(settings, token_store, socket_factory=lambda: sock),
            polling=polling,
            viewport=viewport,
            endpoint_resolver=lambda: "http://localhost:5001",
        )
    return _make


def history_item(id, text, created_at, **extra):
    item = {"_id": id, "message": text, "createdAt": created_at, "orderId": ORDER_ID, "senderId": PHARMACY_ID}
    item.update(extra)
    return item


class TestOpenAndClose:

    @pytest.mark.asyncio
    async def test_open_joins_room_and_loads_history(self, make_session, backend, sock, order_context):
        backend.history = [history_item("1", "a", "2024-01-01T10:00:00Z")]

        async with make_session(order_context, sock) as chat:
            assert chat.context.user_id == PATIENT_ID
            assert chat.store.texts() == ["a"]
            assert sock.emitted_events() == ["authenticate", "joinPatientRoom", "joinOrderChatRoom", "joinPharmacyChatRoom"]
            session = chat.session
            assert session.room_id == ORDER_ID
            assert session.connection_state == ConnectionState.AUTHENTICATED
            assert session.joined_rooms == {ORDER_ID}

            await sock.fire("newMessage", {"_id": "2", "orderId": ORDER_ID, "createdAt": "2024-01-01T10:00:05Z", "text": "b"})
            await sock.fire("newMessage", {"_id": "2", "orderId": ORDER_ID, "createdAt": "2024-01-01T10:00:05Z", "text": "b"})
            assert chat.store.texts() == ["a", "b"]

        assert not sock.connected
        assert len(chat.store) == 0
        assert chat.session.joined_rooms == set()

    @pytest.mark.asyncio
    async def test_other_rooms_do_not_leak_in(self, make_session, sock, order_context):
        async with make_session(order_context, sock) as chat:
            await sock.fire("newMessage", {"_id": "x", "orderId": "B", "text": "elsewhere"})
            assert len(chat.store) == 0

    @pytest.mark.asyncio
    async def test_missing_identifiers_do_not_connect(self, make_session, sock):
        chat = make_session(RoomContext(), sock)

        assert not await chat.open()

        assert sock.connect_calls == 0
        assert chat.notifier.last.level == "error"
        await chat.close()

    @pytest.mark.asyncio
    async def test_history_failure_is_reported(self, make_session, backend, sock, order_context):
        def broken(request):
            return httpx.Response(500, json={"success": False, "message": "Database unavailable"})

        chat = make_session(order_context, sock)
        chat.api = ChatApiClient(chat.token_store, chat.settings, transport=httpx.MockTransport(broken))
        chat.sender.api = chat.api

        assert await chat.open()
        assert "Database unavailable" in chat.notifier.last.text
        await chat.close()


class TestLiveUpdates:

    @pytest.mark.asyncio
    async def test_reconnect_catches_up_on_missed_messages(self, make_session, backend, sock, order_context):
        backend.history = [history_item("1", "a", "2024-01-01T10:00:00Z")]
        async with make_session(order_context, sock) as chat:
            await sock.fire("disconnect", "transport close")
            backend.history = backend.history + [history_item("2", "missed", "2024-01-01T10:01:00Z")]

            await asyncio.wait_for(chat.connection._reconnect_task, 1)

            assert chat.store.texts() == ["a", "missed"]
            assert sock.emitted_events().count("joinOrderChatRoom") == 2
            assert chat.notifier.last.text == "Reconnected"

    @pytest.mark.asyncio
    async def test_exhausted_socket_polls_and_sends_over_rest(self, make_session, backend, polling, order_context):
        sock = FakeSocket(fail_connects=5)
        async with make_session(order_context, sock) as chat:
            polling.start_chat_refresh.assert_called_once_with(chat.poll_job_id, chat.refresh)

            result = await chat.send("msg")

            assert result.channel == SendChannel.REST
            assert result.ok
            assert "patientSendMessage" not in sock.emitted_events()
            assert json.loads(backend.posts()[0].content)["message"] == "msg"
            assert chat.store.texts() == ["msg"]

    @pytest.mark.asyncio
    async def test_refresh_merges_new_messages(self, make_session, backend, order_context):
        sock = FakeSocket(fail_connects=5)
        async with make_session(order_context, sock) as chat:
            backend.history = [history_item("1", "a", "2024-01-01T10:00:00Z")]
            assert await chat.refresh() == 1
            assert await chat.refresh() == 0
            assert chat.store.texts() == ["a"]

    @pytest.mark.asyncio
    async def test_chat_error_rolls_back_in_flight_send(self, make_session, sock, order_context):
        sock.replies["patientSendMessage"] = lambda data: [("chat-error", {"message": "Pharmacy unavailable"})]
        async with make_session(order_context, sock) as chat:
            chat.composer.text = "Test"

            result = await chat.send()

            assert not result.ok
            assert "Test" not in chat.store.texts()
            assert chat.composer.text == "Test"
            assert "Pharmacy unavailable" in chat.notifier.last.text

    @pytest.mark.asyncio
    async def test_join_error_during_send_does_not_roll_it_back(self, make_session, sock, order_context):
        def join_error_then_echo(data):
            return [
                ("chat-error", {"message": "Failed to join pharmacy chat room"}),
                ("newMessage", {
                    "_id": "srv-1",
                    "orderId": ORDER_ID,
                    "senderId": PATIENT_ID,
                    "message": data["message"],
                    "clientMessageId": data["clientMessageId"],
                }),
            ]

        sock.replies["patientSendMessage"] = join_error_then_echo
        async with make_session(order_context, sock) as chat:
            chat.composer.text = "Refill please"

            result = await chat.send()

            assert result.ok
            assert chat.store.texts() == ["Refill please"]
            assert chat.composer.text == ""

    @pytest.mark.asyncio
    async def test_chat_error_rolls_back_only_the_oldest_send(self, make_session, sock, order_context):
        async with make_session(order_context, sock) as chat:
            first = chat.store.insert_optimistic("one")
            second = chat.store.insert_optimistic("two")
            chat.sender.in_flight.update({first, second})

            await sock.fire("chat-error", {"message": "Failed to send message"})

            assert first.failed
            assert not second.failed
            assert chat.store.texts() == ["two"]

    @pytest.mark.asyncio
    async def test_late_echo_takes_restored_text_out_of_composer(self, make_session, sock, order_context):
        sock.replies["patientSendMessage"] = lambda data: [("chat-error", {"message": "Failed to send message"})]
        async with make_session(order_context, sock) as chat:
            chat.composer.text = "Refill please"
            result = await chat.send()
            assert not result.ok
            assert chat.composer.text == "Refill please"

            await sock.fire("newMessage", {"_id": "srv-1", "orderId": ORDER_ID, "senderId": PATIENT_ID, "message": "Refill please"})

            assert chat.store.texts() == ["Refill please"]
            assert chat.composer.text == ""
            assert chat.notifier.last.level == "info"

    @pytest.mark.asyncio
    async def test_refresh_expires_stale_placeholders(self, make_session, settings, order_context):
        settings.PENDING_MAX_AGE_SECONDS = 0
        async with make_session(order_context, FakeSocket(fail_connects=5)) as chat:
            chat.store.insert_optimistic("never confirmed")

            await chat.refresh()

            assert chat.store.pending == []
            assert "never confirmed" not in chat.store.texts()

    @pytest.mark.asyncio
    async def test_chat_error_without_send_is_notified(self, make_session, sock, order_context):
        async with make_session(order_context, sock) as chat:
            await sock.fire("chat-error", {"message": "Room closed"})
            assert chat.notifier.last.text == "Room closed"

    @pytest.mark.asyncio
    async def test_visibility_pauses_polling(self, make_session, polling, sock, order_context):
        chat = make_session(order_context, sock)
        chat.set_visible(False)
        chat.set_visible(True)
        polling.pause.assert_called_once_with(chat.poll_job_id)
        polling.resume.assert_called_once_with(chat.poll_job_id)
        await chat.close()


class TestDirectChat:

    @pytest.fixture
    def direct_context(self):
        return RoomContext(counterpart_id=DOCTOR_ID)

    @pytest.mark.asyncio
    async def test_direct_chat_joins_pair_room_and_polls(self, make_session, polling, sock, direct_context):
        room_id = direct_room_id(PATIENT_ID, DOCTOR_ID)
        async with make_session(direct_context, sock) as chat:
            assert sock.emitted_events() == ["authenticate", "joinPatientRoom", "join-chat-room"]
            assert sock.payloads("join-chat-room") == [{"roomId": room_id}]
            assert chat.session.joined_rooms == {room_id}
            polling.start_chat_refresh.assert_called_once_with(chat.poll_job_id, chat.refresh)
            polling.stop.assert_not_called()

            await sock.fire("new-message", {"_id": "d1", "senderId": DOCTOR_ID, "receiverId": PATIENT_ID, "message": "How are you feeling?"})

            assert chat.store.texts() == ["How are you feeling?"]

    @pytest.mark.asyncio
    async def test_switch_to_direct_chat_starts_polling(self, make_session, polling, sock, order_context, direct_context):
        async with make_session(order_context, sock) as chat:
            polling.start_chat_refresh.assert_not_called()

            assert await chat.switch(direct_context)

            polling.start_chat_refresh.assert_called_once_with(chat.poll_job_id, chat.refresh)
            assert sock.payloads("join-chat-room") == [{"roomId": direct_room_id(PATIENT_ID, DOCTOR_ID)}]


class TestSwitch:

    @pytest.mark.asyncio
    async def test_switch_replaces_room_state(self, make_session, backend, sock, order_context):
        backend.history = [history_item("1", "order A", "2024-01-01T10:00:00Z")]
        async with make_session(order_context, sock) as chat:
            backend.history = [history_item("2", "order B", "2024-01-01T11:00:00Z", orderId="order-B")]

            assert await chat.switch(RoomContext(order_id="order-B", pharmacy_id=PHARMACY_ID))

            assert chat.store.texts() == ["order B"]
            assert sock.payloads("leave-chat-room") == [{"roomId": ORDER_ID}]
            assert sock.payloads("joinOrderChatRoom") == [ORDER_ID, "order-B"]
            assert chat.session.joined_rooms == {"order-B"}

            await sock.fire("newMessage", {"_id": "3", "orderId": ORDER_ID, "text": "old room"})
            assert chat.store.texts() == ["order B"]


class TestScrolling:

    @pytest.mark.asyncio
    async def test_history_load_scrolls_to_latest(self, make_session, backend, sock, order_context, settings):
        backend.history = [history_item("1", "a", "2024-01-01T10:00:00Z")]
        viewport = FakeViewport()
        async with make_session(order_context, sock, viewport=viewport):
            await asyncio.sleep(settings.SCROLL_SETTLE_SECONDS + 0.05)
            assert viewport.scroll_calls >= 1
