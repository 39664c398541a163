"""
REST client for the chat endpoints.
Every request carries `Authorization: Bearer <token>`, is bounded by an overall
timeout, and is retried with linear backoff on timeout/network-class failures.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from telehealth_chat.config import Settings, get_settings
from telehealth_chat.errors import ChatApiError, ChatResponseError, ChatTransportError, MissingRoomIdentifierError
from telehealth_chat.models import RoomContext
from telehealth_chat.schemas import ChatHistoryOut, SendMessageIn, SendMessageOut
from telehealth_chat.utils.logger import get_logger
from telehealth_chat.utils.token_store import TokenStore

logger = get_logger("chat_api")

RETRYABLE_ERRORS = (httpx.TransportError, asyncio.TimeoutError)


class ChatApiClient:
    def __init__(
        self,
        token_store: TokenStore | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.token_store = token_store or TokenStore(settings=self.settings)
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.settings.API_BASE_URL.rstrip("/"),
                timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        client = self._get_client()
        retries = max(0, self.settings.REQUEST_RETRIES)
        for attempt in range(retries + 1):
            try:
                resp = await asyncio.wait_for(
                    client.request(method, path, headers=self.token_store.auth_headers(), **kwargs),
                    timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
                )
            except RETRYABLE_ERRORS as e:
                reason = "Request timeout" if isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException)) else str(e)
                if attempt < retries:
                    delay = self.settings.RETRY_BACKOFF_SECONDS * (attempt + 1)
                    logger.warning(f"⏳ Retrying {method} {path} (attempt {attempt + 1}/{retries + 1}) in {delay:.1f}s: {reason}")
                    await self._sleep(delay)
                    continue
                raise ChatTransportError(f"{method} {path} failed: {reason}") from e
            return self._decode(resp, method, path)
        raise ChatTransportError("Max retries exceeded")

    @staticmethod
    def _decode(resp: httpx.Response, method: str, path: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise ChatResponseError(f"{method} {path}: invalid JSON (HTTP {resp.status_code})") from e
        if not isinstance(data, dict):
            raise ChatResponseError(f"{method} {path}: expected a JSON object (HTTP {resp.status_code})")
        if resp.status_code >= 400 or data.get("success") is False:
            detail = data.get("message") or data.get("error") or f"HTTP {resp.status_code}"
            raise ChatApiError(str(detail), status_code=resp.status_code)
        return data

    @staticmethod
    def _history_items(data: Dict[str, Any]) -> List[Any]:
        try:
            return ChatHistoryOut(**data).items()
        except ValidationError as e:
            raise ChatResponseError(f"Unexpected history shape: {e.error_count()} error(s)") from e

    # ------------------------------------------------------------ endpoints

    async def get_direct_history(self, counterpart_id: str) -> List[Any]:
        """GET /chats/{counterpartId}: direct doctor/patient conversation."""
        return self._history_items(await self._request("GET", f"/chats/{counterpart_id}"))

    async def get_order_history(self, order_id: str) -> List[Any]:
        """GET /chats/history/{orderId}: order-scoped room."""
        return self._history_items(await self._request("GET", f"/chats/history/{order_id}"))

    async def get_conversation(
        self,
        pharmacy_id: str | None = None,
        patient_id: str | None = None,
        medical_request_id: str | None = None,
    ) -> List[Any]:
        """GET /chats?...: unified endpoint (order chat, or the general pharmacy/patient chat)."""
        params = {k: v for k, v in {
            "pharmacyId": pharmacy_id,
            "patientId": patient_id,
            "medicalRequestId": medical_request_id,
        }.items() if v}
        return self._history_items(await self._request("GET", "/chats", params=params))

    async def send_message(self, body: SendMessageIn) -> Optional[Dict[str, Any]]:
        """POST /chats. Returns the persisted message, or None when the server did not echo one."""
        data = await self._request("POST", "/chats", json=body.to_wire())
        try:
            out = SendMessageOut(**data)
        except ValidationError as e:
            raise ChatResponseError(f"Unexpected send response: {e.error_count()} error(s)") from e
        return out.persisted()

    def history_fetcher(self, context: RoomContext) -> Callable[[], Awaitable[List[Any]]]:
        """Pick the history endpoint that serves the context's room."""
        kind = context.kind
        if kind == "order":
            return lambda: self.get_order_history(context.order_key)
        if kind == "pharmacy":
            return lambda: self.get_conversation(pharmacy_id=context.pharmacy_id, patient_id=context.patient_id)
        if kind == "direct":
            return lambda: self.get_direct_history(context.counterpart_id)
        raise MissingRoomIdentifierError("No history endpoint for a conversation without identifiers")
