class ChatClientError(RuntimeError):
    """Base class for every error raised by the chat client."""


class ChatTransportError(ChatClientError):
    """Connection refused, timed out or aborted (after retries)."""


class ChatResponseError(ChatClientError):
    """The server answered with something that is not the expected JSON shape."""


class ChatApiError(ChatClientError):
    """The server answered `success: false` or a `chat-error` event arrived."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChatValidationError(ChatClientError):
    """Rejected locally before any network call."""


class MissingRoomIdentifierError(ChatValidationError):
    pass


class MessageShapeError(ChatResponseError):
    pass
