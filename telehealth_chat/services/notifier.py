"""
Transient user-facing notifications (the chat surface's toasts).
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List

from telehealth_chat.utils.logger import get_logger

logger = get_logger("notifier")


@dataclass
class Notification:
    level: str
    text: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NotificationListener = Callable[[Notification], None]


class Notifier:
    """Collects notifications and fans them out to listeners; never raises into callers."""

    def __init__(self, history_limit: int = 50) -> None:
        self.history: List[Notification] = []
        self.history_limit = history_limit
        self._listeners: List[NotificationListener] = []

    def subscribe(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def _push(self, level: str, text: str) -> Notification:
        note = Notification(level=level, text=text)
        self.history.append(note)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception as e:
                logger.error(f"❌ Notification listener failed: {e}")
        return note

    def info(self, text: str) -> Notification:
        logger.info(f"ℹ️ {text}")
        return self._push("info", text)

    def success(self, text: str) -> Notification:
        logger.info(f"✅ {text}")
        return self._push("success", text)

    def error(self, text: str) -> Notification:
        logger.warning(f"⚠️ {text}")
        return self._push("error", text)

    @property
    def last(self) -> Notification | None:
        return self.history[-1] if self.history else None
