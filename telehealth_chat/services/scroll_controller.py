"""
Auto-scroll decisions for a message viewport.

Follows the newest message while the reader sits near the bottom; stops following as
soon as the reader scrolls up, and resumes once they stop scrolling near the bottom
again. The controller's own smooth scroll produces scroll events too, so those are
ignored while `auto_scrolling` is set.
"""
import asyncio
from typing import Callable, Optional, Protocol

from telehealth_chat.config import Settings, get_settings
from telehealth_chat.utils.logger import get_logger

logger = get_logger("scroll_controller")


class Viewport(Protocol):
    scroll_height: float
    scroll_top: float
    client_height: float

    def scroll_to_bottom(self, smooth: bool = True) -> None:
        ...


class ScrollController:
    def __init__(self, viewport: Viewport, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.viewport = viewport
        self.threshold = settings.SCROLL_NEAR_BOTTOM_PX
        self.debounce = settings.SCROLL_DEBOUNCE_SECONDS
        self.settle = settings.SCROLL_SETTLE_SECONDS
        self.reentry = settings.SCROLL_REENTRY_SECONDS

        self.user_scrolling = False
        self.auto_scrolling = False
        self._debounce_timer: Optional[asyncio.TimerHandle] = None
        self._settle_timer: Optional[asyncio.TimerHandle] = None
        self._reentry_timer: Optional[asyncio.TimerHandle] = None
        self._closed = False

    def distance_from_bottom(self) -> float:
        v = self.viewport
        return v.scroll_height - v.scroll_top - v.client_height

    def is_near_bottom(self) -> bool:
        return self.distance_from_bottom() < self.threshold

    @staticmethod
    def _call_later(delay: float, callback: Callable, *args) -> Optional[asyncio.TimerHandle]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: act immediately
            callback(*args)
            return None
        return loop.call_later(delay, callback, *args)

    @staticmethod
    def _cancel(timer: Optional[asyncio.TimerHandle]) -> None:
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------- events

    def on_messages_changed(self, before: int, after: int) -> None:
        """MessageStore listener: follow growth when the reader is at the bottom."""
        if self._closed or after <= before:
            return
        if self.user_scrolling or self.auto_scrolling:
            return
        if not self.is_near_bottom():
            return
        self._start_auto_scroll()

    def on_scroll(self) -> None:
        """Viewport scroll listener."""
        if self._closed:
            return
        self._cancel(self._debounce_timer)
        near_bottom = self.is_near_bottom()
        if not near_bottom and not self.auto_scrolling:
            self.user_scrolling = True
        self._debounce_timer = self._call_later(self.debounce, self._scroll_stopped, near_bottom)

    def _scroll_stopped(self, near_bottom: bool) -> None:
        self._debounce_timer = None
        if near_bottom:
            self.user_scrolling = False

    def scroll_to_latest(self) -> None:
        """Unconditional jump to the newest message (room opened, history loaded)."""
        if self._closed:
            return
        self.user_scrolling = False
        self._start_auto_scroll()

    # ------------------------------------------------------------ internals

    def _start_auto_scroll(self) -> None:
        self.auto_scrolling = True
        self._cancel(self._settle_timer)
        self._settle_timer = self._call_later(self.settle, self._perform_scroll)

    def _perform_scroll(self) -> None:
        self._settle_timer = None
        if self._closed:
            return
        try:
            self.viewport.scroll_to_bottom(smooth=True)
        finally:
            self._cancel(self._reentry_timer)
            self._reentry_timer = self._call_later(self.reentry, self._finish_auto_scroll)

    def _finish_auto_scroll(self) -> None:
        self._reentry_timer = None
        self.auto_scrolling = False

    def reset(self) -> None:
        """Room changed: cancel pending timers and start following again."""
        for timer in (self._debounce_timer, self._settle_timer, self._reentry_timer):
            self._cancel(timer)
        self._debounce_timer = self._settle_timer = self._reentry_timer = None
        self.user_scrolling = False
        self.auto_scrolling = False

    def close(self) -> None:
        self.reset()
        self._closed = True
