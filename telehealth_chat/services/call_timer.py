"""
Elapsed-time display for an in-progress phone or video call.

Each call gets its own handle with its own ticking task; starting a second call
never disturbs the first.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from telehealth_chat.utils.logger import get_logger

logger = get_logger("call_timer")

TickListener = Callable[[int], None]


@dataclass(eq=False)
class CallTimerHandle:
    mode: str = "phone"
    call_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.monotonic)
    started_at_wall: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    elapsed: int = 0
    on_tick: Optional[TickListener] = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def measure(self) -> int:
        return int(self.clock() - self.started_at)

    @property
    def display(self) -> str:
        return format_call_duration(self.elapsed)


def format_call_duration(seconds: int) -> str:
    """`MM:SS`; minutes keep counting past 59."""
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"


async def _tick(handle: CallTimerHandle, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        handle.elapsed = handle.measure()
        if handle.on_tick is not None:
            try:
                handle.on_tick(handle.elapsed)
            except Exception as e:
                logger.error(f"❌ Call timer listener failed: {e}")


def start_call(
    mode: str = "phone",
    on_tick: TickListener | None = None,
    tick_seconds: float = 1.0,
    clock: Callable[[], float] = time.monotonic,
) -> CallTimerHandle:
    """Start timing a call. Must be called with a running event loop."""
    handle = CallTimerHandle(mode=mode, on_tick=on_tick, clock=clock, started_at=clock())
    handle._task = asyncio.get_running_loop().create_task(_tick(handle, tick_seconds))
    logger.info(f"📞 {mode.capitalize()} call {handle.call_id} started")
    return handle


async def end_call(handle: CallTimerHandle) -> int:
    """Stop the timer and return the call duration in whole seconds. Idempotent."""
    task, handle._task = handle._task, None
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        handle.elapsed = handle.measure()
        logger.info(f"📴 Call {handle.call_id} ended after {format_call_duration(handle.elapsed)}")
    return handle.elapsed
