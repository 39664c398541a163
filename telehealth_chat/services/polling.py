"""
Periodic REST refresh, used when live socket updates are unavailable.

Jobs run on an APScheduler `AsyncIOScheduler`. Each job is registered under a
stable id so re-registering replaces rather than duplicates it, and overlapping
runs are coalesced.
"""
from typing import Any, Awaitable, Callable, Dict

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from telehealth_chat.config import Settings, get_settings
from telehealth_chat.utils.logger import get_logger

logger = get_logger("polling")

PollJob = Callable[[], Awaitable[Any]]


class PollingSupervisor:
    def __init__(self, settings: Settings | None = None, scheduler: AsyncIOScheduler | None = None) -> None:
        self.settings = settings or get_settings()
        self.scheduler = scheduler or AsyncIOScheduler()
        self._intervals: Dict[str, float] = {}

    @property
    def jobs(self) -> Dict[str, float]:
        """Active job ids and their intervals in seconds."""
        return dict(self._intervals)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._intervals

    def every(self, job_id: str, func: PollJob, seconds: float) -> None:
        """Run `func` every `seconds` (plus jitter) until stopped."""
        trigger = IntervalTrigger(seconds=seconds, jitter=self.settings.POLL_JITTER_SECONDS or None)
        self.scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._intervals[job_id] = seconds
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"🔄 Polling '{job_id}' every {seconds}s")

    def start_chat_refresh(self, job_id: str, func: PollJob) -> None:
        self.every(job_id, func, self.settings.CHAT_POLL_INTERVAL_SECONDS)

    def start_dashboard_refresh(self, job_id: str, func: PollJob) -> None:
        self.every(job_id, func, self.settings.DASHBOARD_POLL_INTERVAL_SECONDS)

    def pause(self, job_id: str) -> None:
        if self.is_running(job_id):
            self.scheduler.pause_job(job_id)
            logger.debug(f"Polling '{job_id}' paused")

    def resume(self, job_id: str) -> None:
        if self.is_running(job_id):
            self.scheduler.resume_job(job_id)
            logger.debug(f"Polling '{job_id}' resumed")

    def stop(self, job_id: str) -> None:
        if self._intervals.pop(job_id, None) is None:
            return
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass
        logger.info(f"⏹️ Polling '{job_id}' stopped")

    def shutdown(self) -> None:
        self._intervals.clear()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
