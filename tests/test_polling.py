"""Unit tests for the polling supervisor."""

import asyncio
from datetime import timedelta

import pytest
from unittest.mock import MagicMock

from telehealth_chat.services.polling import PollingSupervisor


class TestPollingSupervisor:

    @pytest.mark.asyncio
    async def test_job_runs_until_stopped(self, settings):
        calls = []

        async def refresh():
            calls.append(1)

        supervisor = PollingSupervisor(settings)
        supervisor.every("chat_refresh", refresh, 0.02)
        await asyncio.sleep(0.2)
        supervisor.stop("chat_refresh")
        count = len(calls)
        await asyncio.sleep(0.1)
        supervisor.shutdown()

        assert count >= 1
        assert len(calls) == count
        assert not supervisor.is_running("chat_refresh")

    @pytest.mark.asyncio
    async def test_paused_job_does_not_run(self, settings):
        calls = []

        async def refresh():
            calls.append(1)

        supervisor = PollingSupervisor(settings)
        supervisor.every("chat_refresh", refresh, 0.02)
        supervisor.pause("chat_refresh")
        await asyncio.sleep(0.1)
        assert calls == []

        supervisor.resume("chat_refresh")
        await asyncio.sleep(0.2)
        supervisor.shutdown()
        assert calls

    def test_intervals_come_from_settings(self, settings):
        scheduler = MagicMock(running=False)
        supervisor = PollingSupervisor(settings, scheduler=scheduler)

        async def job():
            return None

        supervisor.start_chat_refresh("chat", job)
        supervisor.start_dashboard_refresh("dashboard", job)

        triggers = {c.kwargs["id"]: c.kwargs["trigger"] for c in scheduler.add_job.call_args_list}
        assert triggers["chat"].interval == timedelta(seconds=settings.CHAT_POLL_INTERVAL_SECONDS)
        assert triggers["dashboard"].interval == timedelta(seconds=settings.DASHBOARD_POLL_INTERVAL_SECONDS)
        assert all(c.kwargs["replace_existing"] for c in scheduler.add_job.call_args_list)
        assert supervisor.jobs == {"chat": settings.CHAT_POLL_INTERVAL_SECONDS, "dashboard": settings.DASHBOARD_POLL_INTERVAL_SECONDS}
        scheduler.start.assert_called()

    def test_stop_and_pause_unknown_job_are_no_ops(self, settings):
        scheduler = MagicMock(running=False)
        supervisor = PollingSupervisor(settings, scheduler=scheduler)
        supervisor.pause("missing")
        supervisor.stop("missing")
        scheduler.pause_job.assert_not_called()
        scheduler.remove_job.assert_not_called()
