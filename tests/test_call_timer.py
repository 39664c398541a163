"""Unit tests for the call duration timer."""

import asyncio

import pytest

from telehealth_chat.services.call_timer import end_call, format_call_duration, start_call


class TestFormat:

    @pytest.mark.parametrize("seconds,expected", [
        (0, "00:00"),
        (7, "00:07"),
        (65, "01:05"),
        (3600, "60:00"),
        (-3, "00:00"),
    ])
    def test_format(self, seconds, expected):
        assert format_call_duration(seconds) == expected


class TestCallTimer:

    @pytest.mark.asyncio
    async def test_ticks_until_ended(self):
        ticks = []
        clock = [1000.0]
        handle = start_call("video", on_tick=ticks.append, tick_seconds=0.01, clock=lambda: clock[0])
        assert handle.active
        clock[0] += 3
        await asyncio.sleep(0.05)
        assert handle.elapsed == 3
        assert handle.display == "00:03"

        clock[0] += 62
        duration = await end_call(handle)

        assert duration == 65
        assert not handle.active
        assert ticks and ticks[-1] == 3

    @pytest.mark.asyncio
    async def test_end_call_is_idempotent(self):
        handle = start_call(tick_seconds=0.01)
        first = await end_call(handle)
        assert await end_call(handle) == first

    @pytest.mark.asyncio
    async def test_calls_are_independent(self):
        first = start_call("phone", tick_seconds=0.01)
        second = start_call("video", tick_seconds=0.01)

        await end_call(first)

        assert not first.active
        assert second.active
        await end_call(second)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_the_timer(self):
        def broken(elapsed):
            raise ValueError("render failed")

        handle = start_call(on_tick=broken, tick_seconds=0.01)
        await asyncio.sleep(0.05)
        assert handle.active
        await end_call(handle)
