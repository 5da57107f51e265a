"""Tests for phase progress mapping and cooperative cancellation."""

import asyncio

import pytest

from timeline_export.exceptions import JobCancelledError
from timeline_export.services.progress import (
    CancellationToken,
    Phase,
    ProgressChannel,
    ProgressEvent,
    ProgressTracker,
)


class TestPhases:
    def test_ranges_are_contiguous(self):
        phases = list(Phase)

        assert phases[0].start == 0
        assert phases[-1].end == 100
        for prev, cur in zip(phases, phases[1:]):
            assert prev.end == cur.start

    def test_to_percent_clamps(self):
        assert Phase.DOWNLOAD.to_percent(0.5) == 25
        assert Phase.RENDER.to_percent(2.0) == 90
        assert Phase.RENDER.to_percent(-1) == 45


class TestProgressTracker:
    def test_never_goes_backwards(self):
        tracker = ProgressTracker()

        tracker.apply(ProgressEvent(Phase.RENDER, 0.5))
        tracker.apply(ProgressEvent(Phase.DOWNLOAD, 1.0))

        assert tracker.percent == Phase.RENDER.to_percent(0.5)

    def test_reports_changes(self):
        tracker = ProgressTracker()

        assert tracker.apply(ProgressEvent(Phase.VALIDATE, 1.0, "ok"))
        assert not tracker.apply(ProgressEvent(Phase.VALIDATE, 1.0, "ok"))
        assert tracker.apply(ProgressEvent(Phase.VALIDATE, 1.0, "new message"))
        assert tracker.stage == "new message"


class TestProgressChannel:
    @pytest.mark.asyncio
    async def test_events_delivered_in_order_until_closed(self):
        channel = ProgressChannel()
        channel.publish(Phase.DOWNLOAD, 0.1)
        channel.publish(Phase.DOWNLOAD, 0.2)
        channel.close()
        channel.publish(Phase.DOWNLOAD, 0.3)

        events = [e async for e in channel]

        assert [e.fraction for e in events] == [0.1, 0.2]


class TestCancellationToken:
    def test_cancel_records_first_reason(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"
        with pytest.raises(JobCancelledError, match="first"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()

        async def cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel()

        asyncio.create_task(cancel_soon())
        with pytest.raises(JobCancelledError):
            await asyncio.wait_for(token.sleep(30), timeout=5)

    @pytest.mark.asyncio
    async def test_sleep_times_out_quietly(self):
        token = CancellationToken()

        await token.sleep(0.01)

        assert not token.cancelled
