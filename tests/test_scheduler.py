"""Tests for the refresh scheduler."""
import asyncio

import pytest

from calrelay.scheduler import FetchScheduler, JOB_ID


@pytest.mark.asyncio
async def test_runs_immediately_on_start():
    ran = asyncio.Event()

    async def refresh():
        ran.set()

    scheduler = FetchScheduler()
    scheduler.start()
    try:
        scheduler.schedule(refresh, interval_minutes=30)
        await asyncio.wait_for(ran.wait(), timeout=5)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_schedule_without_immediate_run():
    async def refresh():
        pass

    scheduler = FetchScheduler()
    scheduler.start()
    try:
        scheduler.schedule(refresh, interval_minutes=60, run_now=False)
        job = scheduler.scheduler.get_job(JOB_ID)
        assert job.max_instances == 1
        assert job.trigger.interval.total_seconds() == 3600
        assert scheduler.get_next_run_time() is not None

        assert scheduler.reschedule(45) is True
        job = scheduler.scheduler.get_job(JOB_ID)
        assert job.trigger.interval.total_seconds() == 45 * 60
    finally:
        scheduler.shutdown()


def test_next_run_time_without_job():
    assert FetchScheduler().get_next_run_time() is None


def test_reschedule_without_job():
    assert FetchScheduler().reschedule(45) is False
