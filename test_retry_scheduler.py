"""Test script for retry backoff scheduling."""

import pytest

from localpipeline.orchestrator.retry_scheduler import (
    MAX_DELAY_MS,
    RetryScheduler,
    backoff_delay,
)


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n) for n in range(1, 7)] == [
        10_000, 20_000, 40_000, 80_000, 120_000, 120_000,
    ]
    assert backoff_delay(10_000) == MAX_DELAY_MS


def test_backoff_rejects_attempt_zero():
    with pytest.raises(ValueError):
        backoff_delay(0)


def test_schedule_becomes_ready_after_delay():
    scheduler = RetryScheduler()
    schedule = scheduler.schedule("ember", 2, now=1_000)

    assert schedule.retry_at == 21_000
    assert scheduler.is_scheduled("ember")
    assert scheduler.get_ready(20_999) == []
    assert [s.agent_name for s in scheduler.get_ready(21_000)] == ["ember"]

    # Readiness does not consume the schedule
    assert scheduler.is_scheduled("ember")
    scheduler.cancel("ember")
    assert scheduler.get_ready(50_000) == []
    scheduler.cancel("ember")


def test_rescheduling_replaces_previous_schedule():
    scheduler = RetryScheduler()
    scheduler.schedule("tide", 1, now=0)
    scheduler.schedule("tide", 3, now=0)

    assert scheduler.scheduled_agents() == ["tide"]
    assert scheduler.get_schedule("tide").attempt == 3
    assert scheduler.get_schedule("tide").retry_at == 40_000


def test_seconds_until_retry_rounds_up():
    scheduler = RetryScheduler()
    scheduler.schedule("gale", 1, now=0)

    assert scheduler.seconds_until_retry("gale", now=500) == 10
    assert scheduler.seconds_until_retry("gale", now=9_001) == 1
    assert scheduler.seconds_until_retry("gale", now=15_000) == 0
    assert scheduler.seconds_until_retry("terra", now=0) is None
