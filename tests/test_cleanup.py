"""Tests for the stale presentation sweep."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from be.config import CleanupSettings
from be.pipelines.cleanup import (
    delete_stale_presentations,
    next_run_delay,
    run_cleanup_loop,
    stop_cleanup_task,
)
from be.repository import StoreError

from conftest import run

NOW = datetime(2025, 6, 10, 9, 30, tzinfo=timezone.utc)


def _mock_repo(stale: list[str], deleted: int = 0) -> MagicMock:
    repo = MagicMock()
    repo.stale_names = AsyncMock(return_value=stale)
    repo.delete_by_names = AsyncMock(return_value=deleted)
    return repo


def test_deletes_stale_groups():
    repo = _mock_repo(["Sunday Service", "Good Friday"], deleted=12)
    with patch("be.pipelines.cleanup.PresentationRepository", return_value=repo):
        deleted = run(delete_stale_presentations(MagicMock(), stale_after_hours=48, now=NOW))

    assert deleted == ["Sunday Service", "Good Friday"]
    repo.stale_names.assert_awaited_once_with(NOW - timedelta(hours=48))
    repo.delete_by_names.assert_awaited_once_with(["Sunday Service", "Good Friday"])


def test_nothing_stale_skips_delete():
    repo = _mock_repo([])
    with patch("be.pipelines.cleanup.PresentationRepository", return_value=repo):
        deleted = run(delete_stale_presentations(MagicMock(), stale_after_hours=24, now=NOW))

    assert deleted == []
    repo.delete_by_names.assert_not_awaited()


def test_next_run_is_tomorrow_on_the_hour():
    hour = random.Random(7).randrange(24)
    delay = next_run_delay(NOW, random.Random(7))

    expected = datetime(2025, 6, 11, hour, tzinfo=timezone.utc)
    assert delay == (expected - NOW).total_seconds()
    assert 0 < delay < 2 * 24 * 3600


class TestCleanupLoop:
    def test_survives_connection_errors(self):
        calls = []

        def session_factory():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionRefusedError(111, "Connect call failed")
            # Stop the loop on the third run
            raise asyncio.CancelledError()

        cfg = CleanupSettings(run_on_startup=True, stale_after_hours=48)
        with patch("be.pipelines.cleanup.next_run_delay", return_value=0):
            with pytest.raises(asyncio.CancelledError):
                run(run_cleanup_loop(session_factory, cfg))

        assert len(calls) == 3

    def test_store_error_keeps_loop_running(self):
        calls = []
        repo = MagicMock()
        repo.stale_names = AsyncMock(side_effect=[StoreError("relation missing"), asyncio.CancelledError()])

        def session_factory():
            calls.append(1)
            return AsyncMock()

        cfg = CleanupSettings(run_on_startup=True, stale_after_hours=48)
        with patch("be.pipelines.cleanup.next_run_delay", return_value=0), \
                patch("be.pipelines.cleanup.PresentationRepository", return_value=repo):
            with pytest.raises(asyncio.CancelledError):
                run(run_cleanup_loop(session_factory, cfg))

        assert len(calls) == 2


class TestStopCleanupTask:
    def test_cancels_running_task(self):
        async def scenario():
            task = asyncio.create_task(asyncio.sleep(3600))
            await asyncio.sleep(0)
            await stop_cleanup_task(task)
            return task

        assert run(scenario()).cancelled()

    def test_tolerates_task_that_already_died(self):
        async def crashed():
            raise ConnectionRefusedError(111, "Connect call failed")

        async def scenario():
            task = asyncio.create_task(crashed())
            await asyncio.sleep(0)
            assert task.done()
            await stop_cleanup_task(task)

        run(scenario())
