"""Periodic deletion of stale presentation groups.

A presentation is stale when its newest slide is older than the configured
window. The sweep runs once at startup and then once a day at a random
hour. It is independent of song ingestion.
"""
from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from be.config import CleanupSettings, settings
from be.repository import PresentationRepository, StoreError

logger = logging.getLogger(__name__)


async def delete_stale_presentations(
    session: AsyncSession,
    *,
    stale_after_hours: int | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Delete every slide of presentations with no slide newer than the window.

    Returns:
        Names of the deleted presentations
    """
    hours = stale_after_hours or settings.cleanup.stale_after_hours
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)

    repo = PresentationRepository(session)
    stale = await repo.stale_names(cutoff)
    if not stale:
        logger.info("No stale presentations to delete")
        return []

    deleted = await repo.delete_by_names(stale)
    logger.info(f"Deleted {deleted} slide(s) from {len(stale)} stale presentation(s): {stale}")
    return stale


def next_run_delay(now: datetime, rng: random.Random | None = None) -> float:
    """Seconds until tomorrow at a random whole hour."""
    rng = rng or random.Random()
    tomorrow = (now + timedelta(days=1)).replace(
        hour=rng.randrange(24), minute=0, second=0, microsecond=0
    )
    return (tomorrow - now).total_seconds()


async def run_cleanup_loop(
    session_factory: Callable[[], AsyncSession],
    cfg: CleanupSettings | None = None,
) -> None:
    """Run the sweep forever; cancel the task to stop it."""
    cfg = cfg or settings.cleanup
    first = cfg.run_on_startup

    while True:
        if not first:
            delay = next_run_delay(datetime.now())
            logger.info(f"Next presentation cleanup in {delay / 3600:.1f}h")
            await asyncio.sleep(delay)
        first = False

        try:
            async with session_factory() as session:
                await delete_stale_presentations(session, stale_after_hours=cfg.stale_after_hours)
        except StoreError as e:
            logger.error(f"Presentation cleanup failed: {e}")
        except Exception as e:
            # Any failure waits for the next scheduled run
            logger.error(f"Presentation cleanup crashed: {e}", exc_info=True)


async def stop_cleanup_task(task: asyncio.Task) -> None:
    """Cancel the loop task and wait for it, tolerating a task that already died."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"Presentation cleanup task had stopped with an error: {e}", exc_info=True)
