"""Periodic jobs for Timerboard.

Integrates APScheduler to run the guild sync sweep and the due-notification
dispatch on fixed intervals.

Key concepts:
- Each sweep fully syncs a slice of the stalest guilds, sized so that every
  guild is visited about once per sync window
- The only scheduling state is each guild's persisted last-sync stamp; the
  selection is a function of (now, stamps)
- Missed runs coalesce and a job never overlaps itself
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from timerboard.logging import get_logger
from timerboard.models import ensure_utc, utcnow
from timerboard.store import GuildRepository

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from timerboard.config import Config
    from timerboard.notifications import FleetNotificationEngine
    from timerboard.sync import GuildSyncEngine

log = get_logger("scheduler")

SWEEP_JOB_ID = "sync:guild-sweep"
DISPATCH_JOB_ID = "notifications:dispatch"


def compute_sweep_limit(
    guild_count: int,
    check_interval: float,
    full_sync_window: float,
    minimum: int = 1,
) -> int:
    """How many guilds one sweep may sync.

    ``ceil(guild_count * check_interval / full_sync_window)``, raised to
    ``minimum`` and never more than ``guild_count``. With 30 guilds, a 5
    minute interval and a 30 minute window that is 5 per sweep.

    Args:
        guild_count: Guilds currently known.
        check_interval: Time between sweeps.
        full_sync_window: Target time between full syncs of one guild
            (same unit as ``check_interval``).
        minimum: Floor so small fleets of guilds still make progress.

    Returns:
        The per-sweep guild limit.
    """
    if guild_count <= 0:
        return 0
    limit = math.ceil(guild_count * check_interval / full_sync_window)
    return min(max(limit, minimum), guild_count)


@dataclass
class SweepResult:
    """Outcome of one guild sync sweep."""

    selected: list[str] = field(default_factory=list)
    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class GuildSyncScheduler:
    """Runs the guild sync sweep and notification dispatch on intervals.

    Attributes:
        sync_engine: Engine performing full guild syncs.
        notification_engine: Engine dispatching due fleet notifications, if any.
        config: Application configuration.
        guilds: Guild repository for stale-guild selection.
        scheduler: APScheduler instance.
    """

    def __init__(
        self,
        engine: Engine,
        sync_engine: GuildSyncEngine,
        config: Config,
        notification_engine: FleetNotificationEngine | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: SQLAlchemy database engine.
            sync_engine: Engine performing full guild syncs.
            config: Application configuration.
            notification_engine: Optional engine for the dispatch job.
        """
        self.sync_engine = sync_engine
        self.notification_engine = notification_engine
        self.config = config
        self.guilds = GuildRepository(engine)

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,  # Combine missed executions
                "max_instances": 1,  # No concurrent runs of same job
                "misfire_grace_time": 60,
            },
            timezone=timezone.utc,
        )

    @property
    def sync_window(self) -> timedelta:
        return timedelta(minutes=self.config.sync.full_sync_window_minutes)

    def start(self) -> None:
        """Register the periodic jobs and start the scheduler."""
        self.scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(minutes=self.config.sync.check_interval_minutes),
            id=SWEEP_JOB_ID,
            name="Guild sync sweep",
            replace_existing=True,
        )
        if self.notification_engine is not None:
            self.scheduler.add_job(
                self.run_dispatch,
                trigger=IntervalTrigger(
                    seconds=self.config.notifications.check_interval_seconds
                ),
                id=DISPATCH_JOB_ID,
                name="Fleet notification dispatch",
                replace_existing=True,
            )

        self.scheduler.start()
        log.info("scheduler_started", jobs=len(self.scheduler.get_jobs()))

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self.scheduler.shutdown(wait=False)
        log.info("scheduler_stopped")

    def select_stale_guilds(self, now: datetime | None = None) -> list[str]:
        """Pick the guilds this sweep will sync, stalest first."""
        now = ensure_utc(now) if now else utcnow()
        sync = self.config.sync

        limit = compute_sweep_limit(
            self.guilds.count(),
            sync.check_interval_minutes,
            sync.full_sync_window_minutes,
            minimum=sync.min_guilds_per_sweep,
        )
        return self.guilds.find_stale(now - self.sync_window, limit)

    async def run_sweep(self, now: datetime | None = None) -> SweepResult:
        """Fully sync the stalest guilds with bounded concurrency.

        A guild counts as synced only if its last-sync stamp was advanced.
        """
        result = SweepResult(selected=self.select_stale_guilds(now))
        if not result.selected:
            log.debug("sweep_nothing_stale")
            return result

        log.info("sweep_started", guilds=len(result.selected))
        semaphore = asyncio.Semaphore(self.config.sync.max_concurrent_guilds)

        async def sync_one(guild_id: str) -> bool:
            async with semaphore:
                try:
                    report = await self.sync_engine.sync_guild(guild_id)
                except Exception as e:
                    log.error("guild_sync_crashed", guild_id=guild_id, error=str(e))
                    return False
                return report.stamped

        outcomes = await asyncio.gather(*(sync_one(g) for g in result.selected))
        for guild_id, stamped in zip(result.selected, outcomes):
            (result.synced if stamped else result.failed).append(guild_id)

        log.info(
            "sweep_completed",
            selected=len(result.selected),
            synced=len(result.synced),
            failed=len(result.failed),
        )
        return result

    async def run_dispatch(self) -> None:
        """Dispatch due fleet notifications."""
        if self.notification_engine is None:
            return
        try:
            await self.notification_engine.dispatch_due()
        except Exception as e:
            log.error("notification_dispatch_failed", error=str(e))
