"""Tests for the guild sync scheduler.

Covers:
- Sweep sizing (spacing across the sync window, floor, cap)
- Stale guild selection and re-selection after the window
- Sweep execution with bounded concurrency
- Job registration
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from timerboard.config import Config, SyncConfig
from timerboard.models import GatewayGuild
from timerboard.scheduler import (
    DISPATCH_JOB_ID,
    SWEEP_JOB_ID,
    GuildSyncScheduler,
    compute_sweep_limit,
)
from timerboard.store import GuildRepository
from timerboard.sync import GuildSyncReport

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def guild_repo(engine) -> GuildRepository:
    return GuildRepository(engine)


@pytest.fixture
def sync_engine() -> MagicMock:
    """A sync engine double that stamps every guild it is asked to sync."""
    mock = MagicMock()

    async def sync_guild(guild_id):
        return GuildSyncReport(
            guild_id=guild_id,
            metadata_ok=True,
            roles_ok=True,
            channels_ok=True,
            members_ok=True,
            stamped=True,
        )

    mock.sync_guild = AsyncMock(side_effect=sync_guild)
    return mock


def _add_guilds(repo: GuildRepository, count: int) -> list[str]:
    ids = [f"{i:03d}" for i in range(count)]
    for guild_id in ids:
        repo.upsert(GatewayGuild(id=guild_id, name=f"Guild {guild_id}"))
    return ids


class TestComputeSweepLimit:
    """Tests for the per-sweep guild limit."""

    def test_spacing(self) -> None:
        """30 guilds, 5 minute interval, 30 minute window: 5 per sweep."""
        assert compute_sweep_limit(30, 5, 30) == 5

    def test_rounds_up(self) -> None:
        assert compute_sweep_limit(31, 5, 30) == 6

    def test_floor_for_few_guilds(self) -> None:
        """Few guilds still make progress every sweep."""
        assert compute_sweep_limit(3, 5, 30) == 1
        assert compute_sweep_limit(3, 5, 30, minimum=2) == 2

    def test_capped_at_guild_count(self) -> None:
        assert compute_sweep_limit(2, 5, 30, minimum=10) == 2

    def test_no_guilds(self) -> None:
        assert compute_sweep_limit(0, 5, 30) == 0

    def test_small_share_rounds_up_without_floor(self) -> None:
        assert compute_sweep_limit(1, 1, 30, minimum=0) == 1


class TestSelection:
    """Tests for stale guild selection."""

    def test_selects_at_most_limit(self, engine, sync_engine, test_config, guild_repo) -> None:
        _add_guilds(guild_repo, 30)
        scheduler = GuildSyncScheduler(engine, sync_engine, test_config)

        assert len(scheduler.select_stale_guilds(NOW)) == 5

    def test_reselected_only_after_window(
        self, engine, sync_engine, test_config, guild_repo
    ) -> None:
        (guild_id,) = _add_guilds(guild_repo, 1)
        scheduler = GuildSyncScheduler(engine, sync_engine, test_config)
        guild_repo.touch_last_sync(guild_id, NOW)

        assert scheduler.select_stale_guilds(NOW + timedelta(minutes=29)) == []
        assert scheduler.select_stale_guilds(NOW + timedelta(minutes=31)) == [guild_id]

    def test_oldest_first(self, engine, sync_engine, test_config, guild_repo) -> None:
        ids = _add_guilds(guild_repo, 3)
        guild_repo.touch_last_sync(ids[0], NOW - timedelta(hours=1))
        guild_repo.touch_last_sync(ids[1], NOW - timedelta(hours=3))
        guild_repo.touch_last_sync(ids[2], NOW - timedelta(hours=2))
        config = Config(data_dir=test_config.data_dir, sync=SyncConfig(min_guilds_per_sweep=3))
        scheduler = GuildSyncScheduler(engine, sync_engine, config)

        assert scheduler.select_stale_guilds(NOW) == [ids[1], ids[2], ids[0]]


class TestRunSweep:
    """Tests for sweep execution."""

    @pytest.mark.asyncio
    async def test_sweep_syncs_selected(self, engine, sync_engine, test_config, guild_repo) -> None:
        _add_guilds(guild_repo, 30)
        scheduler = GuildSyncScheduler(engine, sync_engine, test_config)

        result = await scheduler.run_sweep(NOW)

        assert len(result.selected) == 5
        assert result.synced == result.selected
        assert sync_engine.sync_guild.await_count == 5

    @pytest.mark.asyncio
    async def test_sweep_records_incomplete(
        self, engine, sync_engine, test_config, guild_repo
    ) -> None:
        ids = _add_guilds(guild_repo, 2)
        config = Config(data_dir=test_config.data_dir, sync=SyncConfig(min_guilds_per_sweep=2))

        async def sync_guild(guild_id):
            if guild_id == ids[0]:
                raise RuntimeError("unexpected")
            return GuildSyncReport(guild_id=guild_id, metadata_ok=True)

        sync_engine.sync_guild.side_effect = sync_guild
        scheduler = GuildSyncScheduler(engine, sync_engine, config)

        result = await scheduler.run_sweep(NOW)

        assert result.synced == []
        assert sorted(result.failed) == ids

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, engine, sync_engine, test_config, guild_repo) -> None:
        _add_guilds(guild_repo, 6)
        config = Config(
            data_dir=test_config.data_dir,
            sync=SyncConfig(min_guilds_per_sweep=6, max_concurrent_guilds=2),
        )
        running = 0
        peak = 0

        async def sync_guild(guild_id):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return GuildSyncReport(guild_id=guild_id, stamped=True)

        sync_engine.sync_guild.side_effect = sync_guild
        scheduler = GuildSyncScheduler(engine, sync_engine, config)

        result = await scheduler.run_sweep(NOW)

        assert len(result.synced) == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_empty_sweep(self, engine, sync_engine, test_config) -> None:
        scheduler = GuildSyncScheduler(engine, sync_engine, test_config)

        result = await scheduler.run_sweep(NOW)

        assert result.selected == []
        sync_engine.sync_guild.assert_not_called()


class TestJobs:
    """Tests for job registration."""

    @pytest.mark.asyncio
    async def test_start_registers_jobs(self, engine, sync_engine, test_config) -> None:
        scheduler = GuildSyncScheduler(
            engine, sync_engine, test_config, notification_engine=MagicMock()
        )

        scheduler.start()
        try:
            job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        finally:
            scheduler.stop()

        assert job_ids == {SWEEP_JOB_ID, DISPATCH_JOB_ID}

    @pytest.mark.asyncio
    async def test_no_dispatch_job_without_notifier(self, engine, sync_engine, test_config) -> None:
        scheduler = GuildSyncScheduler(engine, sync_engine, test_config)

        scheduler.start()
        try:
            job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        finally:
            scheduler.stop()

        assert job_ids == {SWEEP_JOB_ID}

    @pytest.mark.asyncio
    async def test_run_dispatch_logs_failures(self, engine, sync_engine, test_config) -> None:
        notifier = MagicMock()
        notifier.dispatch_due = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = GuildSyncScheduler(engine, sync_engine, test_config, notifier)

        await scheduler.run_dispatch()

        notifier.dispatch_due.assert_awaited_once()
