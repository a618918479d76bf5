"""Tests for the Discord bot event handlers.

Covers:
- discord.py object conversion
- Guild join/available handling (skip when recent, full sync when stale)
- Single-item delta handlers
- Handler failures being contained at the event boundary
"""

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from timerboard.bot import (
    TimerboardBot,
    channel_from_discord,
    guild_from_discord,
    member_from_discord,
    role_from_discord,
)
from timerboard.models import GatewayGuild


def make_role(role_id: int, name: str = "Role", default: bool = False) -> MagicMock:
    role = MagicMock()
    role.id = role_id
    role.name = name
    role.color = discord.Colour(0x3498DB)
    role.position = 3
    role.is_default.return_value = default
    role.guild.id = 1
    return role


def make_channel(channel_id: int, kind: discord.ChannelType = discord.ChannelType.text) -> MagicMock:
    channel = MagicMock()
    channel.id = channel_id
    channel.type = kind
    channel.name = "fleet-pings"
    channel.position = 2
    channel.guild.id = 1
    return channel


def make_guild() -> MagicMock:
    guild = MagicMock()
    guild.id = 1
    guild.name = "Test Alliance"
    guild.icon = None
    guild.roles = [make_role(1, "@everyone", default=True), make_role(10, "Pings")]
    guild.channels = [make_channel(20), make_channel(21, discord.ChannelType.voice)]
    return guild


def make_member() -> MagicMock:
    member = MagicMock()
    member.id = 500
    member.name = "pilot"
    member.nick = "Pilot One"
    member.global_name = None
    member.roles = [make_role(1, default=True), make_role(10)]
    member.guild.id = 1
    return member


@pytest.fixture
def sync_engine() -> MagicMock:
    mock = MagicMock()
    mock.ensure_guild = AsyncMock()
    mock.sync_guild = AsyncMock()
    mock.upsert_member = AsyncMock()
    mock.remove_member = AsyncMock()
    mock.upsert_role = AsyncMock()
    mock.delete_role = AsyncMock()
    mock.upsert_channel = AsyncMock()
    mock.delete_channel = AsyncMock()
    mock.gateway.close = AsyncMock()
    return mock


@pytest.fixture
def bot(test_config, sync_engine) -> TimerboardBot:
    return TimerboardBot(test_config, sync_engine)


class TestConverters:
    """Tests for discord.py -> gateway model conversion."""

    def test_guild(self) -> None:
        assert guild_from_discord(make_guild()) == GatewayGuild(id="1", name="Test Alliance")

    def test_role(self) -> None:
        role = role_from_discord(make_role(10, "Pings"))

        assert role.id == "10"
        assert role.color == 0x3498DB
        assert role.to_role("1").color == "#3498DB"

    def test_channel(self) -> None:
        assert channel_from_discord(make_channel(20)).is_text
        assert not channel_from_discord(make_channel(21, discord.ChannelType.voice)).is_text

    def test_member_excludes_default_role(self) -> None:
        member = member_from_discord(make_member())

        assert member.user_id == "500"
        assert member.display_name == "Pilot One"
        assert member.role_ids == ["10"]


class TestGuildEvents:
    """Tests for guild join/available handling."""

    @pytest.mark.asyncio
    async def test_recent_guild_only_refreshes_metadata(self, bot, sync_engine) -> None:
        sync_engine.guilds.needs_sync.return_value = False

        await bot.on_guild_available(make_guild())

        sync_engine.ensure_guild.assert_awaited_once()
        sync_engine.sync_guild.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_guild_syncs_with_cached_state(self, bot, sync_engine) -> None:
        sync_engine.guilds.needs_sync.return_value = True

        await bot.on_guild_join(make_guild())

        sync_engine.sync_guild.assert_awaited_once()
        call = sync_engine.sync_guild.await_args
        assert call.args == ("1",)
        assert [r.id for r in call.kwargs["current_roles"]] == ["1", "10"]
        assert [c.id for c in call.kwargs["current_channels"]] == ["20", "21"]

    @pytest.mark.asyncio
    async def test_sync_failure_is_contained(self, bot, sync_engine) -> None:
        sync_engine.guilds.needs_sync.return_value = True
        sync_engine.sync_guild.side_effect = RuntimeError("boom")

        await bot.on_guild_available(make_guild())

    @pytest.mark.asyncio
    async def test_guild_update(self, bot, sync_engine) -> None:
        await bot.on_guild_update(make_guild(), make_guild())

        sync_engine.ensure_guild.assert_awaited_once_with(
            GatewayGuild(id="1", name="Test Alliance")
        )


class TestDeltaEvents:
    """Tests for member, role and channel deltas."""

    @pytest.mark.asyncio
    async def test_member_join_and_remove(self, bot, sync_engine) -> None:
        member = make_member()

        await bot.on_member_join(member)
        await bot.on_member_remove(member)

        guild_id, gateway_member = sync_engine.upsert_member.await_args.args
        assert guild_id == "1"
        assert gateway_member.role_ids == ["10"]
        sync_engine.remove_member.assert_awaited_once_with("1", "500")

    @pytest.mark.asyncio
    async def test_role_events(self, bot, sync_engine) -> None:
        role = make_role(10, "Pings")

        await bot.on_guild_role_update(role, role)
        await bot.on_guild_role_delete(role)

        assert sync_engine.upsert_role.await_args.args[1].name == "Pings"
        sync_engine.delete_role.assert_awaited_once_with("1", "10")

    @pytest.mark.asyncio
    async def test_channel_events(self, bot, sync_engine) -> None:
        channel = make_channel(20)

        await bot.on_guild_channel_create(channel)
        await bot.on_guild_channel_delete(channel)

        assert sync_engine.upsert_channel.await_args.args[1].id == "20"
        sync_engine.delete_channel.assert_awaited_once_with("1", "20")

    @pytest.mark.asyncio
    async def test_delta_failure_is_contained(self, bot, sync_engine) -> None:
        sync_engine.upsert_member.side_effect = RuntimeError("db locked")

        await bot.on_member_update(make_member(), make_member())


class TestShutdown:
    @pytest.mark.asyncio
    async def test_graceful_shutdown_closes_gateway_once(self, bot, sync_engine) -> None:
        await bot.graceful_shutdown()
        await bot.graceful_shutdown()

        sync_engine.gateway.close.assert_awaited_once()
