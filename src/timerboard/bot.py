"""Discord gateway bot for Timerboard.

Keeps the guild mirror current between sweeps. Guild join/available events
refresh metadata and run a full sync when the guild is stale; member, role
and channel events apply single-item deltas. Handler failures are logged at
the event boundary so one bad event cannot take the connection down.

The bot also owns the periodic scheduler lifecycle: it starts the jobs once
connected and stops them on shutdown.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable
from datetime import timedelta
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from timerboard.gateway import DiscordGateway
from timerboard.logging import get_logger
from timerboard.models import (
    GatewayChannel,
    GatewayGuild,
    GatewayMember,
    GatewayRole,
    utcnow,
)
from timerboard.notifications import FleetNotificationEngine
from timerboard.scheduler import GuildSyncScheduler
from timerboard.sync import GuildSyncEngine

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from timerboard.config import Config

log = get_logger("bot")


# =============================================================================
# discord.py -> gateway models
# =============================================================================


def guild_from_discord(guild: discord.Guild) -> GatewayGuild:
    return GatewayGuild(
        id=str(guild.id),
        name=guild.name,
        icon_hash=guild.icon.key if guild.icon else None,
    )


def role_from_discord(role: discord.Role) -> GatewayRole:
    return GatewayRole(
        id=str(role.id),
        name=role.name,
        color=role.color.value,
        position=role.position,
    )


def channel_from_discord(channel: discord.abc.GuildChannel) -> GatewayChannel:
    return GatewayChannel(
        id=str(channel.id),
        kind=channel.type.value,
        name=channel.name,
        position=channel.position,
    )


def member_from_discord(member: discord.Member) -> GatewayMember:
    """Convert a member; the implicit @everyone role is not an assignment."""
    return GatewayMember(
        user_id=str(member.id),
        username=member.name,
        nickname=member.nick,
        global_name=member.global_name,
        role_ids=[str(r.id) for r in member.roles if not r.is_default()],
    )


class TimerboardBot(commands.Bot):
    """Discord bot mirroring guild state for Timerboard.

    Attributes:
        config: Application configuration.
        sync_engine: Guild reconciliation engine.
        scheduler: Periodic job scheduler, started in setup_hook when given.
    """

    def __init__(
        self,
        config: Config,
        sync_engine: GuildSyncEngine,
        scheduler: GuildSyncScheduler | None = None,
    ) -> None:
        """Initialize the bot with required intents.

        Args:
            config: Application configuration.
            sync_engine: Guild reconciliation engine.
            scheduler: Optional scheduler for sweeps and notification dispatch.
        """
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True  # Member join/update/leave events

        # commands.Bot requires a command_prefix even though no commands exist
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.sync_engine = sync_engine
        self.scheduler = scheduler
        self._shutdown_requested = False

    async def setup_hook(self) -> None:
        """Start the periodic jobs once the event loop is running."""
        if self.scheduler is not None:
            self.scheduler.start()

    async def on_ready(self) -> None:
        log.info("discord_ready", user=str(self.user), guilds=len(self.guilds))

    async def on_disconnect(self) -> None:
        """discord.py reconnects on its own; this is just for logging."""
        log.warning("discord_disconnected")

    async def on_resumed(self) -> None:
        log.info("discord_resumed")

    async def _guarded(self, event: str, guild_id: int, action: Awaitable[object]) -> None:
        """Run an event handler body, logging instead of raising."""
        try:
            await action
        except Exception as e:
            log.error("event_handler_failed", event=event, guild_id=str(guild_id), error=str(e))

    # =========================================================================
    # Guild Events
    # =========================================================================

    async def on_guild_join(self, guild: discord.Guild) -> None:
        await self._guarded("guild_join", guild.id, self.handle_guild(guild))

    async def on_guild_available(self, guild: discord.Guild) -> None:
        await self._guarded("guild_available", guild.id, self.handle_guild(guild))

    async def handle_guild(self, guild: discord.Guild) -> None:
        """Refresh guild metadata; run a full sync if the guild is stale.

        Roles and channels come from the gateway cache, members are paged
        over REST.
        """
        snapshot = guild_from_discord(guild)
        await self.sync_engine.ensure_guild(snapshot)

        threshold = utcnow() - timedelta(minutes=self.config.sync.full_sync_window_minutes)
        if not self.sync_engine.guilds.needs_sync(snapshot.id, threshold):
            log.debug("guild_sync_recent", guild_id=snapshot.id)
            return

        await self.sync_engine.sync_guild(
            snapshot.id,
            guild=snapshot,
            current_roles=[role_from_discord(r) for r in guild.roles],
            current_channels=[channel_from_discord(c) for c in guild.channels],
        )

    async def on_guild_update(self, before: discord.Guild, after: discord.Guild) -> None:
        await self._guarded(
            "guild_update", after.id, self.sync_engine.ensure_guild(guild_from_discord(after))
        )

    # =========================================================================
    # Member Events
    # =========================================================================

    async def on_member_join(self, member: discord.Member) -> None:
        await self._guarded(
            "member_join",
            member.guild.id,
            self.sync_engine.upsert_member(str(member.guild.id), member_from_discord(member)),
        )

    async def on_member_update(self, before: discord.Member, after: discord.Member) -> None:
        await self._guarded(
            "member_update",
            after.guild.id,
            self.sync_engine.upsert_member(str(after.guild.id), member_from_discord(after)),
        )

    async def on_member_remove(self, member: discord.Member) -> None:
        await self._guarded(
            "member_remove",
            member.guild.id,
            self.sync_engine.remove_member(str(member.guild.id), str(member.id)),
        )

    # =========================================================================
    # Role Events
    # =========================================================================

    async def on_guild_role_create(self, role: discord.Role) -> None:
        await self._guarded(
            "role_create",
            role.guild.id,
            self.sync_engine.upsert_role(str(role.guild.id), role_from_discord(role)),
        )

    async def on_guild_role_update(self, before: discord.Role, after: discord.Role) -> None:
        await self._guarded(
            "role_update",
            after.guild.id,
            self.sync_engine.upsert_role(str(after.guild.id), role_from_discord(after)),
        )

    async def on_guild_role_delete(self, role: discord.Role) -> None:
        await self._guarded(
            "role_delete",
            role.guild.id,
            self.sync_engine.delete_role(str(role.guild.id), str(role.id)),
        )

    # =========================================================================
    # Channel Events
    # =========================================================================

    async def on_guild_channel_create(self, channel: discord.abc.GuildChannel) -> None:
        await self._guarded(
            "channel_create",
            channel.guild.id,
            self.sync_engine.upsert_channel(str(channel.guild.id), channel_from_discord(channel)),
        )

    async def on_guild_channel_update(
        self, before: discord.abc.GuildChannel, after: discord.abc.GuildChannel
    ) -> None:
        await self._guarded(
            "channel_update",
            after.guild.id,
            self.sync_engine.upsert_channel(str(after.guild.id), channel_from_discord(after)),
        )

    async def on_guild_channel_delete(self, channel: discord.abc.GuildChannel) -> None:
        await self._guarded(
            "channel_delete",
            channel.guild.id,
            self.sync_engine.delete_channel(str(channel.guild.id), str(channel.id)),
        )

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def graceful_shutdown(self) -> None:
        """Stop the periodic jobs, close the REST gateway, then disconnect."""
        if self._shutdown_requested:
            return
        log.info("shutdown_initiated")
        self._shutdown_requested = True

        if self.scheduler is not None and self.scheduler.scheduler.running:
            self.scheduler.stop()

        await self.sync_engine.gateway.close()

        await self.close()
        await asyncio.sleep(0)  # Allow pending aiohttp callbacks to finalize
        log.info("shutdown_complete")


def setup_signal_handlers(bot: TimerboardBot, loop: asyncio.AbstractEventLoop) -> None:
    """Setup graceful shutdown handlers for SIGINT and SIGTERM.

    Args:
        bot: The bot instance to shut down.
        loop: The event loop to add signal handlers to.
    """

    def handle_signal(sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        loop.create_task(bot.graceful_shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    log.debug("signal_handlers_registered", signals=["SIGINT", "SIGTERM"])


def build_bot(config: Config, engine: Engine, token: str) -> TimerboardBot:
    """Wire the gateway, engines and scheduler into a bot."""
    gateway = DiscordGateway.from_config(config, token)
    sync_engine = GuildSyncEngine(engine, gateway, config)
    notification_engine = FleetNotificationEngine(engine, gateway, config)
    scheduler = GuildSyncScheduler(
        engine, sync_engine, config, notification_engine=notification_engine
    )
    return TimerboardBot(config, sync_engine, scheduler)


async def run_bot(config: Config, engine: Engine) -> None:
    """Run the bot with its schedulers until shutdown.

    Args:
        config: Application configuration; the token comes from DISCORD_TOKEN.
        engine: SQLAlchemy database engine.
    """
    token = config.discord_token
    if not token:
        raise ValueError("DISCORD_TOKEN is not set")

    bot = build_bot(config, engine, token)
    loop = asyncio.get_running_loop()
    setup_signal_handlers(bot, loop)

    try:
        log.info("bot_starting")
        await bot.start(token)
    except asyncio.CancelledError:
        log.debug("bot_cancelled")
    finally:
        if not bot.is_closed():
            await bot.graceful_shutdown()
