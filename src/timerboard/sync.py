"""Guild state reconciliation for Timerboard.

Keeps the local mirror of a guild's roles, text channels and members in
agreement with what Discord reports. Full syncs diff the stored rows against
the current platform state; real-time events apply single-item deltas through
the same repositories.

Failure policy for a full sync:
- A failed Discord fetch aborts only that resource. The other resources
  still reconcile, but the guild's last-sync stamp is withheld so the next
  sweep picks it up again.
- A persistence error while reconciling a resource is logged and the next
  resource proceeds.
- Member reconciliation never writes a partial listing: if any page fails,
  stored members are left as they were.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from timerboard.errors import GatewayError
from timerboard.logging import get_logger
from timerboard.models import (
    Channel,
    GatewayChannel,
    GatewayGuild,
    GatewayMember,
    GatewayRole,
    Member,
    Role,
    utcnow,
)
from timerboard.reconcile import ReconcileDiff, diff
from timerboard.store import (
    ChannelRepository,
    GuildRepository,
    MemberRepository,
    RoleRepository,
    UserRoleRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from timerboard.config import Config
    from timerboard.gateway import DiscordGateway

log = get_logger("sync")


@dataclass
class GuildSyncReport:
    """Outcome of one full guild sync."""

    guild_id: str
    metadata_ok: bool = False
    roles_ok: bool = False
    channels_ok: bool = False
    members_ok: bool = False
    stamped: bool = False

    @property
    def complete(self) -> bool:
        return self.metadata_ok and self.roles_ok and self.channels_ok and self.members_ok


class GuildSyncEngine:
    """Reconciles one guild at a time against the Discord gateway.

    Attributes:
        gateway: Discord REST gateway.
        config: Application configuration.
        guilds: Guild repository.
        roles: Role repository.
        channels: Channel repository.
        members: Member repository.
        user_roles: Application user role repository.
    """

    def __init__(self, engine: Engine, gateway: DiscordGateway, config: Config) -> None:
        """Initialize the sync engine.

        Args:
            engine: SQLAlchemy database engine.
            gateway: Discord REST gateway.
            config: Application configuration.
        """
        self.gateway = gateway
        self.config = config
        self.guilds = GuildRepository(engine)
        self.roles = RoleRepository(engine)
        self.channels = ChannelRepository(engine)
        self.members = MemberRepository(engine)
        self.user_roles = UserRoleRepository(engine)

        # Full syncs and deltas of one guild run one at a time
        self._locks: dict[str, asyncio.Lock] = {}

    def guild_lock(self, guild_id: str) -> asyncio.Lock:
        """Get the lock serializing full syncs and deltas of one guild."""
        lock = self._locks.get(guild_id)
        if lock is None:
            lock = self._locks[guild_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Full Reconciliation
    # =========================================================================

    async def reconcile_roles(
        self, guild_id: str, current_roles: Sequence[GatewayRole]
    ) -> ReconcileDiff[Role]:
        """Bring a guild's stored roles in line with ``current_roles``.

        Roles missing from the current set are deleted (category access and
        ping bindings cascade); every current role is upserted.

        Args:
            guild_id: Guild being reconciled.
            current_roles: Roles Discord reports right now.

        Returns:
            The applied diff.
        """
        local = self.roles.get_by_guild(guild_id)
        result = diff(
            local,
            [role.to_role(guild_id) for role in current_roles],
            local_key=lambda r: r.role_id,
        )

        deleted = self.roles.delete(result.to_delete)
        self.roles.upsert_many(result.to_upsert)

        for role_id in result.to_delete:
            log.info("role_deleted", guild_id=guild_id, role_id=role_id)
        log.info(
            "roles_reconciled",
            guild_id=guild_id,
            deleted=deleted,
            upserted=len(result.to_upsert),
        )
        return result

    async def reconcile_channels(
        self, guild_id: str, current_channels: Sequence[GatewayChannel]
    ) -> ReconcileDiff[Channel]:
        """Bring a guild's stored text channels in line with ``current_channels``.

        Non-text channels are dropped before diffing, so a channel that stops
        being a text channel is deleted locally.
        """
        text_channels = [c.to_channel(guild_id) for c in current_channels if c.is_text]

        local = self.channels.get_by_guild(guild_id)
        result = diff(local, text_channels, local_key=lambda c: c.channel_id)

        deleted = self.channels.delete(result.to_delete)
        self.channels.upsert_many(result.to_upsert)

        for channel_id in result.to_delete:
            log.info("channel_deleted", guild_id=guild_id, channel_id=channel_id)
        log.info(
            "channels_reconciled",
            guild_id=guild_id,
            deleted=deleted,
            upserted=len(result.to_upsert),
        )
        return result

    async def fetch_all_members(self, guild_id: str) -> list[GatewayMember]:
        """Page through the gateway's member listing for a guild.

        Raises:
            GatewayError: If any page fails; the partial listing is discarded.
        """
        fetched: list[GatewayMember] = []
        async for page in self.gateway.iter_member_pages(
            guild_id, page_size=self.config.discord.member_page_size
        ):
            fetched.extend(page)
        return fetched

    async def reconcile_members(self, guild_id: str) -> int:
        """Replace a guild's stored members with the gateway's full listing.

        After the replace, role assignments of members that have an
        application account are re-synced. Failures for individual users are
        logged and do not abort the reconciliation.

        Args:
            guild_id: Guild to reconcile.

        Returns:
            Number of members stored.

        Raises:
            GatewayError: If the listing could not be fetched completely.
        """
        fetched = await self.fetch_all_members(guild_id)

        log.debug("members_fetched", guild_id=guild_id, count=len(fetched))

        # Duplicate user ids across pages would violate the (user, guild) key
        unique: dict[str, GatewayMember] = {m.user_id: m for m in fetched}
        self.members.replace_for_guild(
            guild_id, [m.to_member(guild_id) for m in unique.values()]
        )

        log.info("members_reconciled", guild_id=guild_id, count=len(unique))

        self._sync_registered_user_roles(guild_id, list(unique.values()))
        return len(unique)

    def _sync_registered_user_roles(
        self, guild_id: str, fetched: Sequence[GatewayMember]
    ) -> None:
        """Refresh role assignments for members with an application account."""
        try:
            registered = self.user_roles.find_registered(m.user_id for m in fetched)
        except SQLAlchemyError as e:
            log.error("user_lookup_failed", guild_id=guild_id, error=str(e))
            return

        synced = 0
        for member in fetched:
            if member.user_id not in registered:
                continue
            try:
                self.user_roles.sync_user_roles(member.user_id, guild_id, member.role_ids)
                synced += 1
            except Exception as e:
                log.warning(
                    "user_role_sync_failed",
                    guild_id=guild_id,
                    user_id=member.user_id,
                    error=str(e),
                )

        if registered:
            log.debug("user_roles_synced", guild_id=guild_id, users=synced)

    async def sync_guild(
        self,
        guild_id: str,
        guild: GatewayGuild | None = None,
        current_roles: Sequence[GatewayRole] | None = None,
        current_channels: Sequence[GatewayChannel] | None = None,
    ) -> GuildSyncReport:
        """Run a full sync of one guild: metadata, roles, channels, members.

        Steps run in that fixed order under the guild's lock. Data passed in
        (e.g. from a guild_create event) is used instead of fetching it.

        Args:
            guild_id: Guild to sync.
            guild: Guild metadata already in hand.
            current_roles: Roles already in hand.
            current_channels: Channels already in hand.

        Returns:
            GuildSyncReport describing what succeeded.
        """
        report = GuildSyncReport(guild_id=guild_id)

        async with self.guild_lock(guild_id):
            if guild is None:
                try:
                    guild = await self.gateway.get_guild(guild_id)
                except GatewayError as e:
                    log.error("guild_fetch_failed", guild_id=guild_id, error=str(e))
                    return report

            # Name and icon can change even when nothing else does
            try:
                self.guilds.upsert(guild)
            except SQLAlchemyError as e:
                log.error("guild_upsert_failed", guild_id=guild_id, error=str(e))
                return report
            report.metadata_ok = True

            log.debug("guild_sync_started", guild_id=guild_id, name=guild.name)
            fetched_all = True

            # Roles
            if current_roles is None:
                try:
                    current_roles = await self.gateway.get_roles(guild_id)
                except GatewayError as e:
                    log.error("roles_fetch_failed", guild_id=guild_id, error=str(e))
                    fetched_all = False
            if current_roles is not None:
                try:
                    await self.reconcile_roles(guild_id, current_roles)
                    report.roles_ok = True
                except SQLAlchemyError as e:
                    log.error("roles_reconcile_failed", guild_id=guild_id, error=str(e))

            # Channels
            if current_channels is None:
                try:
                    current_channels = await self.gateway.get_channels(guild_id)
                except GatewayError as e:
                    log.error("channels_fetch_failed", guild_id=guild_id, error=str(e))
                    fetched_all = False
            if current_channels is not None:
                try:
                    await self.reconcile_channels(guild_id, current_channels)
                    report.channels_ok = True
                except SQLAlchemyError as e:
                    log.error("channels_reconcile_failed", guild_id=guild_id, error=str(e))

            # Members
            try:
                await self.reconcile_members(guild_id)
                report.members_ok = True
            except GatewayError as e:
                log.error("members_fetch_failed", guild_id=guild_id, error=str(e))
                fetched_all = False
            except SQLAlchemyError as e:
                log.error("members_reconcile_failed", guild_id=guild_id, error=str(e))

            if not fetched_all:
                log.warning(
                    "guild_sync_incomplete",
                    guild_id=guild_id,
                    roles=report.roles_ok,
                    channels=report.channels_ok,
                    members=report.members_ok,
                )
                return report

            try:
                self.guilds.touch_last_sync(guild_id, utcnow())
                report.stamped = True
            except SQLAlchemyError as e:
                log.error("guild_stamp_failed", guild_id=guild_id, error=str(e))
                return report

        log.info("guild_synced", guild_id=guild_id, complete=report.complete)
        return report

    # =========================================================================
    # Single-Item Deltas (real-time events)
    # =========================================================================

    # Deltas wait for any full sync of the same guild to finish.

    async def ensure_guild(self, guild: GatewayGuild) -> None:
        """Create or refresh guild metadata without a full sync."""
        async with self.guild_lock(guild.id):
            self.guilds.upsert(guild)

    async def upsert_role(self, guild_id: str, role: GatewayRole) -> None:
        async with self.guild_lock(guild_id):
            self.roles.upsert_many([role.to_role(guild_id)])
        log.info("role_upserted", guild_id=guild_id, role_id=role.id, name=role.name)

    async def delete_role(self, guild_id: str, role_id: str) -> None:
        async with self.guild_lock(guild_id):
            self.roles.delete([role_id])
        log.info("role_deleted", guild_id=guild_id, role_id=role_id)

    async def upsert_channel(self, guild_id: str, channel: GatewayChannel) -> None:
        """Apply a channel create/update; non-text channels are not tracked."""
        async with self.guild_lock(guild_id):
            if not channel.is_text:
                # A text channel converted to another kind is no longer tracked
                if self.channels.delete([channel.id]):
                    log.info("channel_deleted", guild_id=guild_id, channel_id=channel.id)
                return
            self.channels.upsert_many([channel.to_channel(guild_id)])
        log.info("channel_upserted", guild_id=guild_id, channel_id=channel.id)

    async def delete_channel(self, guild_id: str, channel_id: str) -> None:
        async with self.guild_lock(guild_id):
            self.channels.delete([channel_id])
        log.info("channel_deleted", guild_id=guild_id, channel_id=channel_id)

    async def upsert_member(self, guild_id: str, member: GatewayMember) -> None:
        """Apply a member join/update and refresh app-user roles if registered."""
        async with self.guild_lock(guild_id):
            self.members.upsert(member.to_member(guild_id))
            log.debug("member_upserted", guild_id=guild_id, user_id=member.user_id)
            self._sync_registered_user_roles(guild_id, [member])

    async def remove_member(self, guild_id: str, user_id: str) -> None:
        async with self.guild_lock(guild_id):
            self.members.delete(user_id, guild_id)
        log.info("member_removed", guild_id=guild_id, user_id=user_id)

    def get_member(self, guild_id: str, user_id: str) -> Member | None:
        """Look up the mirrored member row."""
        return self.members.get(user_id, guild_id)
