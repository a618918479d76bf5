"""Fleet notification lifecycle.

Posts, threads, edits and cancels the Discord messages that announce a
fleet. One operation per lifecycle transition:

- creation: announce in every channel bound to the fleet's category
- reminder: reply to the announcement (or announce, if the fleet was hidden)
- formup: reply to the newest prior message in each channel
- update: re-render the embed on every posted message
- cancel: replace every posted message with a cancellation notice

The dispatch job also keeps one upcoming fleets list message current in every
channel bound to a category.

Data problems (missing category or ping format, unparsable stored ids) raise
before anything is sent. Per-channel gateway failures are logged and the
fan-out continues; a message is recorded only after Discord accepted it.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import discord
from sqlalchemy.exc import SQLAlchemyError

from timerboard.embeds import (
    COLOR_CREATION,
    COLOR_FORMUP,
    COLOR_REMINDER,
    COLOR_UPDATE,
    build_cancel_embed,
    build_fleet_embed,
    build_fleet_list_embed,
    build_ping_content,
    creation_title,
    formup_title,
    reminder_title,
)
from timerboard.errors import (
    CategoryNotFoundError,
    GatewayError,
    PingFormatNotFoundError,
    TimerboardError,
    parse_snowflake,
)
from timerboard.fleet_lists import ChannelFleetListRepository
from timerboard.fleet_messages import FleetMessageStore
from timerboard.logging import get_logger
from timerboard.models import (
    CategoryDetails,
    Fleet,
    FleetMessage,
    FleetMessageType,
    ensure_utc,
    utcnow,
)
from timerboard.store import CategoryRepository, FleetRepository, MemberRepository

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from timerboard.config import Config
    from timerboard.gateway import DiscordGateway

log = get_logger("notifications")


@dataclass
class FleetListRefresh:
    """Channels whose upcoming fleets list was touched in one refresh."""

    posted: list[str] = field(default_factory=list)
    edited: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class DispatchResult:
    """Fleets that received time-based notifications in one dispatch run."""

    reminders: list[int] = field(default_factory=list)
    formups: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    lists: FleetListRefresh | None = None


class FleetNotificationEngine:
    """Drives the Discord side of a fleet's lifecycle.

    Attributes:
        gateway: Discord REST gateway.
        config: Application configuration.
        categories: Category lookup with resolved bindings.
        fleets: Fleet reads for the due-notification dispatch.
        messages: Posted message records.
        fleet_lists: Upcoming fleets list message per channel.
    """

    def __init__(self, engine: Engine, gateway: DiscordGateway, config: Config) -> None:
        self.gateway = gateway
        self.config = config
        self.categories = CategoryRepository(engine)
        self.fleets = FleetRepository(engine)
        self.messages = FleetMessageStore(engine)
        self.members = MemberRepository(engine)
        self.fleet_lists = ChannelFleetListRepository(engine)

    @property
    def app_url(self) -> str:
        return self.config.notifications.app_url

    # =========================================================================
    # Shared Helpers
    # =========================================================================

    def load_category(self, fleet: Fleet, require_ping_format: bool = True) -> CategoryDetails:
        """Load and validate the fleet's category before any platform call.

        Raises:
            CategoryNotFoundError: If the category is gone.
            PingFormatNotFoundError: If a ping format is required but unset.
            InvalidIdentifierError: If a stored id cannot be parsed.
        """
        details = self.categories.find_by_id(fleet.category_id)
        if details is None:
            raise CategoryNotFoundError(fleet.category_id)
        if require_ping_format and details.ping_format is None:
            raise PingFormatNotFoundError(fleet.category_id)

        parse_snowflake(details.category.guild_id, "guild_id")
        parse_snowflake(fleet.commander_id, "commander_id")
        for role_id in details.ping_role_ids:
            parse_snowflake(role_id, "role_id")
        for channel_id in details.channel_ids:
            parse_snowflake(channel_id, "channel_id")
        return details

    @staticmethod
    def validate_messages(messages: list[FleetMessage]) -> None:
        """Ensure every stored message reference is usable."""
        for message in messages:
            parse_snowflake(message.channel_id, "channel_id")
            parse_snowflake(message.message_id, "message_id")

    async def resolve_commander_name(self, fleet: Fleet, guild_id: str) -> str:
        """Get the commander's current display name.

        Asks Discord first so renames show up. Falls back to the mirrored
        member row, then to a plain mention.
        """
        try:
            member = await self.gateway.get_member(guild_id, fleet.commander_id)
            return member.display_name
        except GatewayError as e:
            log.warning(
                "commander_lookup_failed",
                fleet_id=fleet.id,
                commander_id=fleet.commander_id,
                error=str(e),
            )

        local = self.members.get(fleet.commander_id, guild_id)
        if local is not None:
            return local.nickname or local.username
        return f"<@{fleet.commander_id}>"

    async def _render(
        self,
        fleet: Fleet,
        details: CategoryDetails,
        field_values: Mapping[int, str],
        color: int,
    ) -> discord.Embed:
        commander_name = await self.resolve_commander_name(fleet, details.category.guild_id)
        return build_fleet_embed(
            fleet,
            details.fields,
            field_values,
            color,
            commander_name,
            self.app_url,
        )

    async def _send(
        self,
        fleet: Fleet,
        channel_id: str,
        content: str,
        embed: discord.Embed,
        message_type: FleetMessageType,
        reply_to: str | None = None,
    ) -> FleetMessage | None:
        """Send one message and record it; gateway failures are logged."""
        try:
            message_id = await self.gateway.send_message(
                channel_id, content, embed, reply_to=reply_to
            )
        except GatewayError as e:
            log.error(
                "fleet_message_send_failed",
                fleet_id=fleet.id,
                channel_id=channel_id,
                message_type=message_type.value,
                error=str(e),
            )
            return None

        record = self.messages.create(fleet.id, channel_id, message_id, message_type)
        log.info(
            "fleet_message_posted",
            fleet_id=fleet.id,
            channel_id=channel_id,
            message_id=message_id,
            message_type=message_type.value,
            reply_to=reply_to,
        )
        return record

    # =========================================================================
    # Lifecycle Transitions
    # =========================================================================

    async def post_creation(
        self, fleet: Fleet, field_values: Mapping[int, str]
    ) -> list[FleetMessage]:
        """Announce a new fleet in every channel bound to its category.

        Hidden fleets are skipped entirely.

        Returns:
            Messages recorded, one per channel the send succeeded in.
        """
        if fleet.hidden:
            log.debug("fleet_hidden_creation_skipped", fleet_id=fleet.id)
            return []

        details = self.load_category(fleet)
        guild_id = details.category.guild_id

        embed = await self._render(fleet, details, field_values, COLOR_CREATION)
        content = build_ping_content(
            creation_title(details.category.name), details.ping_role_ids, guild_id
        )

        posted: list[FleetMessage] = []
        for channel_id in details.channel_ids:
            record = await self._send(
                fleet, channel_id, content, embed, FleetMessageType.CREATION
            )
            if record is not None:
                posted.append(record)
        return posted

    async def post_reminder(
        self, fleet: Fleet, field_values: Mapping[int, str]
    ) -> list[FleetMessage]:
        """Post the reminder, replying to each channel's announcement.

        If the fleet was never announced (it was created hidden), the reminder
        goes out as a standalone message titled like an announcement.
        """
        if fleet.disable_reminder:
            log.debug("fleet_reminder_disabled", fleet_id=fleet.id)
            return []

        details = self.load_category(fleet)
        guild_id = details.category.guild_id

        existing = self.messages.get_by_fleet(fleet.id)
        self.validate_messages(existing)
        announced = any(m.message_type == FleetMessageType.CREATION for m in existing)

        title = reminder_title(details.category.name) if announced else creation_title(
            details.category.name
        )
        embed = await self._render(fleet, details, field_values, COLOR_REMINDER)
        content = build_ping_content(title, details.ping_role_ids, guild_id)

        posted: list[FleetMessage] = []
        for channel_id in details.channel_ids:
            target = self.messages.latest_in_channel(
                fleet.id, channel_id, types=[FleetMessageType.CREATION]
            )
            record = await self._send(
                fleet,
                channel_id,
                content,
                embed,
                FleetMessageType.REMINDER,
                reply_to=target.message_id if target else None,
            )
            if record is not None:
                posted.append(record)
        return posted

    async def post_formup(
        self, fleet: Fleet, field_values: Mapping[int, str]
    ) -> list[FleetMessage]:
        """Post the formup as a reply to the newest prior message per channel.

        Channels without a prior message are skipped with a warning.
        """
        existing = self.messages.get_by_fleet(fleet.id)
        if not existing:
            log.warning("fleet_formup_without_messages", fleet_id=fleet.id)
            return []
        self.validate_messages(existing)

        details = self.load_category(fleet)
        guild_id = details.category.guild_id

        embed = await self._render(fleet, details, field_values, COLOR_FORMUP)
        content = build_ping_content(
            formup_title(details.category.name), details.ping_role_ids, guild_id
        )

        posted: list[FleetMessage] = []
        for channel_id in details.channel_ids:
            target = self.messages.latest_in_channel(fleet.id, channel_id)
            if target is None:
                log.warning(
                    "fleet_formup_channel_skipped",
                    fleet_id=fleet.id,
                    channel_id=channel_id,
                )
                continue
            record = await self._send(
                fleet,
                channel_id,
                content,
                embed,
                FleetMessageType.FORMUP,
                reply_to=target.message_id,
            )
            if record is not None:
                posted.append(record)
        return posted

    async def update_messages(self, fleet: Fleet, field_values: Mapping[int, str]) -> int:
        """Re-render the embed on every posted message of a fleet.

        Content and reply structure are left alone; no rows are created.

        Returns:
            Number of messages edited.
        """
        existing = self.messages.get_by_fleet(fleet.id)
        if not existing:
            log.debug("fleet_update_without_messages", fleet_id=fleet.id)
            return 0
        self.validate_messages(existing)

        details = self.load_category(fleet)
        embed = await self._render(fleet, details, field_values, COLOR_UPDATE)

        edited = 0
        for message in existing:
            try:
                await self.gateway.edit_message(
                    message.channel_id, message.message_id, embed=embed
                )
                edited += 1
            except GatewayError as e:
                log.error(
                    "fleet_message_edit_failed",
                    fleet_id=fleet.id,
                    channel_id=message.channel_id,
                    message_id=message.message_id,
                    error=str(e),
                )

        log.info("fleet_messages_updated", fleet_id=fleet.id, edited=edited, total=len(existing))
        return edited

    async def cancel(self, fleet: Fleet, cancelled_by: str | None = None) -> int:
        """Replace every posted message of a fleet with a cancellation notice.

        Message rows are kept.

        Args:
            fleet: The cancelled fleet.
            cancelled_by: Display name for the footer; defaults to the commander.

        Returns:
            Number of messages edited.
        """
        existing = self.messages.get_by_fleet(fleet.id)
        if not existing:
            log.debug("fleet_cancel_without_messages", fleet_id=fleet.id)
            return 0
        self.validate_messages(existing)

        details = self.load_category(fleet, require_ping_format=False)
        if cancelled_by is None:
            cancelled_by = await self.resolve_commander_name(fleet, details.category.guild_id)

        embed = build_cancel_embed(fleet, details.category.name, cancelled_by)

        edited = 0
        for message in existing:
            try:
                await self.gateway.edit_message(
                    message.channel_id, message.message_id, content="", embed=embed
                )
                edited += 1
            except GatewayError as e:
                log.error(
                    "fleet_message_cancel_failed",
                    fleet_id=fleet.id,
                    channel_id=message.channel_id,
                    message_id=message.message_id,
                    error=str(e),
                )

        log.info("fleet_cancelled", fleet_id=fleet.id, edited=edited, total=len(existing))
        return edited

    # =========================================================================
    # Time-Based Dispatch
    # =========================================================================

    async def dispatch_due(self, now: datetime | None = None) -> DispatchResult:
        """Post reminders and formups that have come due.

        A reminder is due once ``now`` is within the category's reminder lead
        time before the fleet and no reminder was posted yet. A formup is due
        from fleet time until the formup grace period ends, once per fleet.
        Failures for one fleet are logged and the others proceed. Afterwards
        the upcoming fleets lists are refreshed when enabled.
        """
        now = ensure_utc(now) if now else utcnow()
        grace = timedelta(minutes=self.config.notifications.formup_grace_minutes)
        result = DispatchResult()

        for fleet in self.fleets.list_since(now - grace):
            try:
                await self._dispatch_fleet(fleet, now, grace, result)
            except (TimerboardError, SQLAlchemyError) as e:
                log.error("fleet_dispatch_failed", fleet_id=fleet.id, error=str(e))
                result.failed.append(fleet.id)

        if self.config.notifications.fleet_list_enabled:
            try:
                result.lists = await self.refresh_fleet_lists(now)
            except SQLAlchemyError as e:
                log.error("fleet_list_refresh_failed", error=str(e))

        if result.reminders or result.formups or result.failed:
            log.info(
                "notifications_dispatched",
                reminders=len(result.reminders),
                formups=len(result.formups),
                failed=len(result.failed),
            )
        return result

    async def _dispatch_fleet(
        self, fleet: Fleet, now: datetime, grace: timedelta, result: DispatchResult
    ) -> None:
        posted_types = {m.message_type for m in self.messages.get_by_fleet(fleet.id)}
        fleet_time = ensure_utc(fleet.fleet_time)

        if (
            now < fleet_time
            and not fleet.disable_reminder
            and FleetMessageType.REMINDER not in posted_types
        ):
            details = self.load_category(fleet)
            lead = details.category.ping_reminder_seconds
            if lead is not None and now >= fleet_time - timedelta(seconds=lead):
                field_values = self.fleets.get_field_values(fleet.id)
                if await self.post_reminder(fleet, field_values):
                    result.reminders.append(fleet.id)
                    posted_types.add(FleetMessageType.REMINDER)

        if (
            fleet_time <= now < fleet_time + grace
            and FleetMessageType.FORMUP not in posted_types
            and posted_types
        ):
            field_values = self.fleets.get_field_values(fleet.id)
            if await self.post_formup(fleet, field_values):
                result.formups.append(fleet.id)

    # =========================================================================
    # Upcoming Fleets Lists
    # =========================================================================

    async def refresh_fleet_lists(self, now: datetime | None = None) -> FleetListRefresh:
        """Post or edit the upcoming fleets list in every bound channel.

        A channel's list is edited only when its rendered content changed. If
        the stored list message is gone from Discord a new one is posted.
        Failures for one channel are logged and the others proceed.
        """
        now = ensure_utc(now) if now else utcnow()
        limit = self.config.notifications.fleet_list_max_fleets
        upcoming = self.fleet_lists.upcoming_by_channel(now, limit)
        refresh = FleetListRefresh()

        for channel_id in self.fleet_lists.list_channels():
            embed = build_fleet_list_embed(upcoming.get(channel_id, []), self.app_url)
            try:
                outcome = await self._refresh_channel_list(channel_id, embed)
            except (TimerboardError, SQLAlchemyError) as e:
                log.error("fleet_list_channel_failed", channel_id=channel_id, error=str(e))
                outcome = "failed"
            getattr(refresh, outcome).append(channel_id)

        if refresh.posted or refresh.edited or refresh.failed:
            log.info(
                "fleet_lists_refreshed",
                posted=len(refresh.posted),
                edited=len(refresh.edited),
                failed=len(refresh.failed),
            )
        return refresh

    async def _refresh_channel_list(self, channel_id: str, embed: discord.Embed) -> str:
        parse_snowflake(channel_id, "channel_id")
        fingerprint = hashlib.sha256(
            json.dumps(embed.to_dict(), sort_keys=True).encode()
        ).hexdigest()

        record = self.fleet_lists.get_by_channel_id(channel_id)
        if record is not None:
            if record.fingerprint == fingerprint:
                return "unchanged"
            try:
                await self.gateway.edit_message(
                    channel_id, record.message_id, content="", embed=embed
                )
            except GatewayError as e:
                if e.status_code != 404:
                    log.error(
                        "fleet_list_edit_failed",
                        channel_id=channel_id,
                        message_id=record.message_id,
                        error=str(e),
                    )
                    return "failed"
                log.warning(
                    "fleet_list_message_missing",
                    channel_id=channel_id,
                    message_id=record.message_id,
                )
            else:
                self.fleet_lists.upsert(channel_id, record.message_id, fingerprint)
                return "edited"

        try:
            message_id = await self.gateway.send_message(channel_id, "", embed)
        except GatewayError as e:
            log.error("fleet_list_post_failed", channel_id=channel_id, error=str(e))
            return "failed"

        self.fleet_lists.upsert(channel_id, message_id, fingerprint)
        log.info("fleet_list_posted", channel_id=channel_id, message_id=message_id)
        return "posted"
