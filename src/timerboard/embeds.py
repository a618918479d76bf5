"""Embed and message content builders for fleet notifications."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime

import discord

from timerboard.models import Fleet, PingFormatField, UpcomingFleet, ensure_utc, utcnow

# Embed colors per lifecycle stage
COLOR_CREATION = 0x3498DB
COLOR_REMINDER = 0xF39C12
COLOR_FORMUP = 0xE74C3C
COLOR_UPDATE = COLOR_CREATION
COLOR_CANCELLED = 0x95A5A6
COLOR_FLEET_LIST = 0x2ECC71

FLEET_LIST_TITLE = "Upcoming Fleets"


def creation_title(category_name: str) -> str:
    return f"**.:New Upcoming {category_name}:.**"


def reminder_title(category_name: str) -> str:
    return f"**.:Reminder - Upcoming {category_name}:.**"


def formup_title(category_name: str) -> str:
    return f"**.:{category_name} Forming Now:.**"


def format_fleet_time(fleet_time: datetime) -> str:
    """Render a fleet time as ``YYYY-MM-DD HH:MM UTC`` plus a Discord timestamp."""
    fleet_time = ensure_utc(fleet_time)
    return f"{fleet_time:%Y-%m-%d %H:%M} UTC (<t:{int(fleet_time.timestamp())}:F>)"


def build_ping_content(title: str, ping_role_ids: Sequence[str], guild_id: str) -> str:
    """Build message content: the title, a blank line, then role mentions.

    The guild's own id is its everyone role and becomes ``@everyone``.
    """
    content = f"{title}\n\n"
    for role_id in ping_role_ids:
        if role_id == guild_id:
            content += "@everyone "
        else:
            content += f"<@&{role_id}> "
    return content


def build_fleet_embed(
    fleet: Fleet,
    fields: Sequence[PingFormatField],
    field_values: Mapping[int, str],
    color: int,
    commander_name: str,
    app_url: str,
) -> discord.Embed:
    """Build the embed describing a fleet.

    Args:
        fleet: Fleet to describe.
        fields: Ping format fields, already ordered by priority.
        field_values: Per-fleet values keyed by field id.
        color: Embed color for the lifecycle stage.
        commander_name: Current display name of the fleet commander.
        app_url: Base URL of the web application.

    Returns:
        The embed. Custom fields with neither a value nor a default are omitted.
    """
    embed = discord.Embed(
        title=fleet.name,
        url=f"{app_url}/fleets/{fleet.id}",
        description=fleet.description or None,
        color=color,
    )
    embed.add_field(
        name="FC",
        value=f"{commander_name} (<@{fleet.commander_id}>)",
        inline=False,
    )
    embed.add_field(name="Time", value=format_fleet_time(fleet.fleet_time), inline=False)

    for field in fields:
        value = field_values.get(field.id) or field.default_value
        if not value:
            continue
        embed.add_field(name=field.name, value=value, inline=False)

    return embed


def build_cancel_embed(
    fleet: Fleet,
    category_name: str,
    cancelled_by: str,
    now: datetime | None = None,
) -> discord.Embed:
    """Build the gray notice that replaces a cancelled fleet's messages."""
    fleet_time = ensure_utc(fleet.fleet_time)
    embed = discord.Embed(
        title=f".:{category_name} Cancelled:.",
        description=(
            f"{category_name} posted by <@{fleet.commander_id}>, **{fleet.name}**, "
            f"scheduled for **{fleet_time:%Y-%m-%d %H:%M} UTC** "
            f"(<t:{int(fleet_time.timestamp())}:F>) was cancelled."
        ),
        color=COLOR_CANCELLED,
        timestamp=now or utcnow(),
    )
    embed.set_footer(text=f"Cancelled by: {cancelled_by}")
    return embed


def build_fleet_list_embed(
    entries: Sequence[UpcomingFleet], app_url: str
) -> discord.Embed:
    """Build the upcoming fleets list shown in a channel.

    One line per fleet with an absolute and a relative Discord timestamp, so
    the message reads correctly without being edited as time passes.
    """
    if entries:
        lines = []
        for entry in entries:
            ts = int(ensure_utc(entry.fleet_time).timestamp())
            lines.append(
                f"**[{entry.name}]({app_url}/fleets/{entry.fleet_id})** "
                f"({entry.category_name}) - <t:{ts}:F> (<t:{ts}:R>)"
            )
        description = "\n".join(lines)
    else:
        description = "No upcoming fleets."

    return discord.Embed(
        title=FLEET_LIST_TITLE,
        url=f"{app_url}/fleets",
        description=description,
        color=COLOR_FLEET_LIST,
    )
