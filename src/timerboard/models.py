"""Pydantic models for Timerboard entities.

These models bridge between the database (SQLAlchemy Core), the Discord REST
payloads and application code, providing validation and serialization.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================


class ChannelKind(int, Enum):
    """Discord channel types (subset we care about)."""

    GUILD_TEXT = 0
    DM = 1
    GUILD_VOICE = 2
    GROUP_DM = 3
    GUILD_CATEGORY = 4
    GUILD_ANNOUNCEMENT = 5
    GUILD_STAGE_VOICE = 13
    GUILD_FORUM = 15


class FleetMessageType(str, Enum):
    """Lifecycle stage a posted fleet message belongs to."""

    CREATION = "creation"
    REMINDER = "reminder"
    FORMUP = "formup"


# =============================================================================
# Helper Functions
# =============================================================================


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware (UTC).

    SQLite stores datetimes as naive. This helper adds UTC timezone info
    if the datetime is naive.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_naive_utc(dt: datetime) -> datetime:
    """Convert an aware datetime to naive UTC for SQLite comparisons."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def format_color(value: int) -> str:
    """Format a Discord integer color as ``#RRGGBB``."""
    return f"#{value & 0xFFFFFF:06X}"


# =============================================================================
# Discord Mirror Models
# =============================================================================


class Guild(BaseModel):
    """Mirrored Discord guild."""

    model_config = ConfigDict(from_attributes=True)

    guild_id: str
    name: str
    icon_hash: str | None = None
    last_sync_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Role(BaseModel):
    """Mirrored guild role."""

    model_config = ConfigDict(from_attributes=True)

    guild_id: str
    role_id: str
    name: str
    color: str = "#000000"
    position: int = 0


class Channel(BaseModel):
    """Mirrored guild text channel."""

    model_config = ConfigDict(from_attributes=True)

    guild_id: str
    channel_id: str
    name: str
    position: int = 0


class Member(BaseModel):
    """A user's presence in a guild."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    guild_id: str
    username: str
    nickname: str | None = None


# =============================================================================
# Gateway Payloads
# =============================================================================


class GatewayGuild(BaseModel):
    """Guild metadata as returned by Discord."""

    id: str
    name: str
    icon_hash: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayGuild":
        return cls(id=str(data["id"]), name=data["name"], icon_hash=data.get("icon"))


class GatewayRole(BaseModel):
    """Role as returned by Discord."""

    id: str
    name: str
    color: int = 0
    position: int = 0

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayRole":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            color=data.get("color", 0),
            position=data.get("position", 0),
        )

    def to_role(self, guild_id: str) -> Role:
        """Convert to a mirror row for the given guild."""
        return Role(
            guild_id=guild_id,
            role_id=self.id,
            name=self.name,
            color=format_color(self.color),
            position=self.position,
        )


class GatewayChannel(BaseModel):
    """Guild channel as returned by Discord."""

    id: str
    kind: int
    name: str
    position: int = 0

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayChannel":
        return cls(
            id=str(data["id"]),
            kind=data["type"],
            name=data.get("name") or "",
            position=data.get("position", 0),
        )

    @property
    def is_text(self) -> bool:
        """Whether this channel can receive fleet notifications."""
        return self.kind == ChannelKind.GUILD_TEXT

    def to_channel(self, guild_id: str) -> Channel:
        """Convert to a mirror row for the given guild."""
        return Channel(
            guild_id=guild_id,
            channel_id=self.id,
            name=self.name,
            position=self.position,
        )


class GatewayMember(BaseModel):
    """Guild member as returned by Discord."""

    user_id: str
    username: str
    nickname: str | None = None
    global_name: str | None = None
    role_ids: list[str] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayMember":
        user = data["user"]
        return cls(
            user_id=str(user["id"]),
            username=user["username"],
            nickname=data.get("nick"),
            global_name=user.get("global_name"),
            role_ids=[str(r) for r in data.get("roles", [])],
        )

    @property
    def display_name(self) -> str:
        """Name shown in the guild: nickname, then global name, then username."""
        return self.nickname or self.global_name or self.username

    def to_member(self, guild_id: str) -> Member:
        """Convert to a mirror row for the given guild."""
        return Member(
            user_id=self.user_id,
            guild_id=guild_id,
            username=self.username,
            nickname=self.nickname,
        )


# =============================================================================
# Fleet Models
# =============================================================================


class PingFormatField(BaseModel):
    """Custom field rendered into fleet embeds."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    ping_format_id: int
    name: str
    priority: int = 0
    default_value: str | None = None


class PingFormat(BaseModel):
    """Named set of custom fields for a guild."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    guild_id: str
    name: str


class FleetCategory(BaseModel):
    """Configuration grouping for fleets."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    guild_id: str
    ping_format_id: int | None = None
    name: str
    ping_reminder_seconds: int | None = None


class CategoryDetails(BaseModel):
    """A category with its resolved ping format, roles and channels."""

    category: FleetCategory
    ping_format: PingFormat | None = None
    fields: list[PingFormatField] = Field(default_factory=list)
    access_role_ids: list[str] = Field(default_factory=list)
    ping_role_ids: list[str] = Field(default_factory=list)
    channel_ids: list[str] = Field(default_factory=list)


class Fleet(BaseModel):
    """A scheduled fleet event."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    name: str
    commander_id: str
    fleet_time: datetime
    description: str | None = None
    hidden: bool = False
    disable_reminder: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class FleetMessage(BaseModel):
    """A posted Discord message linked to a fleet lifecycle stage."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    fleet_id: int
    channel_id: str
    message_id: str
    message_type: FleetMessageType
    created_at: datetime = Field(default_factory=utcnow)


class UpcomingFleet(BaseModel):
    """A visible upcoming fleet as shown in a channel's fleet list."""

    fleet_id: int
    name: str
    category_name: str
    fleet_time: datetime


class ChannelFleetList(BaseModel):
    """The upcoming-fleets list message kept up to date in a channel."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    channel_id: str
    message_id: str
    fingerprint: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
