"""Database schema and connection management for Timerboard.

Uses SQLAlchemy Core (not ORM) for explicit SQL control. Discord snowflakes
are stored as strings; local surrogate keys are autoincrement integers.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

from timerboard.config import Config

# Shared metadata for all tables
metadata = MetaData()


# =============================================================================
# Discord Mirror
# =============================================================================

guilds = Table(
    "guilds",
    metadata,
    Column("guild_id", String, primary_key=True),  # Discord snowflake
    Column("name", String, nullable=False),
    Column("icon_hash", String, nullable=True),
    Column("last_sync_at", DateTime, nullable=True),  # NULL until first full sync
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_guilds_last_sync", "last_sync_at"),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("guild_id", String, ForeignKey("guilds.guild_id", ondelete="CASCADE"), nullable=False),
    Column("role_id", String, nullable=False, unique=True),  # Discord snowflake
    Column("name", String, nullable=False),
    Column("color", String, nullable=False),  # "#RRGGBB"
    Column("position", Integer, nullable=False, default=0),
    Index("ix_roles_guild", "guild_id"),
)

channels = Table(
    "channels",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("guild_id", String, ForeignKey("guilds.guild_id", ondelete="CASCADE"), nullable=False),
    Column("channel_id", String, nullable=False, unique=True),  # Discord snowflake
    Column("name", String, nullable=False),
    Column("position", Integer, nullable=False, default=0),
    Index("ix_channels_guild", "guild_id"),
)

members = Table(
    "members",
    metadata,
    # No FK on user_id: every guild member is tracked, not only app users
    Column("user_id", String, nullable=False),
    Column("guild_id", String, ForeignKey("guilds.guild_id", ondelete="CASCADE"), nullable=False),
    Column("username", String, nullable=False),
    Column("nickname", String, nullable=True),
    UniqueConstraint("user_id", "guild_id", name="uq_members_user_guild"),
    Index("ix_members_guild", "guild_id"),
)


# =============================================================================
# Application Users
# =============================================================================

users = Table(
    "users",
    metadata,
    Column("discord_id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("admin", Boolean, nullable=False, default=False),
)

user_guild_roles = Table(
    "user_guild_roles",
    metadata,
    Column("user_id", String, ForeignKey("users.discord_id", ondelete="CASCADE"), nullable=False),
    Column("role_id", String, ForeignKey("roles.role_id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_guild_roles"),
)


# =============================================================================
# Categories & Ping Formats
# =============================================================================

ping_formats = Table(
    "ping_formats",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("guild_id", String, ForeignKey("guilds.guild_id", ondelete="CASCADE"), nullable=False),
    Column("name", String, nullable=False),
)

ping_format_fields = Table(
    "ping_format_fields",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "ping_format_id",
        Integer,
        ForeignKey("ping_formats.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String, nullable=False),
    Column("priority", Integer, nullable=False, default=0),
    Column("default_value", String, nullable=True),
    Index("ix_ping_format_fields_format", "ping_format_id"),
)

fleet_categories = Table(
    "fleet_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("guild_id", String, ForeignKey("guilds.guild_id", ondelete="CASCADE"), nullable=False),
    Column(
        "ping_format_id",
        Integer,
        ForeignKey("ping_formats.id", ondelete="SET NULL"),
        nullable=True,
    ),
    Column("name", String, nullable=False),
    Column("ping_reminder_seconds", Integer, nullable=True),
)

category_access_roles = Table(
    "category_access_roles",
    metadata,
    Column(
        "category_id",
        Integer,
        ForeignKey("fleet_categories.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("role_id", String, ForeignKey("roles.role_id", ondelete="CASCADE"), nullable=False),
    Column("can_view", Boolean, nullable=False, default=True),
    Column("can_create", Boolean, nullable=False, default=False),
    Column("can_manage", Boolean, nullable=False, default=False),
    UniqueConstraint("category_id", "role_id", name="uq_category_access_roles"),
)

category_ping_roles = Table(
    "category_ping_roles",
    metadata,
    Column(
        "category_id",
        Integer,
        ForeignKey("fleet_categories.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("role_id", String, ForeignKey("roles.role_id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("category_id", "role_id", name="uq_category_ping_roles"),
)

category_channels = Table(
    "category_channels",
    metadata,
    Column(
        "category_id",
        Integer,
        ForeignKey("fleet_categories.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "channel_id",
        String,
        ForeignKey("channels.channel_id", ondelete="CASCADE"),
        nullable=False,
    ),
    UniqueConstraint("category_id", "channel_id", name="uq_category_channels"),
)


# =============================================================================
# Fleets
# =============================================================================

fleets = Table(
    "fleets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "category_id",
        Integer,
        ForeignKey("fleet_categories.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String, nullable=False),
    Column("commander_id", String, nullable=False),  # Discord user snowflake
    Column("fleet_time", DateTime, nullable=False),
    Column("description", Text, nullable=True),
    Column("hidden", Boolean, nullable=False, default=False),
    Column("disable_reminder", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_fleets_fleet_time", "fleet_time"),
)

fleet_field_values = Table(
    "fleet_field_values",
    metadata,
    Column("fleet_id", Integer, ForeignKey("fleets.id", ondelete="CASCADE"), nullable=False),
    Column(
        "field_id",
        Integer,
        ForeignKey("ping_format_fields.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("value", Text, nullable=False),
    UniqueConstraint("fleet_id", "field_id", name="uq_fleet_field_values"),
)

fleet_messages = Table(
    "fleet_messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("fleet_id", Integer, ForeignKey("fleets.id", ondelete="CASCADE"), nullable=False),
    Column("channel_id", String, nullable=False),
    Column("message_id", String, nullable=False),
    Column("message_type", String, nullable=False),  # creation, reminder, formup
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_fleet_messages_fleet_channel", "fleet_id", "channel_id"),
)

channel_fleet_lists = Table(
    "channel_fleet_lists",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "channel_id",
        String,
        ForeignKey("channels.channel_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("message_id", String, nullable=False),
    Column("fingerprint", String, nullable=False),  # digest of the rendered list
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Column("updated_at", DateTime, nullable=False, default=datetime.utcnow),
)


# =============================================================================
# Helper Functions
# =============================================================================


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    """Turn on FK enforcement for every new SQLite connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    db_path = config.database_path

    # Ensure data directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=config.log_level == "DEBUG",
    )

    # Cascades and FleetMessage referential checks rely on this
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    return engine


def create_tables(engine: Engine) -> None:
    """Create all tables in the database.

    Args:
        engine: SQLAlchemy Engine instance.
    """
    metadata.create_all(engine)
