"""Repositories over the Timerboard tables.

Each repository wraps an Engine and exposes row-scoped reads and writes.
Upserts are keyed on Discord platform ids and never rewrite a row's
guild_id, so an id collision cannot silently move a row between guilds.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Table, and_, delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection

from timerboard.database import (
    category_access_roles,
    category_channels,
    category_ping_roles,
    channels,
    fleet_categories,
    fleet_field_values,
    fleets,
    guilds,
    members,
    ping_format_fields,
    ping_formats,
    roles,
    user_guild_roles,
    users,
)
from timerboard.logging import get_logger
from timerboard.models import (
    CategoryDetails,
    Channel,
    Fleet,
    FleetCategory,
    GatewayGuild,
    Guild,
    Member,
    PingFormat,
    PingFormatField,
    Role,
    ensure_utc,
    to_naive_utc,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = get_logger("store")

# Keeps multi-row statements under SQLite's bound-parameter limit
BATCH_SIZE = 200


def _chunks(rows: Sequence[dict[str, Any]], size: int = BATCH_SIZE) -> Iterator[Sequence[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def upsert_rows(
    conn: Connection,
    table: Table,
    rows: Sequence[dict[str, Any]],
    key: str,
    update_columns: Iterable[str],
) -> None:
    """Insert rows, overwriting ``update_columns`` when ``key`` already exists.

    Uses a single ``INSERT ... ON CONFLICT DO UPDATE`` per batch on SQLite and
    PostgreSQL, and falls back to update-then-insert per row elsewhere.

    Args:
        conn: Open connection (caller commits).
        table: Target table.
        rows: Row dicts including ``key``.
        key: Unique column identifying a row.
        update_columns: Columns to overwrite on conflict.
    """
    if not rows:
        return

    update_columns = list(update_columns)
    dialect = conn.dialect.name

    if dialect in ("sqlite", "postgresql"):
        insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
        for batch in _chunks(rows):
            stmt = insert_fn(table).values(list(batch))
            stmt = stmt.on_conflict_do_update(
                index_elements=[key],
                set_={col: stmt.excluded[col] for col in update_columns},
            )
            conn.execute(stmt)
        return

    for row in rows:
        result = conn.execute(
            update(table)
            .where(table.c[key] == row[key])
            .values({col: row[col] for col in update_columns})
        )
        if result.rowcount == 0:
            conn.execute(insert(table).values(**row))


# =============================================================================
# Guilds
# =============================================================================


class GuildRepository:
    """Mirrored guild metadata and sync timestamps."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def upsert(self, guild: GatewayGuild) -> None:
        """Create the guild or refresh its name and icon.

        ``last_sync_at`` is left untouched.
        """
        row = {
            "guild_id": guild.id,
            "name": guild.name,
            "icon_hash": guild.icon_hash,
            "created_at": to_naive_utc(utcnow()),
        }
        with self.engine.connect() as conn:
            upsert_rows(conn, guilds, [row], key="guild_id", update_columns=["name", "icon_hash"])
            conn.commit()

    def get(self, guild_id: str) -> Guild | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(guilds).where(guilds.c.guild_id == guild_id)).fetchone()
        if row is None:
            return None
        return Guild(
            guild_id=row.guild_id,
            name=row.name,
            icon_hash=row.icon_hash,
            last_sync_at=ensure_utc(row.last_sync_at),
            created_at=ensure_utc(row.created_at),
        )

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(guilds)).scalar() or 0

    def find_stale(self, threshold: datetime, limit: int) -> list[str]:
        """Get ids of guilds not fully synced since ``threshold``.

        Never-synced guilds come first, then the oldest sync.

        Args:
            threshold: Guilds synced at or after this are fresh.
            limit: Maximum number of ids to return.

        Returns:
            Guild ids in sync priority order.
        """
        if limit <= 0:
            return []

        with self.engine.connect() as conn:
            result = conn.execute(
                select(guilds.c.guild_id)
                .where(
                    or_(
                        guilds.c.last_sync_at.is_(None),
                        guilds.c.last_sync_at < to_naive_utc(threshold),
                    )
                )
                .order_by(guilds.c.last_sync_at.is_not(None), guilds.c.last_sync_at)
                .limit(limit)
            )
            return [row.guild_id for row in result]

    def needs_sync(self, guild_id: str, threshold: datetime) -> bool:
        """Whether a guild's last full sync is missing or older than ``threshold``."""
        guild = self.get(guild_id)
        if guild is None or guild.last_sync_at is None:
            return True
        return guild.last_sync_at < ensure_utc(threshold)

    def touch_last_sync(self, guild_id: str, at: datetime | None = None) -> None:
        """Stamp a completed full sync."""
        at = at or utcnow()
        with self.engine.connect() as conn:
            conn.execute(
                update(guilds)
                .where(guilds.c.guild_id == guild_id)
                .values(last_sync_at=to_naive_utc(at))
            )
            conn.commit()


# =============================================================================
# Roles & Channels
# =============================================================================


class RoleRepository:
    """Mirrored guild roles."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_by_guild(self, guild_id: str) -> list[Role]:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(roles).where(roles.c.guild_id == guild_id).order_by(roles.c.position)
            )
            return [Role.model_validate(row, from_attributes=True) for row in result]

    def upsert_many(self, items: Sequence[Role]) -> None:
        rows = [item.model_dump() for item in items]
        with self.engine.connect() as conn:
            upsert_rows(
                conn, roles, rows, key="role_id", update_columns=["name", "color", "position"]
            )
            conn.commit()

    def delete(self, role_ids: Sequence[str]) -> int:
        """Delete roles by platform id; category bindings cascade.

        Returns:
            Number of rows removed.
        """
        if not role_ids:
            return 0
        with self.engine.connect() as conn:
            result = conn.execute(delete(roles).where(roles.c.role_id.in_(list(role_ids))))
            conn.commit()
            return result.rowcount


class ChannelRepository:
    """Mirrored guild text channels."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_by_guild(self, guild_id: str) -> list[Channel]:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(channels)
                .where(channels.c.guild_id == guild_id)
                .order_by(channels.c.position)
            )
            return [Channel.model_validate(row, from_attributes=True) for row in result]

    def upsert_many(self, items: Sequence[Channel]) -> None:
        rows = [item.model_dump() for item in items]
        with self.engine.connect() as conn:
            upsert_rows(conn, channels, rows, key="channel_id", update_columns=["name", "position"])
            conn.commit()

    def delete(self, channel_ids: Sequence[str]) -> int:
        """Delete channels by platform id; category bindings cascade."""
        if not channel_ids:
            return 0
        with self.engine.connect() as conn:
            result = conn.execute(
                delete(channels).where(channels.c.channel_id.in_(list(channel_ids)))
            )
            conn.commit()
            return result.rowcount


# =============================================================================
# Members
# =============================================================================


class MemberRepository:
    """Every user present in a guild, app account or not."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_by_guild(self, guild_id: str) -> list[Member]:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(members).where(members.c.guild_id == guild_id).order_by(members.c.user_id)
            )
            return [Member.model_validate(row, from_attributes=True) for row in result]

    def get(self, user_id: str, guild_id: str) -> Member | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(members).where(
                    and_(members.c.user_id == user_id, members.c.guild_id == guild_id)
                )
            ).fetchone()
        return Member.model_validate(row, from_attributes=True) if row else None

    def replace_for_guild(self, guild_id: str, items: Sequence[Member]) -> None:
        """Delete all of a guild's members and insert ``items`` in one transaction."""
        rows = [item.model_dump() for item in items]
        with self.engine.begin() as conn:
            conn.execute(delete(members).where(members.c.guild_id == guild_id))
            for batch in _chunks(rows):
                conn.execute(insert(members), list(batch))

    def upsert(self, member: Member) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(
                update(members)
                .where(
                    and_(
                        members.c.user_id == member.user_id,
                        members.c.guild_id == member.guild_id,
                    )
                )
                .values(username=member.username, nickname=member.nickname)
            )
            if result.rowcount == 0:
                conn.execute(insert(members).values(**member.model_dump()))
            conn.commit()

    def delete(self, user_id: str, guild_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                delete(members).where(
                    and_(members.c.user_id == user_id, members.c.guild_id == guild_id)
                )
            )
            conn.commit()
            return result.rowcount


# =============================================================================
# Application User Roles
# =============================================================================


class UserRoleRepository:
    """Role assignments of application users, used for permission checks."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def find_registered(self, user_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``user_ids`` that have an application account."""
        ids = list(user_ids)
        found: set[str] = set()
        with self.engine.connect() as conn:
            for start in range(0, len(ids), BATCH_SIZE):
                batch = ids[start : start + BATCH_SIZE]
                result = conn.execute(
                    select(users.c.discord_id).where(users.c.discord_id.in_(batch))
                )
                found.update(row.discord_id for row in result)
        return found

    def get_role_ids(self, user_id: str, guild_id: str) -> set[str]:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(user_guild_roles.c.role_id)
                .join(roles, roles.c.role_id == user_guild_roles.c.role_id)
                .where(and_(user_guild_roles.c.user_id == user_id, roles.c.guild_id == guild_id))
            )
            return {row.role_id for row in result}

    def sync_user_roles(self, user_id: str, guild_id: str, role_ids: Iterable[str]) -> None:
        """Replace a user's role assignments within one guild.

        Role ids we do not mirror for the guild are ignored.
        """
        wanted = set(role_ids)
        with self.engine.begin() as conn:
            guild_role_ids = select(roles.c.role_id).where(roles.c.guild_id == guild_id)
            conn.execute(
                delete(user_guild_roles).where(
                    and_(
                        user_guild_roles.c.user_id == user_id,
                        user_guild_roles.c.role_id.in_(guild_role_ids),
                    )
                )
            )
            if not wanted:
                return
            known = {
                row.role_id
                for row in conn.execute(
                    select(roles.c.role_id).where(
                        and_(roles.c.guild_id == guild_id, roles.c.role_id.in_(list(wanted)))
                    )
                )
            }
            if known:
                conn.execute(
                    insert(user_guild_roles),
                    [{"user_id": user_id, "role_id": role_id} for role_id in sorted(known)],
                )


# =============================================================================
# Categories & Fleets
# =============================================================================


class CategoryRepository:
    """Read access to fleet categories with their resolved bindings."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def find_by_id(self, category_id: int) -> CategoryDetails | None:
        """Load a category with ping format, fields, roles and channels.

        Fields are ordered by priority. Returns None when the category is missing.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(fleet_categories).where(fleet_categories.c.id == category_id)
            ).fetchone()
            if row is None:
                return None
            category = FleetCategory.model_validate(row, from_attributes=True)

            ping_format = None
            fields: list[PingFormatField] = []
            if category.ping_format_id is not None:
                format_row = conn.execute(
                    select(ping_formats).where(ping_formats.c.id == category.ping_format_id)
                ).fetchone()
                if format_row is not None:
                    ping_format = PingFormat.model_validate(format_row, from_attributes=True)
                    fields = [
                        PingFormatField.model_validate(f, from_attributes=True)
                        for f in conn.execute(
                            select(ping_format_fields)
                            .where(ping_format_fields.c.ping_format_id == ping_format.id)
                            .order_by(ping_format_fields.c.priority, ping_format_fields.c.id)
                        )
                    ]

            access_role_ids = [
                r.role_id
                for r in conn.execute(
                    select(category_access_roles.c.role_id)
                    .join(roles, roles.c.role_id == category_access_roles.c.role_id)
                    .where(category_access_roles.c.category_id == category_id)
                    .order_by(roles.c.position.desc())
                )
            ]
            ping_role_ids = [
                r.role_id
                for r in conn.execute(
                    select(category_ping_roles.c.role_id)
                    .join(roles, roles.c.role_id == category_ping_roles.c.role_id)
                    .where(category_ping_roles.c.category_id == category_id)
                    .order_by(roles.c.position.desc())
                )
            ]
            channel_ids = [
                c.channel_id
                for c in conn.execute(
                    select(category_channels.c.channel_id)
                    .join(channels, channels.c.channel_id == category_channels.c.channel_id)
                    .where(category_channels.c.category_id == category_id)
                    .order_by(channels.c.position)
                )
            ]

        return CategoryDetails(
            category=category,
            ping_format=ping_format,
            fields=fields,
            access_role_ids=access_role_ids,
            ping_role_ids=ping_role_ids,
            channel_ids=channel_ids,
        )


class FleetRepository:
    """Read access to fleets and their custom field values."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, fleet_id: int) -> Fleet | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(fleets).where(fleets.c.id == fleet_id)).fetchone()
        return self._to_fleet(row) if row else None

    def get_field_values(self, fleet_id: int) -> dict[int, str]:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(fleet_field_values).where(fleet_field_values.c.fleet_id == fleet_id)
            )
            return {row.field_id: row.value for row in result}

    def list_since(self, since: datetime) -> list[Fleet]:
        """Fleets scheduled at or after ``since``, soonest first."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(fleets)
                .where(fleets.c.fleet_time >= to_naive_utc(since))
                .order_by(fleets.c.fleet_time)
            )
            return [self._to_fleet(row) for row in result]

    @staticmethod
    def _to_fleet(row: Any) -> Fleet:
        fleet = Fleet.model_validate(row, from_attributes=True)
        fleet.fleet_time = ensure_utc(fleet.fleet_time)
        fleet.created_at = ensure_utc(fleet.created_at)
        return fleet
