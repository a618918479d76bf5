"""Persistence for the per-channel upcoming fleets list.

Every channel bound to a fleet category holds at most one list message.
The row remembers which Discord message that is and a fingerprint of what
it last showed, so the dispatch job only edits it when the list changed.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, select

from timerboard.database import (
    category_channels,
    channel_fleet_lists,
    channels,
    fleet_categories,
    fleets,
)
from timerboard.models import ChannelFleetList, UpcomingFleet, ensure_utc, to_naive_utc, utcnow
from timerboard.store import upsert_rows

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


class ChannelFleetListRepository:
    """Track the list message posted in each channel."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_by_channel_id(self, channel_id: str) -> ChannelFleetList | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(channel_fleet_lists).where(
                    channel_fleet_lists.c.channel_id == str(channel_id)
                )
            ).fetchone()
        if row is None:
            return None
        record = ChannelFleetList.model_validate(row, from_attributes=True)
        record.created_at = ensure_utc(record.created_at)
        record.updated_at = ensure_utc(record.updated_at)
        return record

    def upsert(self, channel_id: str, message_id: str, fingerprint: str) -> None:
        """Point the channel at a list message, replacing any previous one."""
        now = to_naive_utc(utcnow())
        row = {
            "channel_id": str(channel_id),
            "message_id": str(message_id),
            "fingerprint": fingerprint,
            "created_at": now,
            "updated_at": now,
        }
        with self.engine.connect() as conn:
            upsert_rows(
                conn,
                channel_fleet_lists,
                [row],
                key="channel_id",
                update_columns=["message_id", "fingerprint", "updated_at"],
            )
            conn.commit()

    def list_channels(self) -> list[str]:
        """Mirrored channels bound to at least one category, in channel order."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(channels.c.channel_id)
                .join(category_channels, category_channels.c.channel_id == channels.c.channel_id)
                .group_by(channels.c.channel_id, channels.c.position)
                .order_by(channels.c.position, channels.c.channel_id)
            )
            return [row.channel_id for row in result]

    def upcoming_by_channel(
        self, now: datetime, limit: int
    ) -> dict[str, list[UpcomingFleet]]:
        """Visible fleets after ``now`` per bound channel, soonest first.

        Channels with no upcoming fleets are absent from the result.
        """
        query = (
            select(
                category_channels.c.channel_id,
                fleets.c.id,
                fleets.c.name,
                fleets.c.fleet_time,
                fleet_categories.c.name.label("category_name"),
            )
            .select_from(fleets)
            .join(fleet_categories, fleet_categories.c.id == fleets.c.category_id)
            .join(category_channels, category_channels.c.category_id == fleet_categories.c.id)
            .where(
                and_(
                    fleets.c.fleet_time > to_naive_utc(now),
                    fleets.c.hidden.is_(False),
                )
            )
            .order_by(fleets.c.fleet_time, fleets.c.id)
        )

        grouped: dict[str, list[UpcomingFleet]] = defaultdict(list)
        with self.engine.connect() as conn:
            for row in conn.execute(query):
                entries = grouped[row.channel_id]
                if len(entries) >= limit:
                    continue
                entries.append(
                    UpcomingFleet(
                        fleet_id=row.id,
                        name=row.name,
                        category_name=row.category_name,
                        fleet_time=ensure_utc(row.fleet_time),
                    )
                )
        return dict(grouped)
