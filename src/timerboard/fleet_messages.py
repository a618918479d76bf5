"""Persistence for messages posted on behalf of fleets.

Each row links a Discord message (channel + message id) to a fleet and the
lifecycle stage that produced it. Rows are written only after a send has
succeeded and are never updated; edits and cancellations act on the Discord
message the row points at.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, select

from timerboard.database import fleet_messages
from timerboard.models import FleetMessage, FleetMessageType, ensure_utc, to_naive_utc, utcnow

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


class FleetMessageStore:
    """Create and look up fleet message records."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(
        self,
        fleet_id: int,
        channel_id: str,
        message_id: str,
        message_type: FleetMessageType,
    ) -> FleetMessage:
        """Record a posted message.

        Raises:
            sqlalchemy.exc.IntegrityError: If the fleet does not exist.
        """
        created_at = utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                fleet_messages.insert().values(
                    fleet_id=fleet_id,
                    channel_id=str(channel_id),
                    message_id=str(message_id),
                    message_type=FleetMessageType(message_type).value,
                    created_at=to_naive_utc(created_at),
                )
            )
            conn.commit()
            row_id = result.inserted_primary_key[0]

        return FleetMessage(
            id=row_id,
            fleet_id=fleet_id,
            channel_id=str(channel_id),
            message_id=str(message_id),
            message_type=message_type,
            created_at=created_at,
        )

    def get_by_fleet(self, fleet_id: int) -> list[FleetMessage]:
        """All messages for a fleet in the order they were recorded."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(fleet_messages)
                .where(fleet_messages.c.fleet_id == fleet_id)
                .order_by(fleet_messages.c.created_at, fleet_messages.c.id)
            )
            return [self._to_message(row) for row in result]

    def latest_in_channel(
        self,
        fleet_id: int,
        channel_id: str,
        types: Iterable[FleetMessageType] | None = None,
    ) -> FleetMessage | None:
        """The most recently recorded message for a fleet in one channel.

        This is the message a follow-up notification replies to.

        Args:
            fleet_id: Fleet to look in.
            channel_id: Channel to look in.
            types: Restrict to these lifecycle stages; any stage when None.

        Returns:
            The newest matching message, or None.
        """
        conditions = [
            fleet_messages.c.fleet_id == fleet_id,
            fleet_messages.c.channel_id == str(channel_id),
        ]
        if types is not None:
            conditions.append(
                fleet_messages.c.message_type.in_([FleetMessageType(t).value for t in types])
            )

        with self.engine.connect() as conn:
            row = conn.execute(
                select(fleet_messages)
                .where(and_(*conditions))
                .order_by(fleet_messages.c.created_at.desc(), fleet_messages.c.id.desc())
                .limit(1)
            ).fetchone()
        return self._to_message(row) if row else None

    @staticmethod
    def _to_message(row: Any) -> FleetMessage:
        return FleetMessage(
            id=row.id,
            fleet_id=row.fleet_id,
            channel_id=row.channel_id,
            message_id=row.message_id,
            message_type=FleetMessageType(row.message_type),
            created_at=ensure_utc(row.created_at),
        )
