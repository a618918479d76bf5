"""Pytest configuration and shared fixtures."""

from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner

from timerboard.config import Config
from timerboard.database import (
    category_access_roles,
    category_channels,
    category_ping_roles,
    channels,
    create_tables,
    fleet_categories,
    fleet_field_values,
    fleets,
    get_engine,
    guilds,
    ping_format_fields,
    ping_formats,
    roles,
)
from timerboard.gateway import DiscordGateway
from timerboard.models import GatewayMember

GUILD_ID = "100000000000000001"
COMMANDER_ID = "500000000000000001"


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path):
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with temp database."""
    return Config(
        data_dir=tmp_path,
        log_level="DEBUG",
    )


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine with all tables."""
    eng = get_engine(test_config)
    create_tables(eng)
    return eng


@pytest.fixture
def gateway() -> AsyncMock:
    """A gateway double; async endpoints are AsyncMocks."""
    return AsyncMock(spec=DiscordGateway)


@pytest.fixture
def member_pages():
    """Build a replacement for ``iter_member_pages`` from canned pages.

    ``member_pages(page1, page2, error=GatewayError(...))`` yields the pages
    in order, then raises ``error`` if given.
    """

    def factory(*pages: list[GatewayMember], error: Exception | None = None):
        async def iterate(guild_id: str, page_size: int = 1000):
            for page in pages:
                yield page
            if error is not None:
                raise error

        return iterate

    return factory


def make_member(user_id: str, username: str | None = None, **kwargs) -> GatewayMember:
    return GatewayMember(user_id=user_id, username=username or f"user{user_id}", **kwargs)


@pytest.fixture
def make_gateway_member():
    """Factory for gateway member payload models."""
    return make_member


@pytest.fixture
def seeded_guild(engine) -> str:
    """Insert an empty guild row and return its id."""
    with engine.connect() as conn:
        conn.execute(guilds.insert().values(guild_id=GUILD_ID, name="Test Alliance"))
        conn.commit()
    return GUILD_ID


@pytest.fixture
def fleet_world(engine, seeded_guild):
    """A guild with a category bound to three channels and two ping roles.

    The ping roles are the guild's everyone role and a regular role. The
    ping format has two fields; the fleet fills in only the first.
    """
    channel_ids = ["300000000000000001", "300000000000000002", "300000000000000003"]
    fleet_time = datetime(2026, 11, 1, 19, 30, tzinfo=timezone.utc)

    with engine.connect() as conn:
        conn.execute(
            roles.insert(),
            [
                {"guild_id": GUILD_ID, "role_id": GUILD_ID, "name": "@everyone",
                 "color": "#000000", "position": 0},
                {"guild_id": GUILD_ID, "role_id": "200000000000000001", "name": "Pilots",
                 "color": "#3498DB", "position": 5},
            ],
        )
        conn.execute(
            channels.insert(),
            [
                {"guild_id": GUILD_ID, "channel_id": cid, "name": f"fleets-{i}", "position": i}
                for i, cid in enumerate(channel_ids)
            ],
        )
        ping_format_id = conn.execute(
            ping_formats.insert().values(guild_id=GUILD_ID, name="Standard")
        ).inserted_primary_key[0]
        doctrine_id = conn.execute(
            ping_format_fields.insert().values(
                ping_format_id=ping_format_id, name="Doctrine", priority=1
            )
        ).inserted_primary_key[0]
        staging_id = conn.execute(
            ping_format_fields.insert().values(
                ping_format_id=ping_format_id, name="Staging", priority=2,
                default_value="Home",
            )
        ).inserted_primary_key[0]
        category_id = conn.execute(
            fleet_categories.insert().values(
                guild_id=GUILD_ID,
                ping_format_id=ping_format_id,
                name="Strat Op",
                ping_reminder_seconds=3600,
            )
        ).inserted_primary_key[0]
        conn.execute(
            category_ping_roles.insert(),
            [
                {"category_id": category_id, "role_id": "200000000000000001"},
                {"category_id": category_id, "role_id": GUILD_ID},
            ],
        )
        conn.execute(
            category_access_roles.insert().values(
                category_id=category_id, role_id="200000000000000001", can_create=True
            )
        )
        conn.execute(
            category_channels.insert(),
            [{"category_id": category_id, "channel_id": cid} for cid in channel_ids],
        )
        fleet_id = conn.execute(
            fleets.insert().values(
                category_id=category_id,
                name="Sunday Strat",
                commander_id=COMMANDER_ID,
                fleet_time=fleet_time.replace(tzinfo=None),
                description="Bring ammo",
                hidden=False,
                disable_reminder=False,
            )
        ).inserted_primary_key[0]
        conn.execute(
            fleet_field_values.insert().values(
                fleet_id=fleet_id, field_id=doctrine_id, value="Ferox"
            )
        )
        conn.commit()

    return SimpleNamespace(
        guild_id=GUILD_ID,
        ping_role_id="200000000000000001",
        channel_ids=channel_ids,
        ping_format_id=ping_format_id,
        doctrine_field_id=doctrine_id,
        staging_field_id=staging_id,
        category_id=category_id,
        fleet_id=fleet_id,
        fleet_time=fleet_time,
        commander_id=COMMANDER_ID,
    )
