"""Command-line interface for Timerboard."""

import asyncio
from pathlib import Path

import click

from timerboard import __version__
from timerboard.config import Config
from timerboard.logging import get_logger, setup_logging

log = get_logger("cli")

FLEET_STAGES = ["creation", "reminder", "formup", "update", "cancel"]


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """Timerboard - fleet timers and notifications for Discord guilds."""
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    # CLI overrides config
    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json

    setup_logging(json_output=effective_log_json, level=effective_log_level)


def _require_token(config: Config) -> str:
    token = config.discord_token
    if not token:
        click.echo("Error: DISCORD_TOKEN environment variable not set", err=True)
        click.echo("Set DISCORD_TOKEN to your bot token to connect to Discord.", err=True)
        raise SystemExit(1)
    return token


def _open_engine(config: Config):
    from timerboard.database import create_tables, get_engine

    config.data_dir.mkdir(parents=True, exist_ok=True)
    engine = get_engine(config)
    create_tables(engine)
    return engine


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"timerboard {__version__}")


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the Discord bot with the guild sweep and notification dispatch.

    Use Ctrl+C or send SIGTERM for graceful shutdown.

    Requires DISCORD_TOKEN environment variable to be set.
    """
    from timerboard.bot import run_bot

    config = ctx.obj["config"]
    _require_token(config)
    engine = _open_engine(config)

    log.info(
        "serve_command_invoked",
        sync_window_minutes=config.sync.full_sync_window_minutes,
        check_interval_minutes=config.sync.check_interval_minutes,
    )

    try:
        asyncio.run(run_bot(config, engine))
    except KeyboardInterrupt:
        pass


# =============================================================================
# Database
# =============================================================================


@cli.group()
def db() -> None:
    """Database management commands."""
    pass


@db.command(name="init")
@click.pass_context
def db_init(ctx: click.Context) -> None:
    """Create the database schema if it does not exist."""
    config = ctx.obj["config"]
    _open_engine(config)
    click.echo(f"Database ready: {config.database_path}")


@db.command(name="status")
@click.pass_context
def db_status(ctx: click.Context) -> None:
    """Show how many guilds are mirrored and how many are stale."""
    from datetime import timedelta

    from timerboard.models import utcnow
    from timerboard.store import GuildRepository

    config = ctx.obj["config"]
    guilds = GuildRepository(_open_engine(config))

    total = guilds.count()
    threshold = utcnow() - timedelta(minutes=config.sync.full_sync_window_minutes)
    stale = guilds.find_stale(threshold, limit=max(total, 1))

    click.echo(f"Database: {config.database_path}")
    click.echo(f"Guilds: {total}")
    click.echo(f"Stale guilds: {len(stale)}")


# =============================================================================
# Guild Sync
# =============================================================================


@cli.group()
def sync() -> None:
    """Guild state synchronization commands."""
    pass


@sync.command(name="sweep")
@click.pass_context
def sync_sweep(ctx: click.Context) -> None:
    """Run one guild sync sweep and exit."""
    from timerboard.gateway import DiscordGateway
    from timerboard.scheduler import GuildSyncScheduler
    from timerboard.sync import GuildSyncEngine

    config = ctx.obj["config"]
    token = _require_token(config)
    engine = _open_engine(config)

    async def run():
        gateway = DiscordGateway.from_config(config, token)
        try:
            scheduler = GuildSyncScheduler(engine, GuildSyncEngine(engine, gateway, config), config)
            return await scheduler.run_sweep()
        finally:
            await gateway.close()

    result = asyncio.run(run())
    click.echo(
        f"Selected {len(result.selected)} guild(s): "
        f"{len(result.synced)} synced, {len(result.failed)} incomplete"
    )
    for guild_id in result.failed:
        click.echo(f"  incomplete: {guild_id}")


@sync.command(name="guild")
@click.argument("guild_id")
@click.pass_context
def sync_guild(ctx: click.Context, guild_id: str) -> None:
    """Fully sync a single guild now."""
    from timerboard.gateway import DiscordGateway
    from timerboard.sync import GuildSyncEngine

    config = ctx.obj["config"]
    token = _require_token(config)
    engine = _open_engine(config)

    async def run():
        gateway = DiscordGateway.from_config(config, token)
        try:
            return await GuildSyncEngine(engine, gateway, config).sync_guild(guild_id)
        finally:
            await gateway.close()

    report = asyncio.run(run())
    click.echo(f"Guild {guild_id}:")
    click.echo(f"  metadata: {'ok' if report.metadata_ok else 'failed'}")
    click.echo(f"  roles: {'ok' if report.roles_ok else 'failed'}")
    click.echo(f"  channels: {'ok' if report.channels_ok else 'failed'}")
    click.echo(f"  members: {'ok' if report.members_ok else 'failed'}")
    click.echo(f"  stamped: {'yes' if report.stamped else 'no'}")

    if not report.stamped:
        raise SystemExit(1)


# =============================================================================
# Fleet Notifications
# =============================================================================


@cli.group()
def fleet() -> None:
    """Fleet notification commands."""
    pass


@fleet.command(name="notify")
@click.argument("fleet_id", type=int)
@click.argument("stage", type=click.Choice(FLEET_STAGES))
@click.option("--cancelled-by", default=None, help="Name shown in the cancellation footer.")
@click.pass_context
def fleet_notify(
    ctx: click.Context, fleet_id: int, stage: str, cancelled_by: str | None
) -> None:
    """Run one notification lifecycle stage for a fleet."""
    from timerboard.errors import DataIntegrityError
    from timerboard.gateway import DiscordGateway
    from timerboard.notifications import FleetNotificationEngine

    config = ctx.obj["config"]
    token = _require_token(config)
    engine = _open_engine(config)

    async def run():
        gateway = DiscordGateway.from_config(config, token)
        try:
            notifier = FleetNotificationEngine(engine, gateway, config)
            target = notifier.fleets.get(fleet_id)
            if target is None:
                return None

            if stage == "cancel":
                edited = await notifier.cancel(target, cancelled_by=cancelled_by)
                return f"Cancelled {edited} message(s)"

            field_values = notifier.fleets.get_field_values(fleet_id)
            if stage == "update":
                edited = await notifier.update_messages(target, field_values)
                return f"Updated {edited} message(s)"

            post = {
                "creation": notifier.post_creation,
                "reminder": notifier.post_reminder,
                "formup": notifier.post_formup,
            }[stage]
            posted = await post(target, field_values)
            return f"Posted {len(posted)} {stage} message(s)"
        finally:
            await gateway.close()

    try:
        summary = asyncio.run(run())
    except DataIntegrityError as e:
        click.echo(f"Data error: {e}", err=True)
        raise SystemExit(1)

    if summary is None:
        click.echo(f"Error: fleet {fleet_id} not found", err=True)
        raise SystemExit(1)
    click.echo(summary)


@fleet.command(name="dispatch")
@click.pass_context
def fleet_dispatch(ctx: click.Context) -> None:
    """Post any reminders and formups that are due now."""
    from timerboard.gateway import DiscordGateway
    from timerboard.notifications import FleetNotificationEngine

    config = ctx.obj["config"]
    token = _require_token(config)
    engine = _open_engine(config)

    async def run():
        gateway = DiscordGateway.from_config(config, token)
        try:
            return await FleetNotificationEngine(engine, gateway, config).dispatch_due()
        finally:
            await gateway.close()

    result = asyncio.run(run())
    click.echo(
        f"Reminders: {len(result.reminders)}, formups: {len(result.formups)}, "
        f"failed: {len(result.failed)}"
    )
    if result.lists is not None:
        click.echo(
            f"Fleet lists: posted {len(result.lists.posted)}, "
            f"edited {len(result.lists.edited)}, "
            f"unchanged {len(result.lists.unchanged)}, "
            f"failed {len(result.lists.failed)}"
        )


# =============================================================================
# Configuration
# =============================================================================


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="config.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
        click.echo(f"Configuration valid: {config_file}")
        click.echo(f"  Data directory: {cfg.data_dir}")
        click.echo(f"  Database path: {cfg.database_path}")
        click.echo(f"  Log level: {cfg.log_level}")
        click.echo(
            f"  Sync: every {cfg.sync.check_interval_minutes}m, "
            f"window {cfg.sync.full_sync_window_minutes}m"
        )
        click.echo(f"  App URL: {cfg.notifications.app_url}")
        click.echo(f"  Discord token: {'set' if cfg.discord_token else 'not set'}")

    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
