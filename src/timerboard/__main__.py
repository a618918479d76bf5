"""CLI entrypoint for running timerboard as a module."""

from timerboard.cli import cli
from timerboard.logging import setup_logging

if __name__ == "__main__":
    setup_logging()
    cli()
