"""CLI for famcal: run the calendar sync API and manage its database."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from famcal import __version__
from famcal.config import ConfigError, FamcalConfig, load_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")


def _load(config_dir: Path) -> FamcalConfig:
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


def _database(config: FamcalConfig):
    from famcal.db import Database

    if config.db_url:
        return Database.from_url(config.db_url, db_name=config.db_name)
    return Database.from_env(config.db_name)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """famcal: household calendar synchronization engine."""


@cli.command()
@click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help="Directory containing famcal.toml",
)
@click.option("--host", default=None, help="Override the bind host from config")
@click.option("--port", type=int, default=None, help="Override the port from config")
def serve(config_dir: Path, host: str | None, port: int | None) -> None:
    """Run the HTTP API."""
    import uvicorn

    from famcal.api.app import create_app
    from famcal.core.logging import configure_logging
    from famcal.core.metrics import init_metrics
    from famcal.core.telemetry import init_telemetry

    config = _load(config_dir)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=config.name,
    )
    init_telemetry(config.name)
    init_metrics(config.name)

    app = create_app(config=config)
    bind_host = host or config.host
    bind_port = port or config.port
    click.echo(f"famcal {config.name} listening on {bind_host}:{bind_port}")
    uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)


@cli.command()
@click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help="Directory containing famcal.toml",
)
@click.option("--revision", default="head", show_default=True, help="Target revision")
def migrate(config_dir: Path, revision: str) -> None:
    """Create the database if needed and apply migrations."""
    from famcal.migrations import run_migrations

    config = _load(config_dir)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")
    db = _database(config)
    asyncio.run(db.provision())
    asyncio.run(run_migrations(db.url, revision))
    click.echo(f"Database {db.db_name} migrated to {revision}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
