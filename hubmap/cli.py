"""CLI entry point for the hubmap service."""

import logging
import signal
import sys
import threading

import click
from dotenv import load_dotenv

from hubmap.aggregator import aggregate
from hubmap.config import ConfigError, HubmapConfig, load_config
from hubmap.errors import PersistenceError
from hubmap.output import FORMATS, render_peers, render_stats
from hubmap.persistence import PeerStore
from hubmap.pipelines import registered_pipelines
from hubmap.service import run_service

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.hubmap/config.yaml).",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    show_default=True,
    help="Logging verbosity.",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, log_level: str) -> None:
    """Maintain a directory of hub peers enriched with geo and status data."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    load_dotenv()

    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.debug("Config loaded: %s", cfg)
    ctx.obj = cfg


@main.command()
@click.option(
    "--only",
    multiple=True,
    type=click.Choice(registered_pipelines(), case_sensitive=False),
    help="Run only this pipeline (repeatable).",
)
@click.pass_obj
def run(cfg: HubmapConfig, only: tuple[str, ...]) -> None:
    """Run the ingestion, geo and hub info pipelines until interrupted."""
    stop = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %d", signum)
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    try:
        run_service(cfg, only=[name.lower() for name in only] or None, stop_event=stop)
    except PersistenceError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@main.command()
@click.option("--network", "-n", default=None, help="Only show peers on this network.")
@click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)
@click.pass_obj
def peers(cfg: HubmapConfig, network: str | None, output_format: str) -> None:
    """List the peers in the directory."""
    records = _load_peers(cfg, network)
    render_peers(records, output_format.lower())


@main.command()
@click.option("--network", "-n", default=None, help="Only count peers on this network.")
@click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)
@click.pass_obj
def stats(cfg: HubmapConfig, network: str | None, output_format: str) -> None:
    """Summarize the directory by country, organization and version."""
    records = _load_peers(cfg, network)
    render_stats(aggregate(records), output_format.lower())


def _load_peers(cfg: HubmapConfig, network: str | None) -> list:
    try:
        store = PeerStore(cfg.db_path)
        try:
            return store.list_peers(network)
        finally:
            store.close()
    except PersistenceError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
