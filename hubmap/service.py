"""Service runner: one daemon thread per pipeline over a shared peer store."""

import logging
import threading

from hubmap.config import HubmapConfig
from hubmap.persistence import PeerStore
from hubmap.pipelines import Pipeline, build_pipelines

logger = logging.getLogger(__name__)


def start_pipelines(
    pipelines: list[Pipeline], stop_event: threading.Event
) -> list[threading.Thread]:
    """Start each pipeline's loop on its own daemon thread.

    The threads share nothing but the store each pipeline was built with.
    Daemon threads let the process exit without draining in-flight work.
    """
    threads = []
    for pipeline in pipelines:
        thread = threading.Thread(
            target=pipeline.run_forever,
            args=(stop_event,),
            name=f"hubmap-{pipeline.name}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    return threads


def run_service(
    config: HubmapConfig,
    only: list[str] | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    """Run the pipelines until *stop_event* is set.

    Args:
        config: Loaded application configuration.
        only: Pipeline names to run (default: all).
        stop_event: Event that ends the service; a fresh one is created if
            omitted, in which case only process termination stops it.
    """
    stop = stop_event or threading.Event()
    store = PeerStore(config.db_path)
    try:
        pipelines = build_pipelines(config, store, only)
        logger.info(
            "Running pipelines %s against %s (hub %s)",
            ", ".join(p.name for p in pipelines),
            config.db_path,
            config.hub_url,
        )
        threads = start_pipelines(pipelines, stop)
        stop.wait()
        logger.info("Shutting down...")
        for thread in threads:
            thread.join(timeout=1.0)
    finally:
        store.close()
