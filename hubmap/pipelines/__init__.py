"""Pipeline registry and abstract Pipeline base class."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hubmap.config import HubmapConfig
    from hubmap.persistence import PeerStore

logger = logging.getLogger(__name__)


class Pipeline(ABC):
    """Abstract base class for the background enrichment pipelines.

    A pipeline does one unit of work per ``run_once()`` call and then
    waits ``interval`` seconds.  ``run_forever()`` drives that loop until
    the stop event is set; nothing raised by ``run_once()`` ends it.
    """

    name: str = "pipeline"

    def __init__(self, interval: float) -> None:
        self.interval = interval

    @classmethod
    @abstractmethod
    def from_config(cls, config: HubmapConfig, store: PeerStore) -> Pipeline:
        """Build the pipeline from application configuration."""

    @abstractmethod
    def run_once(self) -> None:
        """Run a single cycle (one fetch, or one batch of peers)."""

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run cycles until *stop_event* is set.

        The first cycle starts immediately; the wait between cycles is
        fixed regardless of how much work the cycle found.
        """
        logger.info("Starting %s pipeline (interval=%ss)", self.name, self.interval)
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Unhandled error in %s pipeline cycle", self.name)
            stop_event.wait(self.interval)
        logger.info("Stopped %s pipeline", self.name)


def _build_registry() -> dict[str, type[Pipeline]]:
    """Build the pipeline-name → Pipeline-class mapping.

    Imports are deferred to avoid circular imports.
    """
    from hubmap.pipelines.geo import GeoResolver
    from hubmap.pipelines.hub_info import HubInfoProber
    from hubmap.pipelines.peer_list import PeerListIngestor

    return {
        PeerListIngestor.name: PeerListIngestor,
        GeoResolver.name: GeoResolver,
        HubInfoProber.name: HubInfoProber,
    }


def registered_pipelines() -> list[str]:
    """Return the pipeline names in startup order."""
    return list(_build_registry())


def build_pipelines(
    config: HubmapConfig,
    store: PeerStore,
    only: list[str] | None = None,
) -> list[Pipeline]:
    """Instantiate the configured pipelines.

    Args:
        config: Loaded application configuration.
        store: Shared peer store.
        only: Pipeline names to build (default: all of them).

    Returns:
        Pipeline instances in startup order.

    Raises:
        ValueError: If *only* names an unknown pipeline.
    """
    registry = _build_registry()
    names = list(registry) if not only else list(only)
    unknown = [n for n in names if n not in registry]
    if unknown:
        known = ", ".join(registry)
        raise ValueError(f"Unknown pipeline {unknown[0]!r}. Known pipelines: {known}")
    return [registry[name].from_config(config, store) for name in names]
