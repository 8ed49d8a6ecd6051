"""YAML configuration file loading with environment overrides."""

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".hubmap"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "hubmap.db")


@dataclass
class HubmapConfig:
    """Top-level configuration for the hubmap service.

    Every field has a default so the service starts against a local hub
    without a config file.  Durations are in seconds.

    Attributes:
        db_path: Path to the SQLite peer store.
        hub_url: Base URL of the hub whose ``currentPeers`` list is polled.
            A bare ``host:port`` is accepted and treated as ``http://``.
        geo_api_url: Base URL of the ip-api compatible geolocation service.
        hub_info_port: Port on which peers serve ``/v1/info``.
        http_timeout: Per-request timeout for the peer list and geo calls.
        hub_info_timeout: Per-request timeout for the hub info probe.
        peer_list_interval: Seconds between peer list fetches.
        geo_interval: Seconds slept after each geo batch.
        geo_batch_size: Peers resolved per geo batch.
        geo_max_age: Age after which geo data is considered stale.
        info_interval: Seconds slept after each hub info batch.
        info_batch_size: Peers probed per hub info batch.
        info_max_age: Age after which hub info is considered stale.
    """

    db_path: str = DEFAULT_DB_PATH
    hub_url: str = "http://localhost:2281"
    geo_api_url: str = "http://ip-api.com"
    hub_info_port: int = 2281
    http_timeout: float = 10.0
    hub_info_timeout: float = 10.0
    peer_list_interval: float = 60.0
    geo_interval: float = 60.0
    geo_batch_size: int = 10
    geo_max_age: float = 86400.0
    info_interval: float = 30.0
    info_batch_size: int = 10
    info_max_age: float = 3600.0


# Keys in the YAML file that map to HubmapConfig fields.
_YAML_KEY_TO_FIELD: dict[str, str] = {
    f.name: f.name for f in dataclasses.fields(HubmapConfig)
}

# Environment variables applied on top of the YAML file.
_ENV_TO_FIELD: dict[str, str] = {
    "HUB_URL": "hub_url",
    "HUBMAP_DB_PATH": "db_path",
    "GEO_API_URL": "geo_api_url",
}


def load_config(path: Path | str | None = None) -> HubmapConfig:
    """Load configuration from a YAML file, then apply environment overrides.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.hubmap/config.yaml``) is tried.  If the
            default file doesn't exist, defaults are used silently.

    Returns:
        A populated ``HubmapConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or a value has the wrong type.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return apply_env(HubmapConfig())

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        return apply_env(HubmapConfig())

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return apply_env(_build_config(raw, source=resolved))


def apply_env(
    cfg: HubmapConfig, environ: dict[str, str] | None = None
) -> HubmapConfig:
    """Return a copy of *cfg* with non-empty environment overrides applied."""
    env = os.environ if environ is None else environ
    overrides = {
        field_name: env[var]
        for var, field_name in _ENV_TO_FIELD.items()
        if env.get(var)
    }
    if overrides:
        logger.debug("Environment overrides: %s", ", ".join(sorted(overrides)))
    return dataclasses.replace(cfg, **overrides)


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> HubmapConfig:
    """Map raw YAML dict to a ``HubmapConfig``, ignoring unknown keys."""
    defaults = HubmapConfig()
    kwargs: dict[str, object] = {}

    for yaml_key, field_name in _YAML_KEY_TO_FIELD.items():
        if yaml_key not in raw:
            continue
        value = raw[yaml_key]
        expected = type(getattr(defaults, field_name))
        # YAML reads "60" as int; accept it for float fields.
        if expected is float and isinstance(value, int) and not isinstance(
            value, bool
        ):
            value = float(value)
        if not isinstance(value, expected) or isinstance(value, bool):
            raise ConfigError(
                f"Invalid value for {yaml_key!r} in {source}: "
                f"expected {expected.__name__}, got {type(value).__name__}"
            )
        kwargs[field_name] = value

    unknown = set(raw) - set(_YAML_KEY_TO_FIELD)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    return HubmapConfig(**kwargs)
