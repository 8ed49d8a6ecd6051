"""Output renderer: rich tables and JSON for the peer directory and its stats."""

import dataclasses
import json
import logging
import sys
from datetime import datetime
from io import StringIO

from rich.console import Console
from rich.table import Table

from hubmap.aggregator import DirectoryStats
from hubmap.models import PeerRecord

logger = logging.getLogger(__name__)

# (header, accessor) pairs for the peer table.
_PEER_COLUMNS = [
    ("Network", lambda p: p.network),
    ("Address", lambda p: p.address),
    ("Hub version", lambda p: p.hub_version),
    ("Nickname", lambda p: p.info.nickname if p.info else None),
    ("Syncing", lambda p: p.info.is_syncing if p.info else None),
    ("Latency (ms)", lambda p: p.info.latency if p.info else None),
    ("City", lambda p: p.geo.city if p.geo else None),
    ("Country", lambda p: p.geo.country_code if p.geo else None),
    ("Org", lambda p: p.geo.org if p.geo else None),
    ("Last seen", lambda p: p.last_seen),
]

# How many entries to show in the top-N stats tables.
_TOP_N = 10

FORMATS = ("table", "json")


def render_peers(
    peers: list[PeerRecord],
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render the peer directory as a table or JSON.

    Args:
        peers: Peers to render.
        fmt: Output format, ``"table"`` or ``"json"``.
        file: Writable file object (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not a known format.
    """
    out = file or sys.stdout
    if fmt == "table":
        console = Console(file=out, highlight=False, width=width)
        table = Table(title=f"Hub peers — {len(peers)}")
        for header, _ in _PEER_COLUMNS:
            table.add_column(header)
        for peer in peers:
            table.add_row(*[_fmt(accessor(peer)) for _, accessor in _PEER_COLUMNS])
        console.print(table)
    elif fmt == "json":
        _dump_json([dataclasses.asdict(p) for p in peers], out)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


def render_stats(
    stats: DirectoryStats,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render directory statistics as tables or JSON.

    Raises:
        ValueError: If *fmt* is not a known format.
    """
    out = file or sys.stdout
    if fmt == "json":
        _dump_json(dataclasses.asdict(stats), out)
        return
    if fmt != "table":
        raise ValueError(f"Unknown output format: {fmt!r}")

    console = Console(file=out, highlight=False, width=width)
    console.print(
        f"\n[bold]{stats.total} peers[/bold], {stats.syncing} syncing, "
        f"{stats.geo_pending} awaiting geo, {stats.info_pending} awaiting probe\n"
    )

    for title, header, rows in (
        ("Top countries", "Country", stats.country_distribution),
        ("Top organizations", "Org", stats.org_distribution),
        ("Hub versions", "Version", stats.version_distribution),
    ):
        if not rows:
            continue
        t = Table(title=title)
        t.add_column(header)
        t.add_column("Peers", justify="right")
        for label, count in rows[:_TOP_N]:
            t.add_row(label, str(count))
        console.print(t)

    ratio = stats.hosting_ratio
    if ratio.get("total"):
        t = Table(title="Hosting vs residential")
        t.add_column("Category")
        t.add_column("Peers", justify="right")
        t.add_row("Hosting", str(ratio.get("hosting", 0)))
        t.add_row("Non-hosting", str(ratio.get("non_hosting", 0)))
        t.add_row("Unknown", str(ratio.get("unknown", 0)))
        console.print(t)
    else:
        console.print("  No peers in the directory yet.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dump_json(payload: object, out: object) -> None:
    json.dump(payload, out, indent=2, default=str)
    out.write("\n")  # type: ignore[union-attr]


def _fmt(value: object) -> str:
    """Format a field value for table display.

    ``None`` becomes ``"—"``, datetimes drop sub-second precision.
    """
    if value is None:
        return "—"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def render_to_string(peers: list[PeerRecord], fmt: str, *, width: int = 200) -> str:
    """Render peers to a string instead of stdout."""
    buf = StringIO()
    render_peers(peers, fmt, file=buf, width=width)
    return buf.getvalue()
