"""Aggregator: country, organization and version breakdown of the directory."""

import logging
from dataclasses import dataclass, field

from hubmap.models import PeerRecord

logger = logging.getLogger(__name__)


@dataclass
class DirectoryStats:
    """Aggregated statistics computed from the peer directory.

    Attributes:
        total: Number of peers.
        country_distribution: ``(country_name, count)`` pairs sorted by
            count descending.
        org_distribution: ``(organization, count)`` pairs sorted by count
            descending.
        version_distribution: ``(hub_version, count)`` pairs sorted by
            count descending.
        hosting_ratio: Dict with keys ``hosting``, ``non_hosting``,
            ``unknown``, ``total``.
        syncing: Peers whose last successful probe reported syncing.
        geo_pending: Peers never geolocated.
        info_pending: Peers never probed.
    """

    total: int = 0
    country_distribution: list[tuple[str, int]] = field(default_factory=list)
    org_distribution: list[tuple[str, int]] = field(default_factory=list)
    version_distribution: list[tuple[str, int]] = field(default_factory=list)
    hosting_ratio: dict[str, int] = field(default_factory=dict)
    syncing: int = 0
    geo_pending: int = 0
    info_pending: int = 0


def aggregate(peers: list[PeerRecord]) -> DirectoryStats:
    """Compute directory statistics from a list of peers.

    Args:
        peers: Peers as read from the store.

    Returns:
        A ``DirectoryStats`` instance.
    """
    country_counts: dict[str, int] = {}
    org_counts: dict[str, int] = {}
    version_counts: dict[str, int] = {}
    hosting = 0
    non_hosting = 0
    syncing = 0
    geo_pending = 0
    info_pending = 0

    for peer in peers:
        if peer.geo is not None:
            if peer.geo.country:
                country_counts[peer.geo.country] = (
                    country_counts.get(peer.geo.country, 0) + 1
                )
            if peer.geo.org:
                org_counts[peer.geo.org] = org_counts.get(peer.geo.org, 0) + 1
            if peer.geo.hosting:
                hosting += 1
            else:
                non_hosting += 1

        version = peer.info.version if peer.info else peer.hub_version
        if version:
            version_counts[version] = version_counts.get(version, 0) + 1

        if peer.info is not None and peer.info.is_syncing:
            syncing += 1
        if peer.geo_fetched_at is None:
            geo_pending += 1
        if peer.info_fetched_at is None:
            info_pending += 1

    total = len(peers)
    logger.debug("Aggregated %d peers", total)

    return DirectoryStats(
        total=total,
        country_distribution=_sorted_counts(country_counts),
        org_distribution=_sorted_counts(org_counts),
        version_distribution=_sorted_counts(version_counts),
        hosting_ratio={
            "hosting": hosting,
            "non_hosting": non_hosting,
            "unknown": total - hosting - non_hosting,
            "total": total,
        },
        syncing=syncing,
        geo_pending=geo_pending,
        info_pending=info_pending,
    )


def _sorted_counts(counts: dict[str, int]) -> list[tuple[str, int]]:
    """Sort ``{label: count}`` by count descending, then label ascending."""
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))
