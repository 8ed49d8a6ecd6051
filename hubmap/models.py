"""Data models: PeerRecord and its endpoint, geo and hub-info groups."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Endpoint:
    """A gossip or RPC endpoint descriptor as reported by the hub.

    Attributes:
        address: IP address (or hostname) of the endpoint.
        family: Address family reported by the hub (4 or 6).
        port: Listening port.
        dns_name: DNS name, empty if the peer did not announce one.
    """

    address: str
    family: int = 0
    port: int = 0
    dns_name: str = ""


@dataclass
class GeoData:
    """Geolocation data for a peer's gossip address.

    Written as one group; a peer either has all of these or none.
    """

    country: str
    country_code: str
    region: str
    region_name: str
    city: str
    zip: str
    latitude: float
    longitude: float
    hosting: bool
    org: str


@dataclass
class HubInfo:
    """Operational status of a hub, as returned by its ``/v1/info`` endpoint.

    Attributes:
        version: Hub software version.
        is_syncing: Whether the hub reports it is still syncing.
        nickname: Operator-chosen nickname.
        root_hash: Current merkle trie root hash.
        num_messages: Message count from the hub's db stats.
        num_fid_events: FID event count from the hub's db stats.
        num_fname_events: Fname event count from the hub's db stats.
        peer_id: libp2p peer id.
        hub_operator_fid: Operator FID, or None when the hub reports zero
            (unknown).
        latency: Round-trip time of the probe in milliseconds.
    """

    version: str
    is_syncing: bool
    nickname: str
    root_hash: str
    num_messages: int
    num_fid_events: int
    num_fname_events: int
    peer_id: str
    hub_operator_fid: int | None = None
    latency: int | None = None


@dataclass
class PeerRecord:
    """One row of the peer directory, keyed by ``(network, address)``.

    Ingestion fills the discovery fields; ``geo`` and ``info`` are filled
    later by the geo resolver and the hub info prober.  The two
    ``*_fetched_at`` timestamps record the last attempt of the pipeline
    that owns the group, not the last success.
    """

    # -- Identity --
    network: str
    address: str

    # -- Discovery fields (set by ingestion) --
    last_seen: datetime | None = None
    gossip: Endpoint | None = None
    rpc: Endpoint | None = None
    count: int | None = None
    hub_version: str | None = None
    app_version: str | None = None
    peer_timestamp: datetime | None = None

    # -- Enrichment groups --
    geo: GeoData | None = None
    geo_fetched_at: datetime | None = None
    info: HubInfo | None = None
    info_fetched_at: datetime | None = None

    # -- Audit --
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        """The ``(network, address)`` primary key."""
        return (self.network, self.address)
