"""Hub info prober: timed /v1/info probes against each peer's RPC endpoint."""

import ipaddress
import logging
import time
from datetime import UTC, datetime, timedelta

import httpx

from hubmap import transport
from hubmap.config import HubmapConfig
from hubmap.errors import DecodeError, HubmapError, NoDataError, PersistenceError
from hubmap.models import HubInfo
from hubmap.persistence import PeerStore
from hubmap.pipelines import Pipeline

logger = logging.getLogger(__name__)

DEFAULT_HUB_INFO_PORT = 2281


def hub_info_url(rpc_address: str, port: int = DEFAULT_HUB_INFO_PORT) -> str:
    """Return the ``/v1/info`` URL for a peer's RPC address."""
    try:
        ip = ipaddress.ip_address(rpc_address)
    except ValueError:
        return f"http://{rpc_address}:{port}/v1/info"
    host = f"[{ip}]" if ip.version == 6 else rpc_address
    return f"http://{host}:{port}/v1/info"


def parse_hub_info(payload: dict, latency: int) -> HubInfo:
    """Build a ``HubInfo`` from a decoded ``/v1/info?dbstats=1`` body.

    A ``hubOperatorFid`` of zero means the hub did not report one and is
    returned as ``None``.

    Raises:
        DecodeError: If a field has the wrong type.
    """
    db_stats = payload.get("dbStats") or {}
    if not isinstance(db_stats, dict):
        raise DecodeError(f"dbStats is not an object: {db_stats!r}")

    is_syncing = payload.get("isSyncing")
    if is_syncing is None:
        is_syncing = False
    elif not isinstance(is_syncing, bool):
        raise DecodeError(f"isSyncing is not a boolean: {is_syncing!r}")

    try:
        operator_fid = int(payload.get("hubOperatorFid") or 0)
        return HubInfo(
            version=str(payload.get("version") or ""),
            is_syncing=is_syncing,
            nickname=str(payload.get("nickname") or ""),
            root_hash=str(payload.get("rootHash") or ""),
            num_messages=int(db_stats.get("numMessages") or 0),
            num_fid_events=int(db_stats.get("numFidEvents") or 0),
            num_fname_events=int(db_stats.get("numFnameEvents") or 0),
            peer_id=str(payload.get("peerId") or ""),
            hub_operator_fid=operator_fid or None,
            latency=latency,
        )
    except (TypeError, ValueError, OverflowError) as exc:
        raise DecodeError(f"malformed hub info: {exc}") from exc


class HubInfoClient:
    """Probe a hub's ``/v1/info`` endpoint and time the round trip.

    Latency runs from just before the request is sent to just after the
    response headers arrive, so it is measured even when the body later
    fails to decode.

    Args:
        client: HTTP client (its timeout bounds each probe).
        port: Port the hubs serve their HTTP API on.
    """

    def __init__(self, client: httpx.Client, port: int = DEFAULT_HUB_INFO_PORT) -> None:
        self.client = client
        self.port = port

    def fetch(self, rpc_address: str) -> HubInfo:
        """Fetch and decode hub info for the peer at *rpc_address*.

        Raises:
            NoDataError: If the peer has no RPC address.
            TransportError: If the request fails or times out.
            StatusError: If the hub answers with a non-2xx status.
            DecodeError: If the body cannot be decoded.
        """
        if not rpc_address:
            raise NoDataError("peer has no RPC address")

        url = hub_info_url(rpc_address, self.port)
        logger.debug("GET %s", url)
        with transport.translate_errors(url):
            start = time.monotonic()
            with self.client.stream("GET", url, params={"dbstats": "1"}) as resp:
                latency = int((time.monotonic() - start) * 1000)
                logger.debug("%s answered %d in %d ms", url, resp.status_code, latency)
                resp.read()

        transport.check_status(resp)
        return parse_hub_info(transport.decode_json(resp), latency)


class HubInfoProber(Pipeline):
    """Probe peers whose operational info is missing or stale.

    ``info_fetched_at`` is stamped for every probed peer, successful or
    not, so a failing hub is retried only once it is stale again.  On
    failure no operational field is touched.

    Args:
        store: Shared peer store.
        info_client: Hub info client.
        interval: Seconds slept after every batch.
        batch_size: Peers per batch.
        max_age: Age after which hub info is stale.
    """

    name = "info"

    def __init__(
        self,
        store: PeerStore,
        info_client: HubInfoClient,
        interval: float = 30.0,
        batch_size: int = 10,
        max_age: timedelta = timedelta(hours=1),
    ) -> None:
        super().__init__(interval)
        self.store = store
        self.info_client = info_client
        self.batch_size = batch_size
        self.max_age = max_age

    @classmethod
    def from_config(cls, config: HubmapConfig, store: PeerStore) -> "HubInfoProber":
        return cls(
            store=store,
            info_client=HubInfoClient(
                transport.make_client(config.hub_info_timeout),
                port=config.hub_info_port,
            ),
            interval=config.info_interval,
            batch_size=config.info_batch_size,
            max_age=timedelta(seconds=config.info_max_age),
        )

    def run_once(self) -> None:
        """Probe one batch of stale peers."""
        peers = self.store.find_stale("info_fetched_at", self.max_age, self.batch_size)
        logger.debug("Probing hub info for %d peer(s)", len(peers))

        for peer in peers:
            info: HubInfo | None = None
            try:
                info = self.info_client.fetch(peer.rpc.address if peer.rpc else "")
            except HubmapError as exc:
                logger.warning("Hub info probe failed for %s/%s: %s", *peer.key, exc)

            try:
                self.store.update_info(peer.key, info, datetime.now(UTC))
            except PersistenceError as exc:
                logger.error("Error saving hub info for %s/%s: %s", *peer.key, exc)
                continue

            if info is not None:
                logger.info(
                    "Hub %s/%s: version=%s syncing=%s latency=%dms",
                    *peer.key,
                    info.version,
                    info.is_syncing,
                    info.latency,
                )
