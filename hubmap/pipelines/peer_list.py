"""Peer list ingestion: poll the hub's currentPeers list and upsert contacts."""

import logging
from datetime import UTC, datetime, timedelta

import httpx

from hubmap import transport
from hubmap.config import HubmapConfig
from hubmap.errors import DecodeError, HubmapError, PersistenceError
from hubmap.models import Endpoint, PeerRecord
from hubmap.persistence import PeerStore
from hubmap.pipelines import Pipeline

logger = logging.getLogger(__name__)

PEER_LIST_PATH = "/v1/currentPeers"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def peer_list_url(hub_url: str) -> str:
    """Return the ``currentPeers`` URL for *hub_url*.

    A bare ``host:port`` is treated as plain HTTP.
    """
    base = hub_url.rstrip("/")
    if "://" not in base:
        base = f"http://{base}"
    return f"{base}{PEER_LIST_PATH}"


def fetch_contacts(client: httpx.Client, url: str) -> list:
    """Fetch the peer list and return its ``contacts`` array.

    Raises:
        TransportError: If the request fails.
        StatusError: If the hub answers with a non-2xx status.
        DecodeError: If the body is not JSON or has no ``contacts`` list.
    """
    resp = transport.get(client, url)
    transport.check_status(resp)
    payload = transport.decode_json(resp)

    contacts = payload.get("contacts")
    if not isinstance(contacts, list):
        raise DecodeError(f"peer list from {url} has no 'contacts' array")
    return contacts


def contact_to_record(contact: dict, seen_at: datetime) -> PeerRecord:
    """Build a ``PeerRecord`` from one ``contacts`` entry.

    The record is keyed by ``(network, gossip address)``.  The peer's
    millisecond ``timestamp`` becomes a UTC datetime and ``count`` is kept
    exactly as reported.

    Raises:
        DecodeError: If the contact is malformed or has no gossip address.
    """
    if not isinstance(contact, dict):
        raise DecodeError(f"contact is not an object: {contact!r}")

    try:
        gossip = _endpoint(contact.get("gossipAddress"))
        rpc = _endpoint(contact.get("rpcAddress"))
        timestamp = contact.get("timestamp")
        peer_timestamp = (
            _EPOCH + timedelta(milliseconds=int(timestamp))
            if timestamp is not None
            else None
        )
        count = contact.get("count")
        count = int(count) if count is not None else None
    except (TypeError, ValueError, OverflowError) as exc:
        raise DecodeError(f"malformed contact {contact!r}: {exc}") from exc

    if gossip is None or not gossip.address:
        raise DecodeError(f"contact has no gossip address: {contact!r}")

    return PeerRecord(
        network=str(contact.get("network") or ""),
        address=gossip.address,
        last_seen=seen_at,
        gossip=gossip,
        rpc=rpc,
        count=count,
        hub_version=contact.get("hubVersion"),
        app_version=contact.get("appVersion"),
        peer_timestamp=peer_timestamp,
    )


def _endpoint(raw: object) -> Endpoint | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TypeError(f"address is not an object: {raw!r}")
    return Endpoint(
        address=str(raw.get("address") or ""),
        family=int(raw.get("family") or 0),
        port=int(raw.get("port") or 0),
        dns_name=str(raw.get("dnsName") or ""),
    )


class PeerListIngestor(Pipeline):
    """Poll the hub's peer list and upsert every contact into the store.

    A failed fetch or undecodable body skips the whole cycle with nothing
    written.  Contacts are upserted independently: one bad contact or
    failed write is logged and the rest of the list is still processed.

    Args:
        store: Shared peer store.
        client: HTTP client (its timeout bounds the fetch).
        hub_url: Base URL (or ``host:port``) of the hub.
        interval: Seconds between fetches.
    """

    name = "peers"

    def __init__(
        self,
        store: PeerStore,
        client: httpx.Client,
        hub_url: str,
        interval: float = 60.0,
    ) -> None:
        super().__init__(interval)
        self.store = store
        self.client = client
        self.url = peer_list_url(hub_url)

    @classmethod
    def from_config(cls, config: HubmapConfig, store: PeerStore) -> "PeerListIngestor":
        return cls(
            store=store,
            client=transport.make_client(config.http_timeout),
            hub_url=config.hub_url,
            interval=config.peer_list_interval,
        )

    def run_once(self) -> None:
        """Fetch the peer list once and upsert its contacts."""
        logger.info("Fetching peer list from %s", self.url)
        try:
            contacts = fetch_contacts(self.client, self.url)
        except HubmapError as exc:
            logger.warning("Skipping peer list cycle: %s", exc)
            return

        seen_at = datetime.now(UTC)
        upserted = 0
        failed = 0
        for contact in contacts:
            try:
                record = contact_to_record(contact, seen_at)
            except DecodeError as exc:
                logger.warning("Skipping contact: %s", exc)
                failed += 1
                continue

            try:
                self.store.upsert_peer(record)
            except PersistenceError as exc:
                logger.error("Error upserting peer %s/%s: %s", *record.key, exc)
                failed += 1
                continue
            upserted += 1

        logger.info(
            "Peer list processed: %d upserted, %d failed of %d contacts",
            upserted,
            failed,
            len(contacts),
        )
