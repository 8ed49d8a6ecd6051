"""Geo resolver: rate-limited IP geolocation of peers via an ip-api service."""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx

from hubmap import transport
from hubmap.config import HubmapConfig
from hubmap.errors import (
    DecodeError,
    HubmapError,
    NoDataError,
    PersistenceError,
    RateLimitError,
)
from hubmap.models import GeoData
from hubmap.persistence import PeerStore
from hubmap.pipelines import Pipeline

logger = logging.getLogger(__name__)

LOOKUP_FIELDS = (
    "status,message,country,countryCode,region,regionName,city,zip,"
    "lat,lon,timezone,isp,org,as,hosting,query"
)

# Response headers carrying the remaining quota and seconds until reset.
RATE_LIMIT_REMAINING_HEADER = "X-Rl"
RATE_LIMIT_TTL_HEADER = "X-Ttl"

# ``message`` values for addresses the service will never locate.
RESERVED_MESSAGES = frozenset({"reserved range", "private range"})


class IPAPIClient:
    """Client for an ip-api.com compatible ``/json/{ip}`` endpoint.

    When the service reports its quota is exhausted (HTTP 429 or a zero
    ``X-Rl`` header) the client sleeps for ``X-Ttl`` seconds *before*
    raising ``RateLimitError``, so a caller processing peers serially is
    held back until the quota resets.

    Args:
        client: HTTP client (its timeout bounds each lookup).
        base_url: Service base URL.
        sleep: Sleep function, injectable for tests.
    """

    def __init__(
        self,
        client: httpx.Client,
        base_url: str = "http://ip-api.com",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep

    def lookup(self, ip: str) -> GeoData | None:
        """Look up geolocation data for *ip*.

        Returns:
            A ``GeoData``, or ``None`` if the service reports the address
            as part of a reserved or private range.

        Raises:
            RateLimitError: After sleeping out the quota reset window.
            TransportError: If the request fails.
            StatusError: On any other non-2xx status.
            DecodeError: If the body or the TTL header cannot be parsed.
            NoDataError: If the address is empty or the service returns
                degenerate (0, 0) coordinates.
        """
        if not ip:
            raise NoDataError("peer has no address to locate")

        url = f"{self.base_url}/json/{ip}"
        resp = transport.get(self.client, url, params={"fields": LOOKUP_FIELDS})

        remaining = resp.headers.get(RATE_LIMIT_REMAINING_HEADER)
        if resp.status_code == httpx.codes.TOO_MANY_REQUESTS or remaining == "0":
            ttl_header = resp.headers.get(RATE_LIMIT_TTL_HEADER)
            try:
                ttl = int(ttl_header)
            except (TypeError, ValueError) as exc:
                raise DecodeError(
                    f"cannot parse {RATE_LIMIT_TTL_HEADER} header {ttl_header!r}"
                ) from exc
            logger.warning("Geo lookup rate limited; sleeping %d seconds", ttl)
            self._sleep(ttl)
            raise RateLimitError(ttl)

        transport.check_status(resp)
        payload = transport.decode_json(resp)

        if payload.get("message") in RESERVED_MESSAGES:
            logger.debug("%s is in a %s", ip, payload["message"])
            return None

        try:
            latitude = float(payload.get("lat") or 0)
            longitude = float(payload.get("lon") or 0)
        except (TypeError, ValueError, OverflowError) as exc:
            raise DecodeError(f"invalid coordinates for {ip}: {exc}") from exc

        if latitude == 0 and longitude == 0:
            raise NoDataError(
                f"no geo data found for {ip} "
                f"(status={payload.get('status')!r}, "
                f"message={payload.get('message')!r})"
            )

        return GeoData(
            country=str(payload.get("country") or ""),
            country_code=str(payload.get("countryCode") or ""),
            region=str(payload.get("region") or ""),
            region_name=str(payload.get("regionName") or ""),
            city=str(payload.get("city") or ""),
            zip=str(payload.get("zip") or ""),
            latitude=latitude,
            longitude=longitude,
            hosting=bool(payload.get("hosting", False)),
            org=str(payload.get("org") or ""),
        )


class GeoResolver(Pipeline):
    """Resolve geolocation for peers whose geo data is missing or stale.

    Each cycle takes up to ``batch_size`` stale peers and resolves them one
    at a time.  Outcomes per peer:

    * data found: the geo group and ``geo_fetched_at`` are written together;
    * reserved/private range: only ``geo_fetched_at`` is stamped;
    * any error (including no data and rate limiting): nothing is written,
      so the peer is picked up again by the next scan.

    Args:
        store: Shared peer store.
        geo_client: Geolocation client.
        interval: Seconds slept after every batch, empty or not.
        batch_size: Peers per batch.
        max_age: Age after which geo data is stale.
    """

    name = "geo"

    def __init__(
        self,
        store: PeerStore,
        geo_client: IPAPIClient,
        interval: float = 60.0,
        batch_size: int = 10,
        max_age: timedelta = timedelta(days=1),
    ) -> None:
        super().__init__(interval)
        self.store = store
        self.geo_client = geo_client
        self.batch_size = batch_size
        self.max_age = max_age

    @classmethod
    def from_config(cls, config: HubmapConfig, store: PeerStore) -> "GeoResolver":
        return cls(
            store=store,
            geo_client=IPAPIClient(
                transport.make_client(config.http_timeout),
                base_url=config.geo_api_url,
            ),
            interval=config.geo_interval,
            batch_size=config.geo_batch_size,
            max_age=timedelta(seconds=config.geo_max_age),
        )

    def run_once(self) -> None:
        """Resolve one batch of stale peers."""
        peers = self.store.find_stale("geo_fetched_at", self.max_age, self.batch_size)
        logger.debug("Resolving geo data for %d peer(s)", len(peers))

        for peer in peers:
            address = peer.gossip.address if peer.gossip else peer.address
            try:
                geo = self.geo_client.lookup(address)
            except HubmapError as exc:
                logger.warning("Geo lookup failed for %s/%s: %s", *peer.key, exc)
                continue

            try:
                self.store.update_geo(peer.key, geo, datetime.now(UTC))
            except PersistenceError as exc:
                logger.error("Error saving geo data for %s/%s: %s", *peer.key, exc)
                continue

            if geo is None:
                logger.info("Peer %s/%s is in a reserved range", *peer.key)
            else:
                logger.info(
                    "Located peer %s/%s in %s, %s", *peer.key, geo.city, geo.country_code
                )
