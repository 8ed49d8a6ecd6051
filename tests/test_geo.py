"""Tests for the geo resolver (hubmap.pipelines.geo)."""

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from hubmap.config import HubmapConfig
from hubmap.errors import (
    DecodeError,
    NoDataError,
    RateLimitError,
    StatusError,
    TransportError,
)
from hubmap.models import Endpoint, GeoData, PeerRecord
from hubmap.persistence import PeerStore
from hubmap.pipelines.geo import LOOKUP_FIELDS, GeoResolver, IPAPIClient

NETWORK = "FARCASTER_NETWORK_MAINNET"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ok_body(**overrides: object) -> dict:
    """Build an ip-api success body."""
    body: dict = {
        "status": "success",
        "country": "Germany",
        "countryCode": "DE",
        "region": "HE",
        "regionName": "Hesse",
        "city": "Frankfurt am Main",
        "zip": "60313",
        "lat": 50.11,
        "lon": 8.68,
        "timezone": "Europe/Berlin",
        "isp": "Hetzner Online GmbH",
        "org": "Hetzner",
        "as": "AS24940 Hetzner Online GmbH",
        "hosting": True,
        "query": "1.2.3.4",
    }
    body.update(overrides)
    return body


def _geo_client(handler, sleeps: list | None = None) -> IPAPIClient:
    sleeps = [] if sleeps is None else sleeps
    return IPAPIClient(
        httpx.Client(transport=httpx.MockTransport(handler)),
        base_url="http://geo.test",
        sleep=sleeps.append,
    )


def _respond(status: int = 200, body: object = None, **headers: str):
    """Return a MockTransport handler that always answers the same way."""
    headers = {"X-Rl": "44", "X-Ttl": "60", **headers}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body, headers=headers)

    return handler


@pytest.fixture
def store(tmp_path) -> PeerStore:
    s = PeerStore(str(tmp_path / "peers.db"))
    yield s
    s.close()


def _add_peer(store: PeerStore, address: str) -> tuple[str, str]:
    record = PeerRecord(
        network=NETWORK,
        address=address,
        gossip=Endpoint(address=address, family=4, port=2282),
    )
    store.upsert_peer(record)
    return record.key


# ---------------------------------------------------------------------------
# Tests: IPAPIClient
# ---------------------------------------------------------------------------


class TestIPAPIClient:
    """Lookup outcomes of the ip-api client."""

    def test_success_returns_geo_data(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_ok_body())

        geo = _geo_client(handler).lookup("1.2.3.4")

        assert geo is not None
        assert geo.country == "Germany"
        assert geo.country_code == "DE"
        assert geo.region == "HE"
        assert geo.region_name == "Hesse"
        assert geo.city == "Frankfurt am Main"
        assert geo.zip == "60313"
        assert geo.latitude == 50.11
        assert geo.longitude == 8.68
        assert geo.hosting is True
        assert geo.org == "Hetzner"

        assert requests[0].url.host == "geo.test"
        assert requests[0].url.path == "/json/1.2.3.4"
        assert requests[0].url.params["fields"] == LOOKUP_FIELDS

    def test_reserved_range_returns_none(self) -> None:
        body = {"status": "fail", "message": "reserved range", "query": "10.0.0.1"}
        assert _geo_client(_respond(body=body)).lookup("10.0.0.1") is None

    def test_private_range_returns_none(self) -> None:
        body = {"status": "fail", "message": "private range", "query": "192.168.0.1"}
        assert _geo_client(_respond(body=body)).lookup("192.168.0.1") is None

    def test_zero_coordinates_raise_no_data(self) -> None:
        client = _geo_client(_respond(body=_ok_body(lat=0, lon=0)))
        with pytest.raises(NoDataError, match="no geo data found for 1.2.3.4"):
            client.lookup("1.2.3.4")

    def test_failed_status_without_coordinates_raises_no_data(self) -> None:
        body = {"status": "fail", "message": "invalid query", "query": "x"}
        with pytest.raises(NoDataError):
            _geo_client(_respond(body=body)).lookup("not-an-ip")

    def test_empty_address_raises_without_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
            raise AssertionError("no request expected")

        with pytest.raises(NoDataError):
            _geo_client(handler).lookup("")

    def test_429_sleeps_ttl_then_raises(self) -> None:
        sleeps: list = []
        client = _geo_client(_respond(status=429, body={}, **{"X-Ttl": "5"}), sleeps)

        with pytest.raises(RateLimitError) as exc_info:
            client.lookup("1.2.3.4")

        assert exc_info.value.ttl == 5
        assert sleeps == [5]

    def test_zero_remaining_quota_sleeps_ttl_then_raises(self) -> None:
        sleeps: list = []
        handler = _respond(body=_ok_body(), **{"X-Rl": "0", "X-Ttl": "5"})

        with pytest.raises(RateLimitError):
            _geo_client(handler, sleeps).lookup("1.2.3.4")

        assert sleeps == [5]

    def test_unparseable_ttl_raises_decode_error_without_sleep(self) -> None:
        sleeps: list = []
        handler = _respond(status=429, body={}, **{"X-Ttl": "soon"})

        with pytest.raises(DecodeError, match="X-Ttl"):
            _geo_client(handler, sleeps).lookup("1.2.3.4")

        assert sleeps == []

    def test_server_error_raises_status_error(self) -> None:
        with pytest.raises(StatusError) as exc_info:
            _geo_client(_respond(status=503, body={})).lookup("1.2.3.4")
        assert exc_info.value.status_code == 503

    def test_invalid_json_raises_decode_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        with pytest.raises(DecodeError):
            _geo_client(handler).lookup("1.2.3.4")

    def test_connection_error_raises_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError, match="connection refused"):
            _geo_client(handler).lookup("1.2.3.4")

    def test_timeout_raises_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransportError, match="timed out"):
            _geo_client(handler).lookup("1.2.3.4")


# ---------------------------------------------------------------------------
# Tests: GeoResolver
# ---------------------------------------------------------------------------


class TestGeoResolver:
    """Batch behaviour of the geo resolver against a real store."""

    def test_success_writes_group_and_timestamp(self, store: PeerStore) -> None:
        key = _add_peer(store, "1.2.3.4")
        resolver = GeoResolver(store, _geo_client(_respond(body=_ok_body())))

        resolver.run_once()

        peer = store.get_peer(key)
        assert peer.geo is not None
        assert peer.geo.city == "Frankfurt am Main"
        assert peer.geo_fetched_at is not None

    def test_reserved_range_stamps_and_is_excluded_next_scan(
        self, store: PeerStore
    ) -> None:
        key = _add_peer(store, "10.0.0.1")
        body = {"status": "fail", "message": "reserved range"}
        resolver = GeoResolver(store, _geo_client(_respond(body=body)))

        resolver.run_once()

        peer = store.get_peer(key)
        assert peer.geo is None
        assert peer.geo_fetched_at is not None
        assert store.find_stale("geo_fetched_at", timedelta(days=1), 10) == []

    def test_zero_coordinates_leave_row_unstamped(self, store: PeerStore) -> None:
        key = _add_peer(store, "1.2.3.4")
        resolver = GeoResolver(store, _geo_client(_respond(body=_ok_body(lat=0, lon=0))))

        resolver.run_once()

        peer = store.get_peer(key)
        assert peer.geo is None
        assert peer.geo_fetched_at is None
        stale = store.find_stale("geo_fetched_at", timedelta(days=1), 10)
        assert [p.key for p in stale] == [key]

    def test_rate_limit_pauses_before_next_lookup(self, store: PeerStore) -> None:
        first = _add_peer(store, "1.1.1.1")
        second = _add_peer(store, "2.2.2.2")
        events: list = []

        def handler(request: httpx.Request) -> httpx.Response:
            ip = request.url.path.rsplit("/", 1)[-1]
            events.append(("lookup", ip))
            if ip == "1.1.1.1":
                return httpx.Response(429, headers={"X-Rl": "0", "X-Ttl": "5"})
            return httpx.Response(200, json=_ok_body(query=ip))

        client = IPAPIClient(
            httpx.Client(transport=httpx.MockTransport(handler)),
            base_url="http://geo.test",
            sleep=lambda seconds: events.append(("sleep", seconds)),
        )

        GeoResolver(store, client).run_once()

        assert events == [("lookup", "1.1.1.1"), ("sleep", 5), ("lookup", "2.2.2.2")]
        rate_limited = store.get_peer(first)
        assert rate_limited.geo is None
        assert rate_limited.geo_fetched_at is None
        assert store.get_peer(second).geo is not None

    def test_error_on_one_peer_does_not_stop_batch(self, store: PeerStore) -> None:
        _add_peer(store, "1.1.1.1")
        second = _add_peer(store, "2.2.2.2")

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("1.1.1.1"):
                raise httpx.ConnectError("down", request=request)
            return httpx.Response(200, json=_ok_body())

        GeoResolver(store, _geo_client(handler)).run_once()

        assert store.get_peer(second).geo is not None

    def test_null_fields_overwrite_stored_group(self, store: PeerStore) -> None:
        key = _add_peer(store, "1.2.3.4")
        stale = datetime(2020, 1, 1, tzinfo=UTC)
        store.update_geo(
            key,
            GeoData(
                country="France",
                country_code="FR",
                region="IDF",
                region_name="Ile-de-France",
                city="Paris",
                zip="75001",
                latitude=48.86,
                longitude=2.35,
                hosting=False,
                org="OldOrg",
            ),
            stale,
        )
        body = _ok_body(org=None, zip=None)

        GeoResolver(store, _geo_client(_respond(body=body))).run_once()

        geo = store.get_peer(key).geo
        assert geo.org == ""
        assert geo.zip == ""
        assert geo.country == "Germany"

    def test_batch_size_limits_lookups(self, store: PeerStore) -> None:
        for i in range(5):
            _add_peer(store, f"10.1.0.{i}")
        calls: list = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=_ok_body())

        GeoResolver(store, _geo_client(handler), batch_size=2).run_once()

        assert len(calls) == 2

    def test_empty_store_makes_no_requests(self, store: PeerStore) -> None:
        def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
            raise AssertionError("no request expected")

        GeoResolver(store, _geo_client(handler)).run_once()

    def test_from_config(self, store: PeerStore) -> None:
        cfg = HubmapConfig(
            geo_api_url="http://geo.example/",
            geo_interval=15,
            geo_batch_size=4,
            geo_max_age=3600,
        )
        resolver = GeoResolver.from_config(cfg, store)

        assert resolver.interval == 15
        assert resolver.batch_size == 4
        assert resolver.max_age == timedelta(hours=1)
        assert resolver.geo_client.base_url == "http://geo.example"
