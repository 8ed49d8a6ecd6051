"""Error taxonomy shared by the pipelines and the peer store.

None of these are fatal to a pipeline: each is logged and the loop moves
on to the next peer or the next cycle.
"""


class HubmapError(Exception):
    """Base class for all pipeline and store errors."""


class TransportError(HubmapError):
    """The HTTP request failed before a response arrived (network, timeout)."""


class StatusError(HubmapError):
    """The remote service answered with a non-success HTTP status."""

    def __init__(self, url: str, status_code: int) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(f"HTTP {status_code} from {url}")


class DecodeError(HubmapError):
    """The response body could not be decoded into the expected shape."""


class RateLimitError(HubmapError):
    """The geolocation service's quota is exhausted.

    Raised only after the caller has already slept for ``ttl`` seconds.
    """

    def __init__(self, ttl: int) -> None:
        self.ttl = ttl
        super().__init__(f"rate limit exceeded, waited {ttl} seconds")


class NoDataError(HubmapError):
    """The lookup produced no usable data for this peer."""


class PersistenceError(HubmapError):
    """A peer store operation failed."""
