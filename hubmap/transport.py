"""HTTP helpers shared by the pipelines: error translation and JSON decoding."""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager

import httpx

from hubmap.errors import DecodeError, StatusError, TransportError

logger = logging.getLogger(__name__)


def make_client(timeout: float) -> httpx.Client:
    """Return an ``httpx.Client`` with a bounded per-request timeout."""
    return httpx.Client(timeout=timeout, headers={"Accept": "application/json"})


@contextmanager
def translate_errors(url: str) -> Iterator[None]:
    """Re-raise httpx request failures for *url* as ``HubmapError`` subclasses.

    A body that fails content decoding becomes ``DecodeError``; every other
    request failure becomes ``TransportError``.
    """
    try:
        yield
    except httpx.TimeoutException as exc:
        raise TransportError(f"request to {url} timed out") from exc
    except httpx.DecodingError as exc:
        raise DecodeError(f"cannot decode response from {url}: {exc}") from exc
    except (httpx.RequestError, httpx.InvalidURL) as exc:
        raise TransportError(f"request to {url} failed: {exc}") from exc


def get(client: httpx.Client, url: str, params: dict | None = None) -> httpx.Response:
    """Issue a GET request, translating transport failures.

    The status code is not checked; see ``check_status``.
    """
    logger.debug("GET %s", url)
    with translate_errors(url):
        return client.get(url, params=params)


def check_status(resp: httpx.Response) -> None:
    """Raise ``StatusError`` unless *resp* has a 2xx status."""
    if not resp.is_success:
        raise StatusError(str(resp.request.url), resp.status_code)


def decode_json(resp: httpx.Response) -> dict:
    """Decode *resp* as a JSON object.

    Raises:
        DecodeError: If the body is not valid JSON or not an object.
    """
    try:
        payload = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise DecodeError(f"invalid JSON from {resp.request.url}: {exc}") from exc
    if not isinstance(payload, dict):
        raise DecodeError(
            f"expected a JSON object from {resp.request.url}, "
            f"got {type(payload).__name__}"
        )
    return payload
