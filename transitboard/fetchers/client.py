from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import requests


DEFAULT_TIMEOUT_SECONDS = 10

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """Upstream request failed: network error, timeout or non-2xx status."""


class DecodeError(ValueError):
    """Upstream responded, but the payload could not be interpreted."""


class FeedFetcher:
    """Performs the raw HTTP requests for the GTFS-RT and Bus Time feeds.

    The fetcher knows nothing about payload semantics; it only returns bytes or
    decoded JSON, or raises :class:`FetchError`. A single instance is safe to
    share between worker threads for one aggregation call.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        feed_api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._feed_headers = {"x-api-key": feed_api_key} if feed_api_key else None
        self._session = session or requests.Session()

    def fetch_bytes(self, url: str) -> bytes:
        response = self._get(url, headers=self._feed_headers)
        return response.content

    def fetch_json(self, url: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        response = self._get(url, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise DecodeError(f"Response from {url} was not valid JSON.") from exc

    def _get(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> requests.Response:
        logger.debug("Fetching %s", url)
        try:
            response = self._session.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise FetchError(f"Timed out after {self.timeout_seconds}s fetching {url}") from exc
        except requests.RequestException as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc

        if response.status_code in {401, 403}:
            logger.error("Request unauthorized for %s (HTTP %s).", url, response.status_code)
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise FetchError(f"HTTP {response.status_code} from {url}") from exc
        return response
