"""
Shared HTTP plumbing for external providers.

One RateLimiter per provider is shared by every worker thread so the
aggregate request rate stays within the provider's published limit.
JsonClient translates requests failures into the pipeline's error taxonomy.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import requests

from core.errors import MalformedUpstreamData, RateLimited, TransientNetworkError


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

USER_AGENT = "HMOEnrichmentPipeline/1.0 (contact: data@hmo-pipeline.co.uk)"
REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_RETRY_AFTER_SECONDS = 5.0


# =============================================================================
# Rate Limiter
# =============================================================================


class RateLimiter:
    """
    Minimum interval between calls to one provider, shared across threads.

    `wait()` blocks until the next call is allowed. `back_off()` pushes the
    next allowed call further out after the provider answers 429.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        name: str = "provider",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds cannot be negative")
        self.name = name
        self.min_interval = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_allowed = 0.0

    def wait(self) -> None:
        """Enforce rate limiting between requests."""
        with self._lock:
            now = self._clock()
            delay = self._next_allowed - now
            if delay > 0:
                self._sleep(delay)
                now += delay
            self._next_allowed = now + self.min_interval

    def back_off(self, seconds: Optional[float] = None) -> None:
        seconds = DEFAULT_RETRY_AFTER_SECONDS if seconds is None else seconds
        with self._lock:
            self._next_allowed = max(self._next_allowed, self._clock() + seconds)
        logger.warning("Backing off %s for %.1fs", self.name, seconds)


# =============================================================================
# Session / JSON client
# =============================================================================


def build_session(headers: Optional[dict[str, str]] = None) -> requests.Session:
    """requests.Session with the pipeline's identifying User-Agent."""
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            "Accept-Language": "en-GB,en;q=0.9",
        }
    )
    if headers:
        session.headers.update(headers)
    return session


def _safe_url(url: str) -> str:
    # Query strings may carry API keys
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class JsonClient:
    """
    Rate-limited JSON-over-HTTP client for one provider.

    Raises:
        RateLimited: HTTP 429 (the limiter is backed off first).
        TransientNetworkError: Connection errors, timeouts, other non-2xx.
        MalformedUpstreamData: Body is not valid JSON.
    """

    def __init__(
        self,
        base_url: str,
        limiter: RateLimiter,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        auth: Optional[tuple[str, str]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.limiter = limiter
        self.timeout = timeout
        self._session = session if session is not None else build_session()
        self._auth = auth
        self._headers = headers or {}

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path:
            return self.base_url
        return f"{self.base_url}/{path.lstrip('/')}"

    def get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return self._request("GET", path, params=params)

    def post_json(self, path: str, payload: dict[str, Any]) -> Any:
        return self._request("POST", path, json=payload)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = self.url_for(path)
        self.limiter.wait()
        try:
            response = self._session.request(
                method,
                url,
                timeout=self.timeout,
                auth=self._auth,
                headers=self._headers or None,
                **kwargs,
            )
        except requests.RequestException as e:
            raise TransientNetworkError(f"{method} {_safe_url(url)} failed: {e}") from e

        if response.status_code == 429:
            retry_after = _retry_after(response)
            self.limiter.back_off(retry_after)
            raise RateLimited(f"{self.limiter.name} rate limited", retry_after=retry_after)
        if response.status_code == 404:
            return None
        if not 200 <= response.status_code < 300:
            raise TransientNetworkError(
                f"{method} {_safe_url(url)} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedUpstreamData(f"{_safe_url(url)} returned invalid JSON") from e

    def close(self) -> None:
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
