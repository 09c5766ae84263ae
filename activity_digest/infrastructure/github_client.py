import aiohttp
import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from activity_digest.domain.exceptions import (
    ApiError,
    AuthError,
    ForbiddenError,
    NotFoundError,
    RateLimitError,
    TransientApiError,
)
from activity_digest.infrastructure.pagination import PageIterator

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
# Pause before the next request once remaining quota drops to this value
LOW_REMAINING_THRESHOLD = 5
# Used when the API reports low quota without a reset time
DEFAULT_RESET_WAIT = 60

NEXT_LINK_PATTERN = re.compile(r'<([^>]+)>\s*;\s*rel="next"')

Payload = Union[List[Dict[str, Any]], Dict[str, Any]]


def parse_next_link(link_header: Optional[str]) -> Optional[str]:
    """Extracts the rel="next" URL from a Link response header."""
    if not link_header:
        return None
    match = NEXT_LINK_PATTERN.search(link_header)
    return match.group(1) if match else None


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class RateLimitGate:
    """
    Single serialized decision point for rate-limit backoff.

    Every response updates the gate; every request awaits `wait()` first. The check and
    the sleep happen under one lock, and the observation is cleared after sleeping, so
    concurrent requests never each decide to sleep.
    """

    def __init__(self, threshold: int = LOW_REMAINING_THRESHOLD):
        self.threshold = threshold
        self.remaining: Optional[int] = None
        self.reset_at: Optional[int] = None
        self._lock = asyncio.Lock()

    @property
    def is_low(self) -> bool:
        return self.remaining is not None and self.remaining <= self.threshold

    def observe(self, headers: Mapping[str, str]) -> None:
        remaining = _int_or_none(headers.get("X-RateLimit-Remaining"))
        if remaining is None:
            return
        self.remaining = remaining
        self.reset_at = _int_or_none(headers.get("X-RateLimit-Reset"))

    async def wait(self) -> float:
        """Sleeps until the quota resets when it is low. Returns the seconds slept."""
        async with self._lock:
            if not self.is_low:
                return 0.0

            if self.reset_at is not None:
                wait_seconds = max(self.reset_at - time.time(), 0) + 1
            else:
                wait_seconds = DEFAULT_RESET_WAIT

            logger.warning(
                f"Rate limit low ({self.remaining} remaining). "
                f"Waiting {wait_seconds:.0f}s for the quota to reset."
            )
            await asyncio.sleep(wait_seconds)
            self.remaining = None
            self.reset_at = None
            return wait_seconds


class GitHubRestClient:
    """
    Client for the GitHub REST API.
    Handles authentication, Link-header pagination and rate limit backoff.
    """

    def __init__(self, token: Optional[str] = None, api_url: str = API_URL,
                 rate_gate: Optional[RateLimitGate] = None):
        self.default_token = token or None
        self.api_url = api_url.rstrip("/")
        self.rate_gate = rate_gate or RateLimitGate()

    def resolve_token(self, token: Optional[str] = None) -> Optional[str]:
        """An explicit token wins over the configured default; neither means unauthenticated."""
        return token or self.default_token

    def build_headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "activity-digest",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        resolved = self.resolve_token(token)
        if resolved:
            headers["Authorization"] = f"Bearer {resolved}"
        return headers

    def build_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.api_url}/{endpoint.lstrip('/')}"

    async def fetch(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        token: Optional[str] = None,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
    ) -> Payload:
        """
        Calls an endpoint and returns its records.

        List endpoints are followed through every page and returned as one list in
        server order. Object endpoints return the object. A 404 returns an empty list.

        Raises:
            AuthError: on 401.
            RateLimitError / ForbiddenError: on 403 (and 429).
            TransientApiError: on any other non-2xx status or a network failure.
        """
        method = method.upper()
        if method != "GET":
            try:
                data, _ = await self.request(session, self.build_url(endpoint), self.build_headers(token), method, body)
            except NotFoundError:
                return []
            return data

        pages = self.paginate(session, endpoint, token)
        records = await pages.collect()
        if pages.document is not None:
            return pages.document
        return records

    def paginate(self, session: aiohttp.ClientSession, endpoint: str, token: Optional[str] = None) -> PageIterator:
        """Returns a lazy iterator over every record of a list endpoint."""
        headers = self.build_headers(token)

        async def fetch_page(url: str) -> Tuple[Payload, Optional[str]]:
            return await self.request(session, url, headers)

        return PageIterator(fetch_page, self.build_url(endpoint), rate_gate=self.rate_gate)

    async def request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: Dict[str, str],
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Payload, Optional[str]]:
        """Issues one HTTP request and returns (data, next_page_url)."""
        await self.rate_gate.wait()
        logger.debug(f"GitHub API: {method} {url}")

        try:
            async with session.request(method, url, json=body, headers=headers, timeout=REQUEST_TIMEOUT) as response:
                self.rate_gate.observe(response.headers)

                if response.status == 204:
                    return {}, None

                if 200 <= response.status < 300:
                    data = await response.json(content_type=None)
                    return data, parse_next_link(response.headers.get("Link"))

                message = await self._error_message(response)
                raise self._error_for_status(url, response.status, response.headers, message)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientApiError(url, None, f"Request failed: {e}.") from e

    @staticmethod
    async def _error_message(response) -> str:
        text = await response.text()
        try:
            payload = json.loads(text)
        except (TypeError, ValueError):
            return text if isinstance(text, str) else ""
        if isinstance(payload, dict):
            return str(payload.get("message", ""))
        return ""

    @staticmethod
    def _error_for_status(url: str, status: int, headers: Mapping[str, str], message: str) -> ApiError:
        if status == 401:
            return AuthError(url, status, message or "Bad credentials.")

        if status in (403, 429):
            if status == 429 or headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in message.lower():
                return RateLimitError(url, status, reset_at=_int_or_none(headers.get("X-RateLimit-Reset")))
            return ForbiddenError(url, status, message or "Forbidden.")

        if status == 404:
            return NotFoundError(url, status, "Not found.")

        return TransientApiError(url, status, message or f"Unexpected status {status}.")
