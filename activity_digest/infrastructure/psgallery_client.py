import aiohttp
import asyncio
import logging
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

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

API_URL = "https://www.powershellgallery.com/api/v2"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)

NAMESPACES = {
    "atom": "http://www.w3.org/2005/Atom",
    "d": "http://schemas.microsoft.com/ado/2007/08/dataservices",
    "m": "http://schemas.microsoft.com/ado/2007/08/dataservices/metadata",
}


def _odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def parse_feed(xml_text: str) -> Tuple[List[Dict[str, str]], Optional[str]]:
    """
    Parses an OData Atom feed into flat property dicts.

    Returns:
        Tuple of (entries, next_url). Each entry maps the `d:` property local names
        (Id, Version, DownloadCount, ...) to their text, plus `title`.
    """
    root = ET.fromstring(xml_text)
    entries: List[Dict[str, str]] = []

    for entry in root.findall("atom:entry", NAMESPACES):
        record: Dict[str, str] = {}
        title = entry.find("atom:title", NAMESPACES)
        if title is not None and title.text:
            record["title"] = title.text.strip()

        properties = entry.find("m:properties", NAMESPACES)
        if properties is not None:
            for prop in properties:
                local_name = prop.tag.rsplit("}", 1)[-1]
                record[local_name] = (prop.text or "").strip()
        entries.append(record)

    next_url = None
    for link in root.findall("atom:link", NAMESPACES):
        if link.get("rel") == "next":
            next_url = link.get("href")
            break

    return entries, next_url


class PSGalleryClient:
    """
    Client for the PowerShell Gallery OData (v2) feed.
    Unauthenticated; follows the feed's rel="next" links for pagination.
    """

    def __init__(self, api_url: str = API_URL):
        self.api_url = api_url.rstrip("/")
        self.headers = {
            "Accept": "application/atom+xml",
            "User-Agent": "activity-digest",
        }

    async def search_by_author(self, session: aiohttp.ClientSession, author: str) -> List[Dict[str, str]]:
        """Lists the latest version of every package whose Authors field matches `author`."""
        query = quote(f"IsLatestVersion and Authors eq {_odata_literal(author)}", safe="")
        endpoint = f"{self.api_url}/Packages()?$filter={query}&$orderby=Id"
        return await self.paginate(session, endpoint).collect()

    async def find_package(self, session: aiohttp.ClientSession, name: str) -> Optional[Dict[str, str]]:
        """Returns the latest version entry of one package id, or None when it does not exist."""
        endpoint = f"{self.api_url}/FindPackagesById()?id={quote(_odata_literal(name), safe='')}"
        entries = await self.paginate(session, endpoint).collect()
        if not entries:
            return None

        for entry in entries:
            if entry.get("IsLatestVersion", "").lower() == "true":
                return entry
        return entries[-1]

    def paginate(self, session: aiohttp.ClientSession, url: str) -> PageIterator:
        async def fetch_page(page_url: str):
            return await self.request(session, page_url)

        return PageIterator(fetch_page, url)

    async def request(self, session: aiohttp.ClientSession, url: str) -> Tuple[List[Dict[str, str]], Optional[str]]:
        logger.debug(f"PSGallery API: GET {url}")

        try:
            async with session.request("GET", url, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                if 200 <= response.status < 300:
                    text = await response.text()
                    try:
                        return parse_feed(text)
                    except ET.ParseError as e:
                        raise TransientApiError(url, response.status, f"Malformed feed: {e}.") from e

                raise self._error_for_status(url, response.status)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientApiError(url, None, f"Request failed: {e}.") from e

    @staticmethod
    def _error_for_status(url: str, status: int) -> ApiError:
        if status == 401:
            return AuthError(url, status, "Unauthorized.")
        if status == 429:
            return RateLimitError(url, status)
        if status == 403:
            return ForbiddenError(url, status, "Forbidden.")
        if status == 404:
            return NotFoundError(url, status, "Not found.")
        return TransientApiError(url, status, f"Unexpected status {status}.")
