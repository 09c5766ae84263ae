import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from activity_digest.domain.exceptions import ApiError, NotFoundError

logger = logging.getLogger(__name__)

PageFetcher = Callable[[str], Awaitable[Tuple[Union[List[Dict[str, Any]], Dict[str, Any]], Optional[str]]]]


class PageState(str, Enum):
    FETCHING = "fetching"
    RATE_LIMIT_PAUSING = "rate_limit_pausing"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class PageIterator:
    """
    Pull-based async iterator over a paginated listing.

    Pages are requested only when the buffered records run out, so a caller that
    stops early never pays for the remaining pages. The iterator is finite and not
    restartable: once EXHAUSTED or FAILED it stays there.

    `fetch_page(url)` must return `(data, next_url)`. A list is buffered as records;
    anything else is kept as `document` and ends the iteration.
    """

    def __init__(self, fetch_page: PageFetcher, first_url: str, rate_gate=None):
        self._fetch_page = fetch_page
        self._next_url: Optional[str] = first_url
        self._buffer: deque = deque()
        self._rate_gate = rate_gate
        self.state = PageState.FETCHING
        self.error: Optional[ApiError] = None
        self.document: Optional[Dict[str, Any]] = None
        self.pages_fetched = 0

    def __aiter__(self) -> "PageIterator":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._buffer:
            if self.state in (PageState.EXHAUSTED, PageState.FAILED):
                raise StopAsyncIteration
            if self._next_url is None:
                self.state = PageState.EXHAUSTED
                raise StopAsyncIteration
            await self._load_next_page()

        return self._buffer.popleft()

    async def _load_next_page(self) -> None:
        if self._rate_gate is not None and self._rate_gate.is_low:
            # The fetcher waits on the gate; this only reports the state.
            self.state = PageState.RATE_LIMIT_PAUSING
        else:
            self.state = PageState.FETCHING

        url = self._next_url
        try:
            data, next_url = await self._fetch_page(url)
        except NotFoundError:
            logger.debug(f"Nothing found at {url}; treating listing as empty.")
            self._next_url = None
            self.state = PageState.EXHAUSTED
            return
        except ApiError as e:
            self.state = PageState.FAILED
            self.error = e
            raise

        self.state = PageState.FETCHING
        self.pages_fetched += 1

        if isinstance(data, list):
            self._buffer.extend(data)
            self._next_url = next_url
        else:
            self.document = data
            self._next_url = None

    async def collect(self) -> List[Dict[str, Any]]:
        """Drains the iterator, returning every remaining record in server order."""
        return [record async for record in self]
