"""Upstream calendar fetcher."""
import logging
import time
from datetime import date
from typing import Any, List, Optional, Tuple

import httpx

from .config import IdentityConfig

logger = logging.getLogger(__name__)

CALENDAR_BEGIN = "BEGIN:VCALENDAR"


class FetchError(Exception):
    """Error during fetch operation."""

    def __init__(self, message: str, identity: Optional[str] = None,
                 stage: Optional[str] = None):
        super().__init__(message)
        self.identity = identity
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        context = "/".join(part for part in (self.identity, self.stage) if part)
        return f"[{context}] {message}" if context else message


class UpstreamUnreachable(FetchError):
    """Network or transport failure."""


class UpstreamRejected(FetchError):
    """Upstream answered with a non-success status."""


class MalformedPayload(FetchError):
    """Response body is not the expected shape."""


class ConfigMissing(FetchError):
    """No source configured for the attempted path."""


def date_window(today: date, years_back: int, years_ahead: int) -> Tuple[str, str]:
    """Return the first and last day of a window of whole years around today."""
    start = f"{today.year - years_back}-01-01"
    end = f"{today.year + years_ahead}-12-31"
    return start, end


class Fetcher:
    """Fetches calendar data from the JSON API and from iCal URLs."""

    def __init__(self, timeout: float = 30, user_agent: str = "calrelay",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.user_agent = user_agent
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            transport=self.transport,
        )

    async def _get(self, url: str, identity: str, stage: str,
                   params: Optional[List[Tuple[str, str]]] = None) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.get(url, params=params)
        except httpx.InvalidURL as e:
            raise ConfigMissing(f"Invalid URL {url!r}: {e}", identity, stage)
        except httpx.TimeoutException as e:
            raise UpstreamUnreachable(f"Timed out fetching {url}: {e!r}", identity, stage)
        except httpx.HTTPError as e:
            raise UpstreamUnreachable(f"HTTP error fetching {url}: {e!r}", identity, stage)

        if not response.is_success:
            raise UpstreamRejected(f"HTTP {response.status_code} from {url}", identity, stage)
        return response

    def json_params(self, identity: IdentityConfig, collection_param: str,
                    window: Tuple[str, str], timezone: str) -> List[Tuple[str, str]]:
        """Query parameters for the JSON calendar API."""
        start, end = window
        return [
            ("embed", ""),
            (collection_param, identity.calendar_id),
            ("start", start),
            ("end", end),
            ("timezone", timezone),
            ("_", str(int(time.time() * 1000))),
        ]

    async def fetch_json(self, identity: IdentityConfig,
                         params: List[Tuple[str, str]]) -> Any:
        """Fetch and decode the JSON event list of an identity."""
        if not identity.uses_json:
            raise ConfigMissing("No JSON API configured", identity.name, "json")

        logger.info(f"Fetching {identity.name} from JSON API {identity.json_url}")
        response = await self._get(identity.json_url, identity.name, "json", params)

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedPayload(f"Invalid JSON: {e}", identity.name, "json")

        if not isinstance(payload, list):
            raise MalformedPayload(
                f"Response is not a list but {type(payload).__name__}",
                identity.name, "json",
            )
        return payload

    async def fetch_ical(self, identity: IdentityConfig, url: str) -> str:
        """Fetch a raw iCal document."""
        if not url:
            raise ConfigMissing("No fallback iCal URL configured", identity.name, "ical")

        logger.info(f"Fetching {identity.name} from iCal URL {url[:50]}")
        response = await self._get(url, identity.name, "ical")

        text = response.text
        if CALENDAR_BEGIN not in text:
            raise MalformedPayload(f"No {CALENDAR_BEGIN} in response", identity.name, "ical")
        return text
