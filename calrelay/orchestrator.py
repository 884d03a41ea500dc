"""Fetch orchestration across all configured calendar identities."""
import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Dict, Optional, Callable

from .config import AppConfig, IdentityConfig
from .converter import JsonCalendarConverter
from .fetcher import Fetcher, FetchError, ConfigMissing, date_window
from .filters import FilterEngine, FilterRules
from .lines import count_events
from .models import FetchState, RefreshResult, StatusReport, IdentityStatus
from .storage import StateStore, CalendarStore

logger = logging.getLogger(__name__)


class FetchOrchestrator:
    """Refreshes every identity's cached calendar, one cycle at a time.

    Concurrent callers of ``refresh_all`` are queued: each waits for the
    in-flight cycle to finish and then runs a full cycle of its own.
    """

    def __init__(
        self,
        config: AppConfig,
        fetcher: Fetcher,
        state_store: StateStore,
        calendar_store: CalendarStore,
        state: FetchState,
        today: Callable[[], date] = date.today,
    ):
        self.config = config
        self.fetcher = fetcher
        self.state_store = state_store
        self.calendar_store = calendar_store
        self.state = state
        self.today = today
        self.converter = JsonCalendarConverter(config.timezone, config.json_fields)
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        """Whether a fetch cycle is currently running."""
        return self._lock.locked()

    def rules_for(self, identity: IdentityConfig) -> FilterRules:
        return FilterRules.for_identity(identity, self.config.exclude)

    async def _fetch_from_json(self, identity: IdentityConfig) -> str:
        window = date_window(
            self.today(), self.config.window_years_back, self.config.window_years_ahead
        )
        params = self.fetcher.json_params(
            identity, self.config.collection_param, window, self.config.timezone
        )
        records = await self.fetcher.fetch_json(identity, params)
        logger.info(f"Got {len(records)} raw events for {identity.name} from JSON API")

        try:
            document = self.converter.convert(records, self.rules_for(identity), identity.label)
        except FetchError as e:
            e.identity, e.stage = identity.name, "json"
            raise
        logger.info(f"Converted {count_events(document)} events for {identity.name}")
        return document

    async def _fetch_from_ical(self, identity: IdentityConfig) -> str:
        url = self.state.urls.get(identity.name, "")
        raw = await self.fetcher.fetch_ical(identity, url)

        document = FilterEngine(self.rules_for(identity)).filter_document(raw)
        logger.info(
            f"Filtered {identity.name}: {count_events(raw)} -> {count_events(document)} events"
        )
        return document

    async def refresh_identity(self, identity: IdentityConfig) -> Optional[str]:
        """Refresh one identity; returns the source used ('json' or 'ical') or None on failure.

        Fetch errors are logged and leave the cached document in place.
        Errors writing the document propagate.
        """
        document = None
        source = None

        if identity.uses_json:
            try:
                document = await self._fetch_from_json(identity)
                source = "json"
            except FetchError as e:
                logger.error(f"JSON API failed, falling back to iCal: {e}")

        if document is None:
            try:
                document = await self._fetch_from_ical(identity)
                source = "ical"
            except ConfigMissing as e:
                logger.error(f"Cannot refresh: {e}")
                return None
            except FetchError as e:
                logger.error(f"iCal fallback failed: {e}")
                return None

        self.calendar_store.save(identity.filename, document)
        logger.info(f"Saved {identity.filename} from {source}")
        return source

    async def refresh_all(self) -> RefreshResult:
        """Run one full fetch cycle over all identities."""
        async with self._lock:
            logger.info("Fetching calendars...")
            results: Dict[str, bool] = {}
            sources: Dict[str, Optional[str]] = {}

            for name, identity in self.config.identities.items():
                source = await self.refresh_identity(identity)
                results[name] = source is not None
                sources[name] = source

            timestamp = datetime.now(timezone.utc)
            self.state.last_fetch = timestamp
            self.state_store.save(self.state)

            summary = ", ".join(f"{name}={ok}" for name, ok in results.items())
            logger.info(f"Fetch complete: {summary}")
            return RefreshResult(results=results, sources=sources, timestamp=timestamp)

    async def update_urls(self, urls: Dict[str, str]) -> RefreshResult:
        """Store new fallback URLs and refresh immediately."""
        unknown = set(urls) - set(self.config.identities)
        if unknown:
            raise KeyError(f"Unknown identities: {', '.join(sorted(unknown))}")

        async with self._lock:
            self.state.urls.update({name: url.strip() for name, url in urls.items()})
            self.state_store.save(self.state)
            logger.info(f"Updated fallback URLs for {', '.join(sorted(urls))}")

        return await self.refresh_all()

    def status(self) -> StatusReport:
        """Report the last fetch time and which identities have a document."""
        identities = {
            name: IdentityStatus(
                has_document=self.calendar_store.exists(identity.filename),
                has_url=bool(self.state.urls.get(name)),
                uses_json=identity.uses_json,
            )
            for name, identity in self.config.identities.items()
        }
        return StatusReport(
            last_fetch=self.state.last_fetch,
            busy=self.busy,
            identities=identities,
        )
