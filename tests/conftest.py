"""Shared fixtures for calrelay tests."""
import asyncio
from datetime import date
from typing import Any, Dict, List

import httpx
import pytest

from calrelay.config import AppConfig, build_identity
from calrelay.fetcher import Fetcher
from calrelay.orchestrator import FetchOrchestrator
from calrelay.storage import StateStore, CalendarStore

JSON_URL = "https://cal.example.test/calendar/load.php"
PRIMARY_ICAL_URL = "https://ical.example.test/primary.ics"
SECONDARY_ICAL_URL = "https://ical.example.test/secondary.ics"
EXCLUDED = "Revival Champions League Night"

SAMPLE_ICAL = "\n".join([
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "PRODID:-//Upstream//EN",
    "BEGIN:VEVENT",
    "UID:1@upstream",
    "SUMMARY:BlessThun Gottesdienst",
    "DTSTART:20260301T100000Z",
    "END:VEVENT",
    "BEGIN:VEVENT",
    "UID:2@upstream",
    "SUMMARY:Team Meeting",
    "DTSTART:20260302T100000Z",
    "END:VEVENT",
    "BEGIN:VEVENT",
    "UID:3@upstream",
    f"SUMMARY:{EXCLUDED}",
    "DTSTART:20260303T180000Z",
    "END:VEVENT",
    "END:VCALENDAR",
    "",
])

SETTINGS_TOML = f"""
timezone = "Europe/Zurich"
exclude = ["{EXCLUDED}"]

[identities.primary]
calendar_id = "cal-primary"
json_url = "{JSON_URL}"
ical_url = "{PRIMARY_ICAL_URL}"
match_text = "BlessThun"

[identities.secondary]
calendar_id = "cal-secondary"
json_url = "{JSON_URL}"
match_text = "Youth Revival"
keep_only_matching = true
"""


def json_event(**overrides) -> Dict[str, Any]:
    event = {
        "id": 101,
        "uid": "evt-101",
        "title": "BlessThun Sunday",
        "start": "2026-02-22 17:00:00",
        "end": "2026-02-22 19:00:00",
        "allDay": False,
    }
    event.update(overrides)
    return event


class FakeUpstream:
    """Answers upstream requests from canned responses and records them.

    A canned value may be an ``httpx.Response``, an exception to raise,
    a string (served as text) or any other JSON-serialisable value.
    """

    def __init__(self):
        self.json: Dict[str, Any] = {}
        self.ical: Dict[str, Any] = {}
        self.requests: List[httpx.Request] = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_request = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _canned(self, request: httpx.Request) -> Any:
        url = str(request.url)
        if url.startswith(JSON_URL):
            return self.json.get(request.url.params.get("calendar[0]"))
        return self.ical.get(url)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_request:
                self.on_request(request)
            if self.delay:
                await asyncio.sleep(self.delay)

            value = self._canned(request)
            if value is None:
                return httpx.Response(404, text="not found")
            if isinstance(value, Exception):
                raise value
            if isinstance(value, httpx.Response):
                return value
            if isinstance(value, str):
                return httpx.Response(200, text=value)
            return httpx.Response(200, json=value)
        finally:
            self.in_flight -= 1


@pytest.fixture
def app_config() -> AppConfig:
    identities = {
        "primary": build_identity("primary", {
            "calendar_id": "cal-primary",
            "json_url": JSON_URL,
            "ical_url": PRIMARY_ICAL_URL,
            "match_text": "BlessThun",
        }),
        "secondary": build_identity("secondary", {
            "calendar_id": "cal-secondary",
            "json_url": JSON_URL,
            "match_text": "Youth Revival",
            "keep_only_matching": True,
        }),
    }
    return AppConfig(identities=identities, exclude=[EXCLUDED])


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_orchestrator(tmp_path, app_config, upstream):
    """Build an orchestrator over tmp_path talking to the fake upstream."""

    def _make(config: AppConfig = None, environ: Dict[str, str] = None) -> FetchOrchestrator:
        config = config or app_config
        state_store = StateStore(tmp_path)
        return FetchOrchestrator(
            config=config,
            fetcher=Fetcher(timeout=5, user_agent="calrelay-test", transport=upstream.transport),
            state_store=state_store,
            calendar_store=CalendarStore(tmp_path),
            state=state_store.load(config, environ or {}),
            today=lambda: date(2026, 10, 17),
        )

    return _make
