"""Convert JSON calendar API responses into iCal documents."""
import html
import logging
import re
from datetime import date, datetime
from typing import Any

from icalendar import Calendar, Event
from pydantic import ValidationError

from .config import JsonFieldMap
from .fetcher import MalformedPayload
from .filters import FilterRules
from .models import UpstreamEvent

logger = logging.getLogger(__name__)

_NON_DIGIT_RE = re.compile(r"\D")
_LINE_BREAK_TAG_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def parse_all_day(value: str) -> date:
    """'2026-03-20 00:00:00' -> date(2026, 3, 20)."""
    digits = _NON_DIGIT_RE.sub("", value)
    if len(digits) < 8:
        raise ValueError(f"Not a date: {value!r}")
    return datetime.strptime(digits[:8], "%Y%m%d").date()


def parse_timed(value: str) -> datetime:
    """'2026-02-22 17:00:00' -> naive datetime rendered as 20260222T170000."""
    digits = _NON_DIGIT_RE.sub("", value)
    if len(digits) == 12:
        digits += "00"
    if len(digits) < 14:
        raise ValueError(f"Not a date-time: {value!r}")
    return datetime.strptime(digits[:14], "%Y%m%d%H%M%S")


def clean_description(text: str) -> str:
    """Strip HTML markup from an upstream description."""
    text = _LINE_BREAK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    return html.unescape(text).strip()


class JsonCalendarConverter:
    """Builds a calendar document from upstream JSON event records."""

    def __init__(self, timezone: str, field_map: JsonFieldMap = None):
        self.timezone = timezone
        self.field_map = field_map or JsonFieldMap()

    def _build_event(self, upstream: UpstreamEvent, rules: FilterRules) -> Event:
        event = Event()
        event.add('uid', upstream.identifier)
        event.add('summary', rules.canonical(upstream.title))

        if upstream.all_day:
            # Upstream end dates are already exclusive
            event.add('dtstart', parse_all_day(upstream.start))
            event.add('dtend', parse_all_day(upstream.end))
        else:
            tz = {'TZID': self.timezone}
            event.add('dtstart', parse_timed(upstream.start), parameters=tz)
            event.add('dtend', parse_timed(upstream.end), parameters=tz)

        if upstream.location:
            event.add('location', upstream.location)

        if upstream.description:
            description = clean_description(upstream.description)
            if description:
                event.add('description', description)

        return event

    def convert(self, records: Any, rules: FilterRules, label: str) -> str:
        """Convert a decoded JSON payload into a CRLF-terminated iCal document."""
        if not isinstance(records, list):
            raise MalformedPayload(
                f"Expected a list of events, got {type(records).__name__}"
            )

        cal = Calendar()
        cal.add('version', '2.0')
        cal.add('prodid', f'-//calrelay//{label}//EN')
        cal.add('x-wr-timezone', self.timezone)

        skipped = 0
        for record in records:
            if not isinstance(record, dict):
                raise MalformedPayload(
                    f"Expected event objects, got {type(record).__name__}"
                )
            try:
                upstream = UpstreamEvent.from_record(record, self.field_map)
            except ValidationError as e:
                logger.warning(f"Skipping invalid event record for {label}: {e}")
                skipped += 1
                continue

            if rules.is_excluded(upstream.title):
                continue

            try:
                cal.add_component(self._build_event(upstream, rules))
            except ValueError as e:
                logger.warning(f"Skipping event {upstream.identifier} for {label}: {e}")
                skipped += 1

        if skipped:
            logger.info(f"Skipped {skipped} malformed events for {label}")

        return cal.to_ical().decode('utf-8')
