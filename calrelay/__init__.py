"""Calendar relay: fetch, filter and cache remote calendars."""

__version__ = "0.1.0"
