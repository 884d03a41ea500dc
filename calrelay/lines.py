"""Logical line model for iCal documents."""
import re
from dataclasses import dataclass
from typing import Iterable, List

CRLF = "\r\n"

# A line break followed by one space or tab continues the previous line
_FOLD_RE = re.compile(r"(?:\r\n|\r|\n)[ \t]")
_BREAK_RE = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class LogicalLine:
    """A single unfolded iCal line, split on its first colon."""
    text: str

    @property
    def key(self) -> str:
        """Everything before the first colon (the whole line if none)."""
        return self.text.split(":", 1)[0]

    @property
    def value(self) -> str:
        """Everything after the first colon."""
        parts = self.text.split(":", 1)
        return parts[1] if len(parts) == 2 else ""

    def with_value(self, value: str) -> "LogicalLine":
        """Return a copy of this line carrying a new value under the same key."""
        return LogicalLine(f"{self.key}:{value}")


def unfold(text: str) -> str:
    """Join folded continuation lines back onto their parent line."""
    return _FOLD_RE.sub("", text)


def split_lines(text: str) -> List[LogicalLine]:
    """Unfold a raw document and split it into logical lines."""
    return [LogicalLine(part) for part in _BREAK_RE.split(unfold(text))]


def join_lines(lines: Iterable[LogicalLine]) -> str:
    """Reassemble logical lines into a CRLF-terminated document."""
    return CRLF.join(line.text for line in lines)


def count_events(text: str) -> int:
    """Count VEVENT begin markers in a document."""
    return sum(1 for line in split_lines(text) if line.text == "BEGIN:VEVENT")
