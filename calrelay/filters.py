"""Event filtering and summary renaming."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .config import IdentityConfig
from .lines import LogicalLine, split_lines, join_lines

logger = logging.getLogger(__name__)

BEGIN_EVENT = "BEGIN:VEVENT"
END_EVENT = "END:VEVENT"
END_CALENDAR = "END:VCALENDAR"
SUMMARY_KEY = "SUMMARY"


@dataclass
class FilterRules:
    """Rules applied to every event of one identity's calendar.

    Matching against ``match_text`` is case-insensitive, for renaming and
    for ``keep_only_matching`` alike. Exclusion is a case-sensitive
    substring test and wins over matching.
    """
    exclude: List[str] = field(default_factory=list)
    match_text: Optional[str] = None
    canonical_name: Optional[str] = None
    keep_only_matching: bool = False

    @classmethod
    def for_identity(cls, identity: IdentityConfig, exclude: List[str]) -> "FilterRules":
        return cls(
            exclude=list(exclude),
            match_text=identity.match_text,
            canonical_name=identity.canonical_name or identity.match_text,
            keep_only_matching=identity.keep_only_matching,
        )

    def is_excluded(self, summary: str) -> bool:
        return any(term in summary for term in self.exclude if term)

    def matches(self, summary: str) -> bool:
        """Whether the summary belongs to this identity's event family."""
        if not self.match_text:
            return False
        return self.match_text.lower() in summary.lower()

    def is_kept(self, summary: str) -> bool:
        if self.is_excluded(summary):
            return False
        if self.keep_only_matching and not self.matches(summary):
            return False
        return True

    def canonical(self, summary: str) -> str:
        """Collapse any variant of the event family to its canonical name."""
        summary = summary.strip()
        if self.matches(summary):
            return self.canonical_name or self.match_text
        return summary


class _EventBlock:
    """Lines of one VEVENT collected between its begin and end markers."""

    def __init__(self, begin: LogicalLine):
        self.lines: List[LogicalLine] = [begin]
        self.summary = ""
        self.summary_index = -1

    def append(self, line: LogicalLine) -> None:
        self.lines.append(line)
        if self.summary_index < 0 and line.key == SUMMARY_KEY:
            self.summary = line.value
            self.summary_index = len(self.lines) - 1


class FilterEngine:
    """Drops and renames VEVENT blocks of a raw iCal document."""

    def __init__(self, rules: FilterRules):
        self.rules = rules

    def _resolve(self, block: _EventBlock) -> List[LogicalLine]:
        """Return the lines to emit for a closed block (all or nothing)."""
        if not self.rules.is_kept(block.summary):
            return []

        lines = list(block.lines)
        if block.summary_index >= 0 and self.rules.matches(block.summary):
            summary_line = lines[block.summary_index]
            lines[block.summary_index] = summary_line.with_value(
                self.rules.canonical(block.summary)
            )
        return lines

    def filter_lines(self, lines: List[LogicalLine]) -> List[LogicalLine]:
        output: List[LogicalLine] = []
        block: Optional[_EventBlock] = None

        for line in lines:
            if block is None:
                if line.text == BEGIN_EVENT:
                    block = _EventBlock(line)
                else:
                    output.append(line)
            elif line.text == END_EVENT:
                block.lines.append(line)
                output.extend(self._resolve(block))
                block = None
            elif line.text == END_CALENDAR:
                logger.warning("Dropping unterminated event before calendar end")
                block = None
                output.append(line)
            else:
                # A nested BEGIN:VEVENT is kept as plain content
                block.append(line)

        if block is not None:
            logger.warning("Dropping unterminated event at end of document")

        return output

    def filter_document(self, document: str) -> str:
        """Filter a raw iCal document and return it with CRLF line endings."""
        lines = self.filter_lines(split_lines(document))
        if lines and lines[-1].text != "":
            lines.append(LogicalLine(""))
        return join_lines(lines)
