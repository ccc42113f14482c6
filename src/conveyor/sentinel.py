from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from conveyor.prompts import DONE_MARKER, SUMMARY_CLOSE, SUMMARY_OPEN


class SentinelKind(StrEnum):
    DONE = "done"
    SUMMARY = "summary"


@dataclass(slots=True, frozen=True)
class SentinelEvent:
    kind: SentinelKind
    text: str | None = None


class SentinelScanner:
    """Watches a growing output buffer for the completion and summary markers.

    Each marker fires at most once per scanner. Searches always run against the
    accumulated buffer, so a marker split across two pipe reads is still found.
    """

    def __init__(
        self,
        done_marker: str = DONE_MARKER,
        summary_open: str = SUMMARY_OPEN,
        summary_close: str = SUMMARY_CLOSE,
    ) -> None:
        self.done_marker = done_marker
        self._open_pattern = re.compile(re.escape(summary_open), re.IGNORECASE)
        self._close_pattern = re.compile(re.escape(summary_close), re.IGNORECASE)
        self._close_length = len(summary_close)
        self._buffer = ""
        self._done_from = 0
        self._close_from = 0
        self._summary_checked = False
        self.fired: set[SentinelKind] = set()

    @property
    def buffer(self) -> str:
        return self._buffer

    def reset(self) -> None:
        self._buffer = ""
        self._done_from = 0
        self._close_from = 0
        self._summary_checked = False
        self.fired.clear()

    def feed(self, chunk: str) -> list[SentinelEvent]:
        if not chunk:
            return []
        self._buffer += chunk
        events: list[SentinelEvent] = []

        if SentinelKind.DONE not in self.fired:
            if self._buffer.find(self.done_marker, self._done_from) != -1:
                self.fired.add(SentinelKind.DONE)
                events.append(SentinelEvent(SentinelKind.DONE))
            else:
                self._done_from = max(0, len(self._buffer) - len(self.done_marker) + 1)

        if not self._summary_checked:
            close_match = self._close_pattern.search(self._buffer, self._close_from)
            if close_match is not None:
                # Only the first closing tag is considered.
                self._summary_checked = True
                summary = self._extract_summary(close_match.start())
                if summary is not None:
                    self.fired.add(SentinelKind.SUMMARY)
                    events.append(SentinelEvent(SentinelKind.SUMMARY, summary))
            else:
                self._close_from = max(0, len(self._buffer) - self._close_length + 1)

        return events

    def _extract_summary(self, close_at: int) -> str | None:
        last_open = None
        for match in self._open_pattern.finditer(self._buffer, 0, close_at):
            last_open = match
        if last_open is None:
            return None
        return self._buffer[last_open.end() : close_at].strip()
