"""Normalize plain-text chat exports into timestamped messages.

Exports look like::

    12/31/20, 9:15 PM - Alice: are we still on for tomorrow?
    which train are you taking
    12/31/20, 9:17 PM - Bob: the 8:05

A header line opens a message; any following non-header lines belong to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
import logging
from pathlib import Path
import re

from chatrag.errors import ParseError
from chatrag.services.rag.types import Message

logger = logging.getLogger(__name__)

_DATE = r"\d{1,4}[./-]\d{1,2}[./-]\d{1,4}"
_TIME = r"\d{1,2}:\d{2}(?::\d{2})?(?:\s*[AaPp]\.?\s*[Mm]\.?)?"

_DASH_HEADER_RE = re.compile(rf"^(?P<date>{_DATE}),?\s+(?P<time>{_TIME})\s+-\s+(?P<rest>.*)$")
_BRACKET_HEADER_RE = re.compile(rf"^\[(?P<date>{_DATE}),?\s+(?P<time>{_TIME})\]\s+(?P<rest>.*)$")
_SENDER_RE = re.compile(r"^(?P<sender>[^:]+?):(?:\s(?P<text>.*))?$")
_MERIDIEM_RE = re.compile(r"([AaPp])\.?\s*[Mm]\.?$")

_INVISIBLE_MARKS = ("\ufeff", "\u200e", "\u200f")


@dataclass
class _PendingMessage:
    timestamp: datetime
    sender: str
    lines: list[str] = field(default_factory=list)

    def finish(self) -> Message | None:
        text = "\n".join(self.lines).strip()
        if not text:
            return None
        return Message(timestamp=self.timestamp, sender=self.sender, text=text)


def _normalize_line(line: str) -> str:
    for mark in _INVISIBLE_MARKS:
        line = line.replace(mark, "")
    return line.replace("\u202f", " ").replace("\xa0", " ")


def _match_header(line: str) -> re.Match[str] | None:
    return _DASH_HEADER_RE.match(line) or _BRACKET_HEADER_RE.match(line)


def _candidate_dates(value: str, *, day_first: bool) -> list[date]:
    parts = re.split(r"[./-]", value)
    if len(parts) != 3:
        return []

    if len(parts[0]) == 4:
        orderings = [(int(parts[0]), int(parts[1]), int(parts[2]))]
    else:
        if len(parts[2]) not in (2, 4):
            return []
        first, second, year = (int(part) for part in parts)
        if len(parts[2]) == 2:
            year += 2000
        month_first = (year, first, second)
        day_first_order = (year, second, first)
        orderings = [day_first_order, month_first] if day_first else [month_first, day_first_order]

    candidates: list[date] = []
    for year, month, day in orderings:
        try:
            candidates.append(date(year, month, day))
        except ValueError:
            continue
    return candidates


def _parse_time(value: str) -> time | None:
    meridiem_match = _MERIDIEM_RE.search(value)
    clock = value[: meridiem_match.start()].strip() if meridiem_match else value.strip()
    pieces = [int(piece) for piece in clock.split(":")]
    hour, minute = pieces[0], pieces[1]
    second = pieces[2] if len(pieces) > 2 else 0

    if meridiem_match is not None:
        if not 1 <= hour <= 12:
            return None
        is_pm = meridiem_match.group(1).lower() == "p"
        hour = hour % 12 + (12 if is_pm else 0)

    try:
        return time(hour, minute, second)
    except ValueError:
        return None


def parse_timestamp(date_text: str, time_text: str, *, day_first: bool = False) -> datetime | None:
    """Return the first valid reading of a header timestamp, or None."""
    clock = _parse_time(time_text)
    if clock is None:
        return None
    candidates = _candidate_dates(date_text, day_first=day_first)
    if not candidates:
        return None
    return datetime.combine(candidates[0], clock)


def parse(raw_text: str, *, day_first: bool = False) -> list[Message]:
    messages: list[Message] = []
    current: _PendingMessage | None = None
    dropped_headers = 0

    def flush() -> None:
        if current is None:
            return
        message = current.finish()
        if message is not None:
            messages.append(message)

    for raw_line in raw_text.splitlines():
        line = _normalize_line(raw_line)
        header = _match_header(line)

        if header is None:
            if current is not None:
                current.lines.append(line)
            continue

        flush()
        current = None

        timestamp = parse_timestamp(header.group("date"), header.group("time"), day_first=day_first)
        if timestamp is None:
            dropped_headers += 1
            continue

        sender_match = _SENDER_RE.match(header.group("rest"))
        if sender_match is None or not sender_match.group("sender").strip():
            # system notice ("Messages are end-to-end encrypted", "Alice left")
            continue

        current = _PendingMessage(
            timestamp=timestamp,
            sender=sender_match.group("sender").strip(),
            lines=[sender_match.group("text") or ""],
        )

    flush()

    if dropped_headers:
        logger.debug("dropped %d message headers with unparseable timestamps", dropped_headers)
    return messages


def read_export(path: Path) -> str:
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise ParseError(f"Unable to read export {path}: {exc}") from exc
    return raw.decode("utf-8", errors="replace")
