"""
Upstream framing detection.

The automation backend answers either as an event stream (``data: ...``
records separated by blank lines) or as newline-delimited JSON. The
FormatSniffer decides once per connection from the first non-blank text
(any event-stream field or comment prefix selects the event stream);
the chosen LineFramer then turns complete lines into record payloads for
the rest of that connection.
"""

import logging
from enum import Enum
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)

# Line prefixes that only occur in event streams; no JSON value starts with any of them.
EVENT_STREAM_MARKERS = ("data:", ":", "event:", "id:", "retry:")


class StreamFormat(str, Enum):
    EVENT_STREAM = "event-stream"
    NDJSON = "ndjson"


class LineFramer(Protocol):
    format: StreamFormat

    def feed_line(self, line: str) -> List[str]: ...
    def finish(self) -> List[str]: ...


class NdjsonFramer:
    """One JSON value per non-blank line."""

    format = StreamFormat.NDJSON

    def feed_line(self, line: str) -> List[str]:
        line = line.strip()
        return [line] if line else []

    def finish(self) -> List[str]:
        return []


class EventStreamFramer:
    """
    Groups ``data:`` lines into records terminated by a blank line.

    Multiple data lines in one record are joined with a newline. Comment
    lines (leading ``:``) and other fields (``event:``, ``id:``, ``retry:``)
    are ignored.
    """

    format = StreamFormat.EVENT_STREAM

    def __init__(self):
        self._data: List[str] = []

    def feed_line(self, line: str) -> List[str]:
        if not line.strip():
            return self._dispatch()
        if line.startswith(":"):
            return []
        name, sep, value = line.partition(":")
        if name != "data":
            return []
        if sep and value.startswith(" "):
            value = value[1:]
        self._data.append(value)
        return []

    def finish(self) -> List[str]:
        return self._dispatch()

    def _dispatch(self) -> List[str]:
        if not self._data:
            return []
        payload = "\n".join(self._data)
        self._data = []
        return [payload] if payload.strip() else []


def framer_for(fmt: StreamFormat) -> LineFramer:
    if fmt == StreamFormat.EVENT_STREAM:
        return EventStreamFramer()
    return NdjsonFramer()


class FormatSniffer:
    """
    Decides the upstream format from the first non-blank text of a
    connection. The decision is made once and never revisited.
    """

    def __init__(self):
        self._format: Optional[StreamFormat] = None
        self._head = ""

    @property
    def format(self) -> Optional[StreamFormat]:
        return self._format

    @property
    def decided(self) -> bool:
        return self._format is not None

    def observe(self, fragment: str) -> Optional[StreamFormat]:
        """
        Feed the next text fragment. Returns the decided format, or None
        while the text seen so far is blank or too short to tell.
        """
        if self._format is not None:
            return self._format

        self._head = (self._head + fragment).lstrip()
        if not self._head:
            return None
        # "da" could still become "data:"
        if any(len(self._head) < len(m) and m.startswith(self._head) for m in EVENT_STREAM_MARKERS):
            return None
        if self._head.startswith(EVENT_STREAM_MARKERS):
            return self._decide(StreamFormat.EVENT_STREAM)
        return self._decide(StreamFormat.NDJSON)

    def finish(self) -> StreamFormat:
        """Force a decision at end of stream; undecided streams are treated as NDJSON."""
        if self._format is None:
            return self._decide(StreamFormat.NDJSON)
        return self._format

    def _decide(self, fmt: StreamFormat) -> StreamFormat:
        self._format = fmt
        logger.info(f"Upstream stream format detected: {fmt.value} (head: {self._head[:100]!r})")
        self._head = ""
        return fmt
