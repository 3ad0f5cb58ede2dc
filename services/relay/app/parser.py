import json
import logging
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from services.relay.app.buffer import BufferPolicy, ChunkBuffer
from services.relay.app.framing import FormatSniffer, LineFramer, StreamFormat, framer_for
from services.relay.app.models import UpstreamChunk

logger = logging.getLogger(__name__)

_LOG_SNIPPET = 200


class UpstreamChunkParser:
    """
    Stateful parser from upstream bytes to UpstreamChunk values.

    Bytes may be split anywhere across feed() calls, including inside a
    multi-byte character or a record. Records that are not valid JSON, or
    that are JSON but not a known chunk, are logged and skipped; they never
    end the sequence.
    """

    def __init__(self, buffer: Optional[ChunkBuffer] = None, *, policy: Optional[BufferPolicy] = None):
        self.buffer = buffer if buffer is not None else ChunkBuffer(policy)
        self.sniffer = FormatSniffer()
        self._framer: Optional[LineFramer] = None
        self.malformed_records = 0
        self.ignored_records = 0

    @property
    def format(self) -> Optional[StreamFormat]:
        return self.sniffer.format

    def feed(self, data: Union[bytes, str]) -> List[UpstreamChunk]:
        text = self.buffer.append(data)
        if self._framer is None:
            fmt = self.sniffer.observe(text)
            if fmt is None:
                return []
            self._framer = framer_for(fmt)
        return self._frame(self.buffer.drain_complete_lines())

    def finish(self) -> List[UpstreamChunk]:
        """Flush the trailing partial line and any open record at end of stream."""
        if self._framer is None:
            self._framer = framer_for(self.sniffer.finish())
        lines = self.buffer.drain_complete_lines()
        remainder = self.buffer.flush_remainder()
        if remainder:
            lines.append(remainder)
        chunks = self._frame(lines)
        chunks.extend(self._decode_payloads(self._framer.finish()))
        return chunks

    async def parse(self, stream: AsyncIterable[bytes]) -> AsyncIterator[UpstreamChunk]:
        """Pull bytes from ``stream`` and yield chunks in upstream order."""
        async for data in stream:
            for chunk in self.feed(data):
                yield chunk
        for chunk in self.finish():
            yield chunk

    def _frame(self, lines: List[str]) -> List[UpstreamChunk]:
        payloads: List[str] = []
        for line in lines:
            payloads.extend(self._framer.feed_line(line))
        return self._decode_payloads(payloads)

    def _decode_payloads(self, payloads: List[str]) -> List[UpstreamChunk]:
        chunks: List[UpstreamChunk] = []
        for payload in payloads:
            try:
                record = json.loads(payload)
            except ValueError as e:
                self.malformed_records += 1
                logger.warning(f"Skipping malformed upstream record ({e}): {payload[:_LOG_SNIPPET]!r}")
                continue
            chunk = UpstreamChunk.from_record(record)
            if chunk is None:
                self.ignored_records += 1
                logger.debug(f"Ignoring upstream record without a known type: {payload[:_LOG_SNIPPET]!r}")
                continue
            chunks.append(chunk)
        return chunks
