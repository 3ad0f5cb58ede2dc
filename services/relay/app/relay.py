"""
Streaming relay: upstream chunks in, client-facing events out.

RelayEmitter is a small state machine over one connection:

    start -> connecting -> (begin | chunk)* -> exactly one of complete | error

Every terminal path (explicit upstream end, natural end of stream,
transport failure, parser failure, client cancellation) goes through
finish(), which checks and sets a single completion flag. The outbound
channel is a bounded queue read by the HTTP response; the relay waits on
it only for as long as it takes to enqueue one event.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterable, AsyncIterator, Optional

from services.relay.app.cancel_store import CrossInstanceCancellationStore, watch_for_cancellation
from services.relay.app.cancellation import AbortHandle, CancellationRegistry
from services.relay.app.config import RelaySettings
from services.relay.app.connector import StreamingConnector, describe_error
from services.relay.app.context import bind_session_key
from services.relay.app.errors import RelayError
from services.relay.app.models import (
    OutboundEvent,
    OutboundEventType,
    QuestionRequest,
    UpstreamChunk,
    UpstreamChunkKind,
    content_to_text,
)
from services.relay.app.parser import UpstreamChunkParser
from services.relay.app.session import sanitize_session_key

logger = logging.getLogger(__name__)

STREAMING_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_CLOSED = object()


class OutboundChannel:
    """Bounded single-consumer queue of outbound events with idempotent close."""

    def __init__(self, maxsize: int = 64):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: OutboundEvent) -> bool:
        if self._closed:
            return False
        await self._queue.put(event)
        return True

    def close(self) -> bool:
        """Close the channel. A second close is a no-op and returns False."""
        if self._closed:
            logger.debug("Outbound channel close skipped - already closed")
            return False
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # consumer will see closed + empty after draining
            pass
        return True

    async def events(self) -> AsyncIterator[OutboundEvent]:
        while True:
            if self._closed and self._queue.empty():
                return
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def frames(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield event.to_sse()


class RelayEmitter:
    def __init__(self, channel: OutboundChannel, *, session_key: Optional[str] = None):
        self.channel = channel
        self.session_key = session_key
        self.completion_sent = False
        self.chunks_sent = 0

    async def emit(self, event_type: OutboundEventType, content: str = "") -> bool:
        """Send a non-terminal event. Dropped once a terminal event went out."""
        if self.completion_sent:
            return False
        return await self.channel.send(OutboundEvent(type=event_type, content=content))

    async def finish(self, event_type: OutboundEventType = OutboundEventType.COMPLETE, content: str = "") -> bool:
        """Send the terminal event unless one was already sent."""
        if self.completion_sent:
            logger.debug(f"Terminal {event_type.value} suppressed for session {self.session_key}: already completed")
            return False
        self.completion_sent = True
        if event_type == OutboundEventType.ERROR:
            logger.warning(f"Relay for session {self.session_key} ended with error: {content}")
        else:
            logger.info(f"Relay for session {self.session_key} completed after {self.chunks_sent} chunks")
        return await self.channel.send(OutboundEvent(type=event_type, content=content))

    def close(self) -> None:
        self.channel.close()

    async def handle_chunk(self, chunk: UpstreamChunk) -> bool:
        """Map one upstream chunk to at most one event. Returns True once terminal."""
        if chunk.kind == UpstreamChunkKind.BEGIN:
            await self.emit(OutboundEventType.BEGIN)
            return False
        if chunk.is_content:
            if not chunk.has_content or chunk.content is None:
                logger.debug(f"Skipping empty {chunk.kind.value} chunk for session {self.session_key}")
                return False
            if await self.emit(OutboundEventType.CHUNK, content_to_text(chunk.content)):
                self.chunks_sent += 1
            return False
        if chunk.is_end:
            await self.finish(OutboundEventType.COMPLETE)
            return True
        if chunk.kind == UpstreamChunkKind.ERROR:
            await self.finish(OutboundEventType.ERROR, chunk.message)
            return True
        return False

    async def relay(self, chunks: AsyncIterable[UpstreamChunk], *, abort: Optional[AbortHandle] = None) -> None:
        """Relay an already-open chunk sequence through to its terminal event, then close."""
        async with self._terminal_guard(abort):
            await self._pump(chunks)

    async def run(
        self,
        connector: StreamingConnector,
        request: QuestionRequest,
        *,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        abort: Optional[AbortHandle] = None,
    ) -> None:
        """Open the upstream connection and relay it. Never raises for upstream failures."""
        await self.emit(OutboundEventType.CONNECTING)
        async with self._terminal_guard(abort):
            async with connector.open(request, user_agent=user_agent, session_id=session_id) as upstream:
                self.session_key = upstream.session_id
                parser = UpstreamChunkParser(policy=upstream.buffer_policy)
                try:
                    await self._pump(parser.parse(upstream.aiter_bytes()))
                finally:
                    stats = parser.buffer.stats
                    if stats.truncations or parser.malformed_records:
                        logger.warning(
                            f"Session {self.session_key}: {stats.truncations} buffer truncations "
                            f"({stats.discarded_chars} chars discarded), {parser.malformed_records} malformed records"
                        )

    async def _pump(self, chunks: AsyncIterable[UpstreamChunk]) -> None:
        iterator = chunks.__aiter__()
        try:
            async for chunk in iterator:
                if await self.handle_chunk(chunk):
                    break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    @asynccontextmanager
    async def _terminal_guard(self, abort: Optional[AbortHandle]):
        try:
            yield
            if not self.completion_sent:
                logger.info(f"Upstream for session {self.session_key} ended without an explicit end signal")
            await self.finish(OutboundEventType.COMPLETE)
        except asyncio.CancelledError:
            if abort is None or not abort.aborted:
                raise
            logger.info(f"Relay for session {self.session_key} cancelled by client")
            await self.finish(OutboundEventType.COMPLETE)
        except RelayError as e:
            await self.finish(OutboundEventType.ERROR, str(e))
        except Exception as e:
            logger.exception(f"Relay failure for session {self.session_key}")
            await self.finish(OutboundEventType.ERROR, describe_error(e))
        finally:
            self.close()


class StreamingSession:
    """
    One streaming request: registers its abort handle, runs the relay in
    its own task, watches the cross-instance store for a cancel routed to
    another worker, and cleans both views up when the relay ends.
    """

    def __init__(
        self,
        connector: StreamingConnector,
        registry: CancellationRegistry,
        store: CrossInstanceCancellationStore,
        settings: RelaySettings,
        request: QuestionRequest,
        *,
        session_id: str,
        user_agent: Optional[str] = None,
    ):
        self.connector = connector
        self.registry = registry
        self.store = store
        self.settings = settings
        self.request = request
        self.session_id = session_id
        self.user_agent = user_agent
        self.channel = OutboundChannel(settings.outbound_queue_size)
        self.emitter = RelayEmitter(self.channel, session_key=session_id)
        self.abort = AbortHandle()
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> asyncio.Task:
        self.registry.register(self.session_id, self.abort)
        self._task = asyncio.create_task(self._run())
        self.abort.add_callback(self._task.cancel)
        return self._task

    async def _run(self) -> None:
        bind_session_key(sanitize_session_key(self.session_id))
        watcher = asyncio.create_task(
            watch_for_cancellation(self.store, self.session_id, self.abort, self.settings.poll_interval)
        )
        try:
            await self.emitter.run(
                self.connector,
                self.request,
                user_agent=self.user_agent,
                session_id=self.session_id,
                abort=self.abort,
            )
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
            if self.registry.cleanup(self.session_id, self.abort):
                await self.store.cleanup(self.session_id)

    async def frames(self) -> AsyncIterator[str]:
        """Response body. Starts the relay on first read and stops it if the client goes away."""
        if self._task is None:
            # A flag left by a cancel of an earlier exchange on this key does not apply
            await self.store.cleanup(self.session_id)
            self.start()
        try:
            async for frame in self.channel.frames():
                yield frame
        finally:
            if self._task is not None and not self._task.done():
                self._task.cancel()
