"""
In-process cancellation registry.

Maps a sanitized session key to the AbortHandle of the request currently
serving it, so a cancel request handled by another task in the same
process can stop that work. Cross-process cancellation goes through the
CrossInstanceCancellationStore instead (see cancel_store.py).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from services.relay.app.errors import RequestCancelled
from services.relay.app.session import sanitize_session_key

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AbortHandle:
    """
    One-shot abort signal for a session's in-flight work.

    abort() is idempotent. Callbacks registered with add_callback run
    once, on the first abort; a callback added after the abort runs
    immediately.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self.aborted:
            self._run_callback(callback)
            return
        self._callbacks.append(callback)

    def abort(self, reason: str = "cancelled") -> bool:
        """Signal abort. Returns False if the handle was already aborted."""
        if self.aborted:
            return False
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise RequestCancelled()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless aborted first, in which case raise RequestCancelled."""
        self.raise_if_aborted()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RequestCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` but give up as soon as the handle is aborted.
        The abandoned awaitable is cancelled, which closes any socket it holds.
        """
        self.raise_if_aborted()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise RequestCancelled()

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.error(f"Abort callback failed: {e}")


@dataclass
class CancellationRecord:
    handle: AbortHandle
    active: bool = True
    registered_at: float = field(default_factory=time.time)


class CancellationRegistry:
    """
    Process-local session registry. One instance per process, created by
    the application lifespan and shared by the request handlers.
    """

    def __init__(self):
        self._records: Dict[str, CancellationRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def register(self, session_key: str, handle: AbortHandle) -> None:
        key = sanitize_session_key(session_key)
        if not key:
            logger.warning("Refusing to register a session with an empty sanitized key")
            return
        previous = self._records.get(key)
        if previous is not None and previous.handle is not handle:
            logger.warning(f"Session {key} re-registered while a previous record was still present")
        self._records[key] = CancellationRecord(handle=handle)

    def is_active(self, session_key: str) -> bool:
        record = self._records.get(sanitize_session_key(session_key))
        return bool(record and record.active)

    def cancel(self, session_key: str) -> bool:
        """
        Abort the session's handle and mark it inactive. Returns whether a
        record existed; cancelling an unknown or already-cancelled session
        is a no-op apart from the return value.
        """
        key = sanitize_session_key(session_key)
        record = self._records.get(key)
        if record is None:
            logger.info(f"No in-process session to cancel for key {key or '<empty>'}")
            return False
        if record.active:
            record.active = False
            record.handle.abort("cancelled")
            logger.info(f"Cancelled session {key}")
        return True

    def cleanup(self, session_key: str, handle: Optional[AbortHandle] = None) -> bool:
        """
        Remove the session's record. With ``handle``, only a record holding
        that handle is removed, so a finished exchange cannot drop a newer
        one that reused its key. Returns whether a record was removed.
        """
        key = sanitize_session_key(session_key)
        record = self._records.get(key)
        if record is None:
            return False
        if handle is not None and record.handle is not handle:
            return False
        del self._records[key]
        return True

    def active_sessions(self) -> List[str]:
        return [key for key, record in self._records.items() if record.active]

    def cancel_all(self) -> int:
        """Abort every active session, e.g. on process shutdown."""
        cancelled = 0
        for key in list(self._records):
            record = self._records.get(key)
            if record is not None and record.active:
                self.cancel(key)
                cancelled += 1
        return cancelled

    def cleanup_stale(self, max_age: float = 300.0) -> int:
        """Drop inactive records older than ``max_age`` seconds."""
        cutoff = time.time() - max_age
        stale = [key for key, record in self._records.items() if not record.active and record.registered_at < cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)
