from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as redis

from services.relay.app.cancellation import AbortHandle
from services.relay.app.config import RelaySettings
from services.relay.app.errors import RequestCancelled
from services.relay.app.session import sanitize_session_key

logger = logging.getLogger(__name__)


class CrossInstanceCancellationStore(Protocol):
    """
    Cancellation flags visible to every process sharing the medium.

    Only the unset -> set transition matters, so no distributed lock is
    needed. Every operation sanitizes the session key before using it as a
    storage key. Flags expire after a TTL so that flags for sessions that
    never ran cannot accumulate.
    """

    async def mark_cancelled(self, session_key: str) -> None: ...
    async def is_cancelled(self, session_key: str) -> bool: ...
    async def cleanup(self, session_key: str) -> None: ...
    async def close(self) -> None: ...
    async def adapter_info(self) -> Dict[str, Any]: ...


def _safe_key(session_key: str, operation: str) -> Optional[str]:
    key = sanitize_session_key(session_key)
    if not key:
        logger.warning(f"Cancellation store {operation} skipped: session key is empty after sanitizing")
        return None
    return key


# ---------------- InMemoryCancellationStore ----------------

class InMemoryCancellationStore:
    """Single-process store; flags are not shared with other workers."""

    def __init__(self, *, ttl_seconds: int = 600):
        self._flags: Dict[str, float] = {}
        self._ttl = ttl_seconds
        self._lock = asyncio.Lock()

    async def mark_cancelled(self, session_key: str) -> None:
        key = _safe_key(session_key, "mark")
        if key is None:
            return
        async with self._lock:
            self._flags[key] = time.time()

    async def is_cancelled(self, session_key: str) -> bool:
        key = _safe_key(session_key, "check")
        if key is None:
            return False
        async with self._lock:
            marked_at = self._flags.get(key)
            if marked_at is None:
                return False
            if self._ttl > 0 and time.time() - marked_at > self._ttl:
                del self._flags[key]
                return False
            return True

    async def cleanup(self, session_key: str) -> None:
        key = _safe_key(session_key, "cleanup")
        if key is None:
            return
        async with self._lock:
            self._flags.pop(key, None)

    async def close(self) -> None:
        return None

    async def adapter_info(self) -> Dict[str, Any]:
        return {"adapter": "memory", "details": {"flags": len(self._flags)}}


# ---------------- FileCancellationStore ----------------

class FileCancellationStore:
    """
    Flag files in a shared directory, one ``cancelled_<key>`` file per
    session. Suitable for several worker processes on one machine.
    """

    PREFIX = "cancelled_"

    def __init__(self, directory: Path, *, ttl_seconds: int = 600):
        self._dir = Path(directory)
        self._ttl = ttl_seconds

    def _path(self, key: str) -> Path:
        return self._dir / f"{self.PREFIX}{key}"

    def _ensure_dir(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)

    def _expired(self, path: Path) -> bool:
        if self._ttl <= 0:
            return False
        try:
            return time.time() - path.stat().st_mtime > self._ttl
        except FileNotFoundError:
            return True

    def _mark(self, key: str) -> None:
        self._ensure_dir()
        self._path(key).write_text(str(int(time.time() * 1000)))

    def _check(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        if self._expired(path):
            path.unlink(missing_ok=True)
            return False
        return True

    def _remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    async def mark_cancelled(self, session_key: str) -> None:
        key = _safe_key(session_key, "mark")
        if key is None:
            return
        try:
            await asyncio.to_thread(self._mark, key)
        except OSError as e:
            logger.error(f"Failed to mark session {key} as cancelled: {e}")

    async def is_cancelled(self, session_key: str) -> bool:
        key = _safe_key(session_key, "check")
        if key is None:
            return False
        try:
            return await asyncio.to_thread(self._check, key)
        except OSError as e:
            logger.error(f"Failed to check if session {key} is cancelled: {e}")
            return False

    async def cleanup(self, session_key: str) -> None:
        key = _safe_key(session_key, "cleanup")
        if key is None:
            return
        try:
            await asyncio.to_thread(self._remove, key)
        except OSError as e:
            logger.error(f"Failed to clean up session {key}: {e}")

    def _purge(self) -> int:
        if not self._dir.exists():
            return 0
        removed = 0
        for path in self._dir.glob(f"{self.PREFIX}*"):
            if self._expired(path):
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    async def purge_expired(self) -> int:
        """Delete flag files older than the TTL. Returns how many were removed."""
        return await asyncio.to_thread(self._purge)

    async def close(self) -> None:
        return None

    async def adapter_info(self) -> Dict[str, Any]:
        return {"adapter": "file", "details": {"directory": str(self._dir), "ttl_seconds": self._ttl}}


# ---------------- RedisCancellationStore ----------------

class RedisCancellationStore:
    """Redis-backed flags (``SET key ts EX ttl``) shared by any number of instances."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        client: Optional[redis.Redis] = None,
        prefix: str = "relay:cancelled",
        ttl_seconds: int = 600,
        max_retries: int = 3,
        retry_delay: float = 0.1,
    ):
        self._redis: redis.Redis = client if client is not None else redis.from_url(
            url,
            decode_responses=True,
            max_connections=10,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        self._prefix = prefix
        self._ttl = ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._closed = False

    def _k(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def _retry_operation(self, operation, *args, **kwargs):
        """Execute Redis operation with retry logic"""
        last_error = None
        for attempt in range(self._max_retries):
            try:
                return await operation(*args, **kwargs)
            except Exception as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(self._retry_delay * (2 ** attempt))
        raise last_error or RuntimeError("Operation failed")

    async def mark_cancelled(self, session_key: str) -> None:
        key = _safe_key(session_key, "mark")
        if key is None:
            return
        ex = self._ttl if self._ttl > 0 else None
        try:
            await self._retry_operation(self._redis.set, self._k(key), str(int(time.time() * 1000)), ex=ex)
        except Exception as e:
            logger.error(f"Failed to mark session {key} as cancelled in Redis: {e}")

    async def is_cancelled(self, session_key: str) -> bool:
        key = _safe_key(session_key, "check")
        if key is None:
            return False
        try:
            return bool(await self._retry_operation(self._redis.exists, self._k(key)))
        except Exception as e:
            logger.error(f"Failed to check cancellation for session {key} in Redis: {e}")
            return False

    async def cleanup(self, session_key: str) -> None:
        key = _safe_key(session_key, "cleanup")
        if key is None:
            return
        try:
            await self._retry_operation(self._redis.delete, self._k(key))
        except Exception as e:
            logger.error(f"Failed to clean up session {key} in Redis: {e}")

    async def health_check(self) -> Dict[str, Any]:
        try:
            return {"healthy": bool(await self._redis.ping())}
        except Exception as e:
            return {"healthy": False, "error": str(e)}

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._redis.aclose()

    async def adapter_info(self) -> Dict[str, Any]:
        return {
            "adapter": "redis",
            "details": {"prefix": self._prefix, "ttl_seconds": self._ttl, "health": await self.health_check()},
        }


def get_cancel_store(settings: RelaySettings) -> CrossInstanceCancellationStore:
    mode = settings.cancel_store
    if mode == "redis":
        return RedisCancellationStore(settings.redis_url, ttl_seconds=settings.cancel_flag_ttl)
    if mode == "file":
        return FileCancellationStore(settings.cancel_store_dir, ttl_seconds=settings.cancel_flag_ttl)
    if mode != "memory":
        logger.warning(f"Unknown RELAY_CANCEL_STORE={mode!r}; using in-memory cancellation store")
    return InMemoryCancellationStore(ttl_seconds=settings.cancel_flag_ttl)


async def watch_for_cancellation(
    store: CrossInstanceCancellationStore,
    session_key: str,
    handle: AbortHandle,
    interval: float,
) -> None:
    """
    Poll the shared store until the session's flag appears, then abort
    the local handle. Ends when the handle is aborted for any reason.
    """
    while not handle.aborted:
        if await store.is_cancelled(session_key):
            logger.info(f"Cancellation flag found for session {sanitize_session_key(session_key)}")
            handle.abort("cancelled")
            return
        try:
            await handle.sleep(interval)
        except RequestCancelled:
            return
