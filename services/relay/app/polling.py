"""
Long-poll variant of the relay.

The question is submitted once; the backend answers with a work key which
is then polled every interval until an answer arrives, the ceiling
elapses, or the session is cancelled. Cancellation is checked three ways
on every iteration: the local abort handle, the in-process registry and
the cross-instance flag store.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from services.relay.app.cancel_store import CrossInstanceCancellationStore
from services.relay.app.cancellation import AbortHandle, CancellationRegistry
from services.relay.app.config import RelaySettings
from services.relay.app.connector import describe_error
from services.relay.app.errors import (
    ConfigurationError,
    PollTimeout,
    RelayError,
    RequestCancelled,
    UpstreamConnectionError,
    UpstreamStatusError,
)
from services.relay.app.models import AnswerPayload, QuestionRequest
from services.relay.app.session import sanitize_session_key
from services.relay.app.telemetry import span

logger = logging.getLogger(__name__)


def _response_detail(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] or None
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return None


class LongPollClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: RelaySettings,
        registry: CancellationRegistry,
        store: CrossInstanceCancellationStore,
    ):
        self._client = client
        self._settings = settings
        self._registry = registry
        self._store = store

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self._settings.upstream_api_key or "",
        }

    async def submit(self, request: QuestionRequest, *, session_key: str) -> AnswerPayload:
        """
        Submit ``request`` and wait for its answer.

        Raises RequestCancelled, PollTimeout or another RelayError. The
        session is registered for the whole exchange, including the initial
        submit. Any cancellation flag already set for the key belongs to an
        earlier exchange and is cleared first. Both cancellation views are
        cleaned up on every path unless a newer exchange has taken the key.
        """
        if not self._settings.polling_configured:
            logger.error(
                "Long-poll upstream not configured "
                f"(url={bool(self._settings.upstream_url)}, "
                f"response_url={bool(self._settings.upstream_response_url)}, "
                f"api_key={bool(self._settings.upstream_api_key)})"
            )
            raise ConfigurationError("Server configuration error")

        handle = AbortHandle()
        self._registry.register(session_key, handle)
        try:
            # A flag left by a cancel of an earlier exchange on this key does not apply
            await self._store.cleanup(session_key)
            with span("relay.poll", {"session_id": session_key}):
                key = await self._submit(request, session_key, handle)
                return await self.poll_for_response(key, request.type, session_key, handle)
        except RequestCancelled:
            logger.info(f"Long-poll session {sanitize_session_key(session_key)} cancelled")
            raise
        finally:
            if self._registry.cleanup(session_key, handle):
                await self._store.cleanup(session_key)

    async def _submit(self, request: QuestionRequest, session_key: str, handle: AbortHandle) -> str:
        body = request.model_dump(exclude_none=True)
        body["sessionkey"] = session_key
        try:
            response = await handle.guard(
                self._client.post(
                    self._settings.upstream_url,
                    json=body,
                    headers=self._headers(),
                    timeout=httpx.Timeout(self._settings.submit_timeout),
                )
            )
        except httpx.HTTPError as e:
            logger.error(f"Long-poll submit failed for session {session_key}: {describe_error(e)}")
            raise UpstreamConnectionError(describe_error(e)) from e

        if response.status_code >= 400:
            raise UpstreamStatusError(response.status_code, _response_detail(response))
        if response.status_code != 200:
            raise RelayError("Failed to initiate request processing")
        try:
            data = response.json()
        except ValueError:
            data = None
        key = data.get("key") if isinstance(data, dict) else None
        if not key:
            raise RelayError("No key received from initial request")
        logger.info(f"Long-poll session {session_key} submitted, polling key {key}")
        return str(key)

    async def poll_for_response(
        self,
        key: str,
        request_type: Optional[str],
        session_key: str,
        handle: AbortHandle,
    ) -> AnswerPayload:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.poll_timeout
        attempts = 0

        while loop.time() < deadline:
            await self._check_cancelled(session_key, handle)
            attempts += 1
            answer = await self._poll_once(key, handle)
            if answer is not None:
                logger.info(f"Long-poll session {session_key} answered after {attempts} polls")
                return AnswerPayload(message=answer.get("message"), type=request_type, sessionkey=session_key)
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await handle.sleep(min(self._settings.poll_interval, remaining))

        logger.warning(f"Long-poll session {session_key} timed out after {attempts} polls")
        raise PollTimeout(self._settings.poll_timeout)

    async def _check_cancelled(self, session_key: str, handle: AbortHandle) -> None:
        handle.raise_if_aborted()
        if await self._store.is_cancelled(session_key):
            handle.abort("cancelled")
            raise RequestCancelled()

    async def _poll_once(self, key: str, handle: AbortHandle) -> Optional[Dict[str, Any]]:
        """One poll request. Returns the answer body, or None if not ready yet."""
        try:
            response = await handle.guard(
                self._client.post(
                    self._settings.upstream_response_url,
                    json={"key": key},
                    headers=self._headers(),
                    timeout=httpx.Timeout(self._settings.poll_request_timeout),
                )
            )
        except httpx.HTTPError as e:
            raise UpstreamConnectionError(describe_error(e)) from e

        if response.status_code >= 400:
            raise UpstreamStatusError(response.status_code, _response_detail(response))
        if response.status_code != 200:
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Poll for key {key} returned a non-JSON body; retrying")
            return None
        if isinstance(data, dict):
            if data.get("state") == "processing":
                return None
            return data
        return {"message": data}
