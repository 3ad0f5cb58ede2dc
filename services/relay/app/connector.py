"""
Upstream connection for the streaming relay.

Builds the automation-backend request, picks the timeout tier and buffer
ceilings from the client class, and exposes the raw response bytes.
Transport and status failures are raised as RelayError subclasses; the
relay turns them into a terminal error event.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from services.relay.app.buffer import BufferPolicy
from services.relay.app.config import RelaySettings
from services.relay.app.errors import ConfigurationError, UpstreamConnectionError, UpstreamStatusError
from services.relay.app.models import QuestionRequest, UpstreamMetadata, UpstreamRequest
from services.relay.app.session import generate_session_id
from services.relay.app.telemetry import span

logger = logging.getLogger(__name__)

MOBILE_USER_AGENT = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)


class ClientClass(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"


def detect_client_class(user_agent: Optional[str]) -> ClientClass:
    """
    Classify the client from its User-Agent. This is a tuning hint only:
    it selects which configured timeout and buffer values apply.
    """
    if user_agent and MOBILE_USER_AGENT.search(user_agent):
        return ClientClass.MOBILE
    return ClientClass.DESKTOP


def describe_error(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


@dataclass
class UpstreamStream:
    response: httpx.Response
    session_id: str
    client_class: ClientClass
    buffer_policy: BufferPolicy

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for data in self.response.aiter_bytes():
                if data:
                    yield data
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise UpstreamConnectionError(describe_error(e)) from e


class StreamingConnector:
    """Opens streaming requests against the automation backend. One per process."""

    def __init__(self, client: httpx.AsyncClient, settings: RelaySettings):
        self._client = client
        self._settings = settings

    def timeout_for(self, client_class: ClientClass) -> httpx.Timeout:
        tier = self._settings.mobile_timeout if client_class == ClientClass.MOBILE else self._settings.desktop_timeout
        return httpx.Timeout(tier, connect=self._settings.connect_timeout)

    def buffer_policy_for(self, client_class: ClientClass) -> BufferPolicy:
        if client_class == ClientClass.MOBILE:
            return BufferPolicy(self._settings.mobile_soft_ceiling, self._settings.mobile_hard_ceiling)
        return BufferPolicy(self._settings.desktop_soft_ceiling, self._settings.desktop_hard_ceiling)

    def build_payload(self, request: QuestionRequest, session_id: str) -> Dict[str, Any]:
        agent_models = None
        if request.agentModels:
            agent_models = [m.model_dump(exclude_none=True) for m in request.agentModels]
        upstream = UpstreamRequest(
            sessionId=session_id,
            chatInput=request.question or "",
            metadata=UpstreamMetadata(
                type=request.type or "",
                aiModel=request.aiModel or "",
                agentModels=agent_models,
                file=request.file,
                searching=bool(request.searching),
            ),
        )
        return upstream.model_dump(exclude_none=True)

    def build_headers(self, client_class: ClientClass) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self._settings.upstream_api_key or "",
            "Accept": "text/event-stream",
            "X-Client-Type": client_class.value,
        }

    @asynccontextmanager
    async def open(
        self,
        request: QuestionRequest,
        *,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[UpstreamStream]:
        if not self._settings.streaming_configured:
            raise ConfigurationError("Server configuration error")

        client_class = detect_client_class(user_agent)
        session_id = session_id or request.sessionkey or generate_session_id()
        payload = self.build_payload(request, session_id)
        upstream_req = self._client.build_request(
            "POST",
            self._settings.upstream_url,
            json=payload,
            headers=self.build_headers(client_class),
            timeout=self.timeout_for(client_class),
        )

        logger.info(f"Opening upstream stream for session {session_id} ({client_class.value} client)")
        with span("relay.upstream.open", {"session_id": session_id, "client_class": client_class.value}):
            try:
                response = await self._client.send(upstream_req, stream=True)
            except httpx.HTTPError as e:
                logger.error(f"Upstream connection failed for session {session_id}: {describe_error(e)}")
                raise UpstreamConnectionError(describe_error(e)) from e

        try:
            if response.status_code >= 400:
                detail = await self._read_error_detail(response)
                logger.error(f"Upstream rejected session {session_id} with HTTP {response.status_code}: {detail}")
                raise UpstreamStatusError(response.status_code, detail)
            yield UpstreamStream(
                response=response,
                session_id=session_id,
                client_class=client_class,
                buffer_policy=self.buffer_policy_for(client_class),
            )
        finally:
            await response.aclose()

    @staticmethod
    async def _read_error_detail(response: httpx.Response) -> Optional[str]:
        try:
            body = await response.aread()
        except (httpx.HTTPError, httpx.StreamError):
            return None
        text = body.decode("utf-8", errors="ignore").strip()
        if not text:
            return None
        try:
            data = response.json()
        except ValueError:
            return text[:200]
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
        return text[:200]
