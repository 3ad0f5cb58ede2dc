import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from services.relay.app import router_questions
from services.relay.app.auth import build_verifier
from services.relay.app.cancel_store import get_cancel_store
from services.relay.app.cancellation import CancellationRegistry
from services.relay.app.config import RelaySettings
from services.relay.app.connector import StreamingConnector
from services.relay.app.context import RequestContextMiddleware, add_request_context_log_filter
from services.relay.app.polling import LongPollClient
from services.relay.app.telemetry import start_telemetry, stop_telemetry

logger = logging.getLogger(__name__)


def create_app(settings: Optional[RelaySettings] = None, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """
    Build the relay app. ``settings`` defaults to the environment;
    ``http_client`` lets tests route upstream calls through a mock transport.
    """
    relay_settings = settings or RelaySettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for FastAPI app startup and shutdown"""
        # Startup
        add_request_context_log_filter()
        app.state.settings = relay_settings

        # Shared httpx.AsyncClient; per-request timeouts come from the connector/poller
        if http_client is not None:
            client = http_client
        else:
            timeout = httpx.Timeout(relay_settings.desktop_timeout, connect=relay_settings.connect_timeout)
            limits = httpx.Limits(max_keepalive_connections=20, max_connections=100, keepalive_expiry=60.0)
            client = httpx.AsyncClient(timeout=timeout, limits=limits, follow_redirects=False)
        app.state.http_client = client

        app.state.registry = CancellationRegistry()
        app.state.cancel_store = get_cancel_store(relay_settings)
        app.state.connector = StreamingConnector(client, relay_settings)
        app.state.poller = LongPollClient(client, relay_settings, app.state.registry, app.state.cancel_store)
        app.state.auth_verifier = build_verifier(relay_settings.jwt_secret)
        start_telemetry(app)

        info = await app.state.cancel_store.adapter_info()
        logger.info(
            f"Question relay started (cancel store: {info['adapter']}, "
            f"streaming configured: {relay_settings.streaming_configured}, "
            f"polling configured: {relay_settings.polling_configured})"
        )

        yield

        # Shutdown
        cancelled = app.state.registry.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight sessions on shutdown")
        await app.state.cancel_store.close()
        if http_client is None:
            await client.aclose()
        stop_telemetry()

    app = FastAPI(
        title="Question Relay",
        description="Streaming and long-poll relay to the automation backend",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Security: CORS Configuration
    origins = [
        "http://localhost:3000",  # Next.js dev server
        "http://127.0.0.1:3000",
    ]
    origins.extend(relay_settings.extra_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*", "Cache-Control", "Connection"],
        expose_headers=["X-Request-Id"],
    )

    # Security: Trusted Host Middleware
    trusted_hosts = ["localhost", "127.0.0.1", "*.localhost"]
    trusted_hosts.extend(relay_settings.trusted_hosts)

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)
    app.add_middleware(RequestContextMiddleware)

    # Security Headers Middleware
    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.get("/healthz")
    async def healthz(request: Request):
        info = await request.app.state.cancel_store.adapter_info()
        return {
            "status": "ok",
            "cancel_store": info["adapter"],
            "active_sessions": len(request.app.state.registry.active_sessions()),
        }

    @app.get("/")
    async def root():
        return {"service": "question-relay", "status": "ok"}

    app.include_router(router_questions.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(request_id)s %(session_key)s] %(name)s: %(message)s",
    )
    add_request_context_log_filter()
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
