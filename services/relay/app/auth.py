import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import jwt
from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

AUTH_COOKIE = "auth-token"


@dataclass
class AuthState:
    is_authenticated: bool
    username: Optional[str] = None
    reason: Optional[str] = None


class AuthVerifier(Protocol):
    """Decides whether an incoming request is authenticated."""

    def verify(self, request: Request) -> AuthState: ...


class AllowAllVerifier:
    """Used when no secret is configured (local development)."""

    def verify(self, request: Request) -> AuthState:
        return AuthState(is_authenticated=True)


class JwtCookieVerifier:
    """
    Verifies an HS256 JWT carried in the ``auth-token`` cookie, or in an
    ``Authorization: Bearer`` header for non-browser callers.
    """

    def __init__(self, secret: str, algorithms: Optional[list] = None):
        self._secret = secret
        self._algorithms = algorithms or ["HS256"]

    @staticmethod
    def _token_from(request: Request) -> Optional[str]:
        token = request.cookies.get(AUTH_COOKIE)
        if token:
            return token
        header = request.headers.get("Authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:].strip() or None
        return None

    def verify(self, request: Request) -> AuthState:
        token = self._token_from(request)
        if not token:
            return AuthState(is_authenticated=False, reason="Missing token")
        try:
            payload = jwt.decode(token, self._secret, algorithms=self._algorithms)
        except jwt.ExpiredSignatureError:
            return AuthState(is_authenticated=False, reason="Token expired")
        except jwt.InvalidTokenError:
            return AuthState(is_authenticated=False, reason="Invalid token")
        return AuthState(is_authenticated=True, username=payload.get("username"))


def build_verifier(secret: Optional[str]) -> AuthVerifier:
    if not secret:
        logger.warning("JWT_SECRET is not set; question endpoints accept unauthenticated requests")
        return AllowAllVerifier()
    return JwtCookieVerifier(secret)


def require_auth(request: Request) -> AuthState:
    """FastAPI dependency: 401 unless the app's verifier accepts the request."""
    verifier: AuthVerifier = request.app.state.auth_verifier
    state = verifier.verify(request)
    if not state.is_authenticated:
        logger.info(f"Rejected unauthenticated request to {request.url.path}: {state.reason}")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return state
