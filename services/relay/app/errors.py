"""Error taxonomy for the relay and long-poll paths."""

from typing import Optional


CANCELLED_MESSAGE = "Request was cancelled"


class RelayError(Exception):
    """Base class for failures that end a single relay or poll session."""


class ConfigurationError(RelayError):
    """Upstream endpoints or credentials are not configured."""


class UpstreamConnectionError(RelayError):
    """DNS, connect, reset or read-timeout failure talking to the backend."""


class UpstreamStatusError(RelayError):
    """The backend answered with a non-success HTTP status."""

    def __init__(self, status_code: int, detail: Optional[str] = None):
        self.status_code = status_code
        self.detail = detail
        message = f"Upstream returned HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class RequestCancelled(RelayError):
    """The session was cancelled by the client. Not a failure."""

    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message)


class PollTimeout(RelayError):
    """No terminal answer arrived before the long-poll ceiling."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        minutes = timeout_seconds / 60
        if minutes == int(minutes):
            window = f"{int(minutes)} minutes"
        else:
            window = f"{timeout_seconds:g} seconds"
        super().__init__(f"Timeout: No response received within {window}")
