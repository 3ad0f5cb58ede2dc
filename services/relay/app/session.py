import re
import secrets
import string
import time

MAX_SESSION_KEY_LENGTH = 100

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_]")
_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    """Return a new session id of the form ``session_{epoch_ms}_{random}``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def sanitize_session_key(session_key: str) -> str:
    """
    Reduce an untrusted session key to a storage-safe token.

    Keeps ASCII letters, digits and underscores, then truncates to
    MAX_SESSION_KEY_LENGTH. Path separators, dots and control characters
    never survive, and applying it twice yields the same result.
    """
    if not session_key:
        return ""
    return _UNSAFE_KEY_CHARS.sub("", str(session_key))[:MAX_SESSION_KEY_LENGTH]


def resolve_session_key(session_key) -> str:
    """The client's key when it survives sanitizing, otherwise a fresh id."""
    if session_key and sanitize_session_key(session_key):
        return str(session_key)
    return generate_session_id()
