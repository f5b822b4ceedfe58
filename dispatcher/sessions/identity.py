"""Session key derivation and safety checks.

A session key names one conversation thread. It is recomputed by the
dispatcher on every inbound event and by the worker from its environment,
so derivation must be a pure function of the thread coordinates.
"""

import re

from dispatcher.core.exceptions import InvalidSessionKeyError

MAX_SESSION_KEY_LENGTH = 128

_ALLOWED = re.compile(r"^[A-Za-z0-9._-]+$")
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")


def validate_session_key(key: str) -> str:
    """Return key unchanged if it is safe to use as a storage path segment."""
    if not key or not key.strip():
        raise InvalidSessionKeyError(key or "", "empty")
    if len(key) > MAX_SESSION_KEY_LENGTH:
        raise InvalidSessionKeyError(key, f"longer than {MAX_SESSION_KEY_LENGTH} characters")
    if _CONTROL.search(key):
        raise InvalidSessionKeyError(key, "contains control characters")
    if "/" in key or "\\" in key:
        raise InvalidSessionKeyError(key, "contains a path separator")
    if ".." in key:
        raise InvalidSessionKeyError(key, "contains '..'")
    if not _ALLOWED.match(key):
        raise InvalidSessionKeyError(key, "contains characters outside [A-Za-z0-9._-]")
    return key


def resolve_session_key(channel_id: str, thread_anchor: str | None, message_ts: str) -> str:
    """Derive the session key for a message.

    Replies share the key of their thread root; a top-level message starts a
    thread anchored on its own timestamp, so its key equals the one every
    later reply will compute.

    Raises:
        InvalidSessionKeyError: If the coordinates produce an unsafe key.
    """
    anchor = thread_anchor or message_ts
    if not channel_id or not anchor:
        raise InvalidSessionKeyError(f"{channel_id}-{anchor}", "missing channel or anchor")
    return validate_session_key(f"{channel_id}-{anchor}")
