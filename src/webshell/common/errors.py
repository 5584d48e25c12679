"""Error taxonomy shared by the orchestration layer and the API.

Client-caused errors (validation, unknown session, capacity) are answered with
an error frame. Runtime errors abort whatever operation raised them and leave
no partial state behind.
"""


class WebShellError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(WebShellError):
    """A client message failed validation. Never mutates state."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class SessionNotFound(WebShellError):
    """The session does not exist or is already terminating."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionLimitExceeded(WebShellError):
    """The user already owns the configured maximum number of sessions."""

    def __init__(self, limit: int):
        super().__init__(f"Maximum {limit} sessions exceeded")
        self.limit = limit


class HandleClosed(WebShellError):
    """Write or resize attempted after the environment's stream ended."""


class RuntimeAdapterError(WebShellError):
    """Generic failure reported by the container runtime."""


class RuntimeUnavailable(RuntimeAdapterError):
    """The container runtime API cannot be reached."""


class ResourceExhausted(RuntimeAdapterError):
    """The runtime rejected the request for lack of host capacity."""


class ProfileNotFound(RuntimeAdapterError):
    """The requested environment profile (or its image) does not exist."""


class BuildFailed(RuntimeAdapterError):
    """An image build failed; the message carries the runtime diagnostics."""
