"""Exception hierarchy for provtrack."""


class ProvTrackError(Exception):
    """Base class for all provtrack errors."""


class ValidationError(ProvTrackError, ValueError):
    """Malformed input to a capture or decision call. Never retried."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


class SessionError(ProvTrackError):
    def __init__(self, session_id: str, message: str):
        super().__init__(message)
        self.session_id = session_id


class SessionNotFound(SessionError, LookupError):
    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session not found: {session_id}")


class SessionExpired(SessionError):
    """The session was ended or is older than the session TTL."""

    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session expired: {session_id}")


class StorageWriteError(ProvTrackError):
    """A durable write failed. Batched writes are requeued by the flush worker."""


class IntegrityViolation(ProvTrackError):
    """Raised when a caller asks for integrity problems to be fatal."""

    def __init__(self, issues: list):
        super().__init__(f"Lineage graph has {len(issues)} integrity issue(s)")
        self.issues = issues
