class DispatcherError(Exception):
    """Base exception for the dispatcher."""

    pass


class InvalidSessionKeyError(DispatcherError, ValueError):
    """Raised when a session key is unsafe to use as a storage path segment."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid session key {key[:64]!r}: {reason}")


class AdmissionDenied(DispatcherError):
    """Raised when a requester has exhausted their rate-limit window."""

    def __init__(self, requester_id: str, limit: int, window_seconds: int, retry_after_seconds: int):
        self.requester_id = requester_id
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Rate limit exceeded for user {requester_id}. "
            f"Maximum {limit} jobs per {window_seconds // 60} minutes"
        )


class OrchestratorError(DispatcherError):
    """Raised when a cluster Job operation fails."""

    def __init__(self, operation: str, message: str, job_name: str | None = None, namespace: str | None = None):
        self.operation = operation
        self.job_name = job_name
        self.namespace = namespace
        super().__init__(message)


class PersistenceError(DispatcherError):
    """Raised when blob storage operations fail."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(message)


class CredentialError(DispatcherError):
    """Raised when the bot credential cannot be refreshed."""

    pass


class RecoveryNotFound(DispatcherError):
    """Raised when no persisted state exists for a session being recovered."""

    def __init__(self, session_key: str):
        self.session_key = session_key
        super().__init__(f"No persisted state for session {session_key}")


class RepositoryError(DispatcherError):
    """Raised when a user repository cannot be provisioned."""

    def __init__(self, username: str, message: str):
        self.username = username
        super().__init__(message)
