"""
Custom exceptions for anchor storage.

The local store and repository raise these so callers get one error
taxonomy regardless of whether SQLite or the remote store failed.
"""


class AnchorStorageError(Exception):
    """Base exception for all anchor storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RecordNotFoundError(AnchorStorageError):
    """Raised when a record is required but absent from the local store."""

    def __init__(self, table: str, record_id: str):
        super().__init__(
            f"Record not found: {table}/{record_id}",
            {"table": table, "record_id": record_id},
        )
        self.table = table
        self.record_id = record_id


class ValidationError(AnchorStorageError):
    """Raised when data validation fails."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class StorageIOError(AnchorStorageError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, table: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if table:
            details["table"] = table
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if table:
            message += f": {table}"
        super().__init__(message, details)
        self.operation = operation
        self.table = table
        self.cause = cause


class StorageConnectionError(AnchorStorageError):
    """Raised when connection to local or remote storage fails.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class AuthenticationError(AnchorStorageError):
    """Raised when authentication to remote storage fails."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        super().__init__(f"Authentication failed for {endpoint}", details)
        self.endpoint = endpoint
        self.reason = reason


class SyncError(AnchorStorageError):
    """Raised when pushing a batch to the remote store fails."""

    def __init__(
        self,
        message: str,
        table: str | None = None,
        user_id: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if table:
            details["table"] = table
        if user_id:
            details["user_id"] = user_id
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.table = table
        self.user_id = user_id
        self.cause = cause


class InvalidSessionStateError(AnchorStorageError):
    """Raised when a session is recorded from a state that cannot produce one."""

    def __init__(self, state: str, expected: str):
        super().__init__(
            f"Session machine is in state '{state}', expected '{expected}'",
            {"state": state, "expected": expected},
        )
        self.state = state
        self.expected = expected


class AuthenticationRequiredError(AnchorStorageError):
    """Raised when an identity is required but the user is signed out."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)
