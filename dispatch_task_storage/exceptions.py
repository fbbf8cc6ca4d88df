"""
Custom exceptions for task storage.

Local stores, the remote client and the sync engine raise these
exceptions so callers can tell retryable transport failures apart
from capacity, validation and credential problems.
"""


class TaskStorageError(Exception):
    """Base exception for all task storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StorageIOError(TaskStorageError):
    """Raised when a local storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageCapacityError(TaskStorageError):
    """Raised when a local write would exceed the store's capacity."""

    def __init__(self, key: str, size_bytes: int | None = None, quota_bytes: int | None = None):
        details: dict = {"key": key}
        if size_bytes is not None:
            details["size_bytes"] = size_bytes
        if quota_bytes is not None:
            details["quota_bytes"] = quota_bytes
        super().__init__(f"Local storage full while writing {key}", details)
        self.key = key
        self.size_bytes = size_bytes
        self.quota_bytes = quota_bytes


class StorageConnectionError(TaskStorageError):
    """Raised when the remote endpoint cannot be reached.

    Always retryable. Named StorageConnectionError to avoid shadowing
    the builtin ConnectionError.
    """

    retryable = True

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause) or type(cause).__name__
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class RemoteStoreError(TaskStorageError):
    """Raised when the remote endpoint answers with an error status."""

    def __init__(
        self,
        action: str,
        status: int,
        message: str | None = None,
        retryable: bool | None = None,
    ):
        details: dict = {"action": action, "status": status}
        if message:
            details["message"] = message
        text = f"Remote action '{action}' failed with HTTP {status}"
        if message:
            text += f": {message}"
        super().__init__(text, details)
        self.action = action
        self.status = status
        self.retryable = status >= 500 if retryable is None else retryable


class ValidationError(TaskStorageError):
    """Raised when data validation fails."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class SyncError(TaskStorageError):
    """Raised when a user-initiated synchronization fails."""

    def __init__(self, message: str, errors: list[str] | None = None, cause: Exception | None = None):
        details: dict = {}
        if errors:
            details["errors"] = list(errors)
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.errors = list(errors or [])
        self.cause = cause


class ServiceUnavailableError(TaskStorageError):
    """Raised by the service layer when no local fallback exists.

    ``user_message`` is safe to show in the UI.
    """

    def __init__(self, user_message: str, cause: Exception | None = None):
        details = {}
        if cause:
            details["cause"] = str(cause)
        super().__init__(user_message, details)
        self.user_message = user_message
        self.cause = cause


class UserNotFoundError(TaskStorageError):
    """Raised when a user is not found."""

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}", {"user_id": user_id})
        self.user_id = user_id


class TaskNotFoundError(TaskStorageError):
    """Raised when a task is not found."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", {"task_id": task_id})
        self.task_id = task_id
