"""
Custom exceptions for inventory sync.

The store, the hub and the sync agent raise these exceptions
so callers can tell I/O failures from bad input and auth failures.
"""


class InventorySyncError(Exception):
    """Base exception for all inventory sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StoreIOError(InventorySyncError):
    """Raised when a store I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Store I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StoreTimeoutError(InventorySyncError):
    """Raised when a store operation does not finish within the allowed time."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"Store operation {operation} timed out after {timeout}s",
            {"operation": operation, "timeout": timeout},
        )
        self.operation = operation
        self.timeout = timeout


class RecordValidationError(InventorySyncError):
    """Raised when an inventory item or promo payload is invalid."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class EnvelopeError(InventorySyncError):
    """Raised when a realtime message envelope is malformed or rejected."""

    def __init__(self, reason: str, message_type: str | None = None):
        details = {"reason": reason}
        if message_type:
            details["type"] = message_type
        super().__init__(f"Invalid envelope: {reason}", details)
        self.reason = reason
        self.message_type = message_type


class AuthenticationError(InventorySyncError):
    """Raised when an auth handshake or token check fails."""

    def __init__(self, reason: str, user_id: str | None = None):
        details = {"reason": reason}
        if user_id:
            details["user_id"] = user_id
        super().__init__(f"Authentication failed: {reason}", details)
        self.reason = reason
        self.user_id = user_id


class HubConnectionError(InventorySyncError):
    """Raised when the sync agent cannot reach the hub.

    Note: Named HubConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class HubRequestError(HubConnectionError):
    """Raised when the hub answers an HTTP request with an error status."""

    def __init__(self, endpoint: str, status: int, reason: str | None = None):
        super().__init__(endpoint)
        self.message = f"Hub returned {status} for {endpoint}"
        self.args = (self.message,)
        self.details["status"] = status
        if reason:
            self.details["reason"] = reason
        self.status = status
        self.reason = reason


class ConnectionLimitError(InventorySyncError):
    """Raised when the hub refuses a new connection (capacity or rate limit)."""

    def __init__(self, remote: str | None, reason: str):
        details = {"reason": reason}
        if remote:
            details["remote"] = remote
        super().__init__(f"Connection refused: {reason}", details)
        self.remote = remote
        self.reason = reason
