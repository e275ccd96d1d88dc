"""Exception taxonomy for the sync protocol."""


class SyncError(Exception):
    """Base exception for a failed sync round trip."""
    pass


class TransportError(SyncError):
    """Raised for network problems: refused connections, DNS, timeouts, dropped sockets."""
    pass


class AuthenticationError(SyncError):
    """Raised when the server rejects the shared password (HTTP 401, WS close 1008)."""
    pass


class ServerError(SyncError):
    """Raised for non-2xx responses other than 401."""
    def __init__(self, status_code: int, message: str, response_data: dict | None = None):
        super().__init__(f"Server error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}


class MergeError(Exception):
    """Raised by the merge engine when the upsert transaction is rolled back."""
    pass


class ServerValidationError(Exception):
    """Raised by first-run server validation. The message is meant for the user."""
    pass
