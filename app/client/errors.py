from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for client sync failures"""


class ApiError(SyncError):
    """Non-2xx response from the sync server"""

    def __init__(self, status_code: int, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}


class AuthInvalidError(ApiError):
    @property
    def attempts_remaining(self) -> Optional[int]:
        return self.payload.get("attempts_remaining")


class AuthLockedError(ApiError):
    @property
    def retry_after_seconds(self) -> Optional[int]:
        return self.payload.get("retry_after_seconds")


class ProfileNotFoundError(ApiError):
    pass


class TransientNetworkError(SyncError):
    """Connection-level failure; nothing reached the server, or no answer came back"""


class SyncInProgressError(SyncError):
    pass


class NotSharedError(SyncError):
    pass


class PasswordRequiredError(SyncError):
    pass


class DecryptionError(SyncError):
    pass


def error_from_response(status_code: int, payload: Dict[str, Any]) -> ApiError:
    """Map a server error envelope onto the matching exception type."""
    message = payload.get("error") or f"Request failed ({status_code})"
    if status_code == 401:
        return AuthInvalidError(status_code, message, payload)
    if status_code == 429:
        return AuthLockedError(status_code, message, payload)
    if status_code == 404:
        return ProfileNotFoundError(status_code, message, payload)
    return ApiError(status_code, message, payload)
