from __future__ import annotations

from typing import Any


class PortalError(Exception):
    """Classified failure of a read or command against the consultation API.

    Gateway and invoker hand these back as values; only the HTTP surface turns
    them into responses.
    """

    code = "portal_error"
    retryable = False
    message = "The request could not be completed."

    def __init__(self, message: str | None = None, *, status_code: int | None = None, detail: Any = None) -> None:
        if message:
            self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(self.message)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class AccessDenied(PortalError):
    code = "access_denied"
    message = "You do not have permission to access this consultation."

    @property
    def reauthenticate(self) -> bool:
        return self.status_code == 401


class NotFound(PortalError):
    code = "not_found"
    message = "Resource not found."


class ValidationError(PortalError):
    code = "validation_error"
    message = "The request was rejected as invalid."


class ServerError(PortalError):
    code = "server_error"
    retryable = True
    message = "Server error. Please try again later."


class NetworkError(PortalError):
    code = "network_error"
    retryable = True
    message = "Network error. Please check your connection and try again."


class OperationInProgress(PortalError):
    code = "operation_in_progress"
    message = "Another operation on this consultation is still in progress."


def classify_status(status_code: int, message: str | None = None, *, detail: Any = None) -> PortalError:
    if status_code in {401, 403}:
        return AccessDenied(message, status_code=status_code, detail=detail)
    if status_code == 404:
        return NotFound(message, status_code=status_code, detail=detail)
    if status_code >= 500:
        return ServerError(message, status_code=status_code, detail=detail)
    return ValidationError(message, status_code=status_code, detail=detail)
