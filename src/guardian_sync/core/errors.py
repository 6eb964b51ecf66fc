# src/guardian_sync/core/errors.py

"""
Error taxonomy shared by the server and the client.

Each class carries the HTTP status the REST layer answers with, so the
server can map exceptions to responses in one place and the HTTP client can
map responses back to the same classes.
"""

from __future__ import annotations

from typing import Any


class GuardianSyncError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message}


class ValidationError(GuardianSyncError):
    """Malformed input (bad status, bad id, bad timestamp). Never retried."""

    status_code = 400


class AlreadyExistsError(GuardianSyncError):
    """Name already taken, dependent already linked."""

    status_code = 400


class AuthenticationError(GuardianSyncError):
    status_code = 401


class AuthorizationError(GuardianSyncError):
    """Role mismatch or requester is not a party of the task."""

    status_code = 403


class NotFoundError(GuardianSyncError):
    status_code = 404


class ConflictError(GuardianSyncError):
    """
    Stale status update: the claimed lastUpdated predates the stored one.

    Recoverable only by an explicit choice: accept the authority's value,
    or reissue the update with force=True.
    """

    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        current_status: str,
        current_version: str | None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.current_status = current_status
        self.current_version = current_version
        self.task_id = task_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "currentStatus": self.current_status,
            "currentVersion": self.current_version,
        }


class ConnectivityError(GuardianSyncError):
    """Network unreachable, timeout, channel drop. Retried by the caller's loop."""

    status_code = 503


class StoreUnavailableError(GuardianSyncError):
    """Persistent store could not complete the operation."""

    status_code = 500


_BY_STATUS: dict[int, type[GuardianSyncError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
}


def error_for_status(status_code: int, body: dict[str, Any] | None) -> GuardianSyncError:
    """Rebuild a typed error from an HTTP error response."""
    body = body or {}
    message = str(body.get("message") or f"HTTP {status_code}")

    if status_code == 409:
        return ConflictError(
            message,
            current_status=str(body.get("currentStatus") or ""),
            current_version=body.get("currentVersion"),
        )
    if status_code >= 500:
        return StoreUnavailableError(message)

    cls = _BY_STATUS.get(status_code, GuardianSyncError)
    return cls(message)
