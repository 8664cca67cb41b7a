from typing import Any


class LimsError(Exception):
    """Base class for lifecycle engine errors.

    Each error carries a machine-readable ``code`` and an HTTP ``status_code`` used by the API layer.
    """

    code = "LIMS_ERROR"
    status_code = 400

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ValidationError(LimsError):
    """Malformed entity: missing required field, empty test list, protected field change."""

    code = "ValidationError"
    status_code = 422


class NotFoundError(LimsError):
    code = "NotFound"
    status_code = 404


class InvalidTransitionError(LimsError):
    """Target status not reachable from the current one, or a transition guard failed."""

    code = "InvalidTransition"
    status_code = 409


class PersistenceError(LimsError):
    """Snapshot could not be written or read. Recoverable."""

    code = "PersistenceError"
    status_code = 503
