"""Domain error taxonomy mapped onto HTTP status codes by the app error handlers."""


class ApiError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        error = {"message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationFailed(ApiError):
    status_code = 400


class AuthenticationError(ApiError):
    status_code = 401


class AuthorizationError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    """A state precondition was not met; the message names it."""

    status_code = 409


class DuplicateKeyError(ApiError):
    status_code = 409


class AccountLockedError(ApiError):
    status_code = 423


class UpstreamError(ApiError):
    """Blockchain RPC or oracle HTTP failure carrying the upstream message."""

    status_code = 502


def form_errors(form) -> dict:
    return {name: list(messages) for name, messages in form.errors.items()}
