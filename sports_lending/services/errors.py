from __future__ import annotations

from typing import Any


class LendingError(RuntimeError):
    status_code = 400

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None, headers: dict[str, str] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors
        self.headers = headers


class InputValidationError(LendingError):
    status_code = 400


class AuthenticationError(LendingError):
    status_code = 401


class AuthorizationError(LendingError):
    status_code = 403


class NotFoundError(LendingError):
    status_code = 404


class BusinessRuleViolation(LendingError):
    status_code = 400


class UploadError(LendingError):
    status_code = 400


class LoginThrottled(LendingError):
    status_code = 429

    def __init__(self, retry_after: int):
        super().__init__(
            "Too many attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after
