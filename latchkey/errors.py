from __future__ import annotations

from typing import Optional


class LatchkeyError(Exception):
    """Base class for errors raised by the authentication core.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` so a
    transport binding can render it without inspecting the message:
    - configuration_error (500)
    - unauthorized (401)
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(LatchkeyError):
    """A required collaborator or option is missing (setup defect, never retried)."""
    status_code = 500
    error_code = "configuration_error"


class AuthenticationError(LatchkeyError):
    """No authenticated user where the transport binding requires one (401)."""
    status_code = 401
    error_code = "unauthorized"


__all__ = [
    "LatchkeyError",
    "ConfigurationError",
    "AuthenticationError",
]
