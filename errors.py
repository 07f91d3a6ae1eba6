from __future__ import annotations

from typing import List, Mapping, Optional

from pydantic import ValidationError as SchemaError

GENERIC_FAILURE_MESSAGE = "Ein Fehler ist aufgetreten. Bitte versuchen Sie es später erneut."


class IntakeError(Exception):
    """Base for every failure a request handler reports to its caller.

    ``error`` is the short machine-readable label placed in the response body,
    ``message`` the human-facing text and ``error_type`` the category used in
    log lines. ``details`` carries the full list of violated rules for
    validation failures.
    """

    status_code = 500
    error_type = "internal"
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, details: Optional[List[str]] = None) -> None:
        self.message = message or GENERIC_FAILURE_MESSAGE
        self.details = list(details or [])
        super().__init__(self.message)

    def to_body(self) -> dict:
        body: dict = {"error": self.error}
        if self.details:
            body["details"] = self.details
        else:
            body["message"] = self.message
        return body


class ValidationError(IntakeError):
    status_code = 400
    error_type = "validation"
    error = "Validation failed"

    def __init__(self, details: List[str]) -> None:
        super().__init__("Validation failed", details=details)

    @classmethod
    def from_schema(cls, exc: SchemaError, messages: Mapping[str, str]) -> "ValidationError":
        """One user-facing message per violation, in field order."""
        details: List[str] = []
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"])
            message = messages.get(f"{field}:{error['type']}") or messages.get(field) or error["msg"]
            if message not in details:
                details.append(message)
        return cls(details)

    def to_body(self) -> dict:
        return {"error": self.error, "details": self.details}


class MethodNotAllowed(IntakeError):
    status_code = 405
    error_type = "method_not_allowed"
    error = "Method not allowed"

    def to_body(self) -> dict:
        return {"error": self.error}


class ConflictError(IntakeError):
    status_code = 409
    error_type = "conflict"
    error = "Already subscribed"


class UpstreamError(IntakeError):
    """An external dependency was unreachable or answered with a failure."""

    status_code = 500
    error_type = "upstream"
    error = "Internal server error"

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__()

    def __str__(self) -> str:
        return f"{self.service}: {self.reason}"


class InternalError(IntakeError):
    status_code = 500
    error_type = "internal"


__all__ = [
    "GENERIC_FAILURE_MESSAGE",
    "IntakeError",
    "ValidationError",
    "MethodNotAllowed",
    "ConflictError",
    "UpstreamError",
    "InternalError",
]
