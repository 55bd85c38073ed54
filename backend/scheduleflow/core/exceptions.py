from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    internal = "internal"
    not_found = "not_found"
    configuration = "configuration"
    duplicate_name = "duplicate_name"
    transport = "transport"
    collaborator = "collaborator"
    empty_preview = "empty_preview"


class AppError(Exception):
    """Base class for all application exceptions."""

    kind: FailureKind = FailureKind.internal
    title: str = "Unexpected error"

    def __init__(self, message: str, status_code: int = 500, details: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "details": self.details,
        }


class ResourceNotFoundError(AppError):
    """Raised when a requested resource is not found."""

    kind = FailureKind.not_found
    title = "Not found"

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(f"{resource_type} with id {resource_id} not found", status_code=404)


class ConfigurationError(AppError):
    """Raised when system configuration is invalid."""

    kind = FailureKind.configuration
    title = "Configuration error"

    def __init__(self, message: str):
        super().__init__(message, status_code=500)


class CollaboratorError(AppError):
    """The remote schedules service answered with an error."""

    kind = FailureKind.collaborator
    title = "Schedule service error"

    def __init__(self, message: str, status_code: int = 502, details: dict | None = None):
        super().__init__(message, status_code=status_code, details=details)


class DuplicateScheduleNameError(CollaboratorError):
    """The remote service refused a generation or commit because the name is taken."""

    kind = FailureKind.duplicate_name
    title = "Duplicate schedule"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=409, details=details)


class CollaboratorUnavailableError(CollaboratorError):
    """The remote schedules service could not be reached."""

    kind = FailureKind.transport
    title = "Schedule service unavailable"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=503, details=details)


class EmptyPreviewError(AppError):
    """Generation reported success but returned no preview entries."""

    kind = FailureKind.empty_preview
    title = "No preview received"

    def __init__(self, message: str = "The schedule service returned no preview data", details: dict | None = None):
        super().__init__(message, status_code=422, details=details)

