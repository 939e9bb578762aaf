"""DNC error taxonomy.

Every error carries a machine-readable code and the HTTP status the API
layer answers with. Services raise these; `app.error_handlers` renders them.
"""

from typing import Any

from fastapi import status


class DNCError(Exception):
    """Base exception for DNC compliance operations."""

    code = "DNC_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: dict[str, Any] | list[Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


class InvalidFormat(DNCError):
    """Input is not a valid North American phone number."""

    code = "INVALID_FORMAT"


class ValidationFailed(DNCError):
    """Request fields failed validation."""

    code = "VALIDATION_ERROR"


class DuplicateEntry(DNCError):
    code = "DUPLICATE_ENTRY"
    status_code = status.HTTP_409_CONFLICT


class UnsupportedMediaType(DNCError):
    code = "UNSUPPORTED_MEDIA_TYPE"
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


class FileTooLarge(DNCError):
    code = "FILE_TOO_LARGE"
    status_code = status.HTTP_413_CONTENT_TOO_LARGE


class BatchTooLarge(DNCError):
    code = "BATCH_TOO_LARGE"


class BatchAbandoned(DNCError):
    """An upload batch was finalized by the stale-batch sweep while still running."""

    code = "BATCH_ABANDONED"
    status_code = status.HTTP_409_CONFLICT


class NotFound(DNCError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class StoreUnavailable(DNCError):
    """The registry store could not be reached or failed mid-operation."""

    code = "STORE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
