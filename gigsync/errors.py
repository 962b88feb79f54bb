"""
Typed errors raised by the record services and lifecycle rules.

The API layer turns any RecordError into a JSON error response carrying
``status_code``; the sync engine treats 4xx codes as fatal.
"""

from typing import Optional


class RecordError(Exception):
    """Base error for record operations"""
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(RecordError):
    status_code = 422


class NotFoundError(RecordError):
    status_code = 404


class NotDeletedError(NotFoundError):
    """Restore attempted on a record that is not in the trash"""

    def __init__(self, message: str = "Item is not deleted"):
        super().__init__(message)


class ConflictError(RecordError):
    """Cross-entity rule violation (e.g. mileage against a deleted trip)"""
    status_code = 409


class ForbiddenError(RecordError):
    status_code = 403


class SyncRequestError(Exception):
    """Non-2xx response received while draining the sync queue"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message

    @property
    def is_fatal(self) -> bool:
        return 400 <= self.status_code < 500
