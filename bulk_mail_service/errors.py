"""Exception hierarchy shared by the pipeline and the HTTP layer."""

from __future__ import annotations


class BulkMailError(RuntimeError):
    """Base class for errors raised by the delivery pipeline."""

    code = "bulk_mail_error"

    def __init__(self, message: str = "Bulk mail error"):
        super().__init__(message)


class ValidationError(BulkMailError):
    """Raised when a request is rejected before anything is persisted."""

    code = "invalid_request"


class NotFoundError(BulkMailError):
    """Raised when a job or delivery record id does not exist."""

    code = "not_found"


class InvalidTransition(BulkMailError):
    """Raised when a delivery status change is not allowed by the state graph."""

    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move delivery record from '{current}' to '{target}'")
        self.current = current
        self.target = target


class StorageError(BulkMailError):
    """Raised when a write the caller depends on could not be stored."""

    code = "storage_error"


class TransportError(BulkMailError):
    """Raised by a mail transport when a single recipient could not be sent."""

    code = "transport_error"
