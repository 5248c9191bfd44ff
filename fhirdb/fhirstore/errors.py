"""
Error types for resource writes.

This module defines every exception a caller of the write path can see:
- FhirStoreError: Base exception
- InvalidRequestError: Request is malformed (e.g. update without an id)
- ResourceGoneError: Identifier was deleted and cannot be reused
- VersionConflictError: Concurrent write collided on the same resource
- StoreUnavailableError: Store transport or transaction manager failed
- WriteTimeoutError: Transaction did not finish within its time bound
- WriteFailedError: Any other failure during the write

Invariants:
    - All errors inherit from FhirStoreError
    - Errors carry a stable code and the HTTP status an API layer should use
    - retriable is True only where re-running the whole call can succeed
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FhirStoreError(Exception):
    """Base exception for all write-path errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        http_status: Status code an HTTP layer should answer with
        retriable: Whether retrying the whole operation may succeed
    """

    http_status = 500
    retriable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FHIRSTORE_ERROR"
        self.details = details or {}


class InvalidRequestError(FhirStoreError):
    """Request cannot be processed as given.

    Raised when:
    - An update carries no client-supplied id
    - A resource has no resourceType
    - A bundle entry is malformed
    """

    http_status = 400

    def __init__(self, message: str, resource_type: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="INVALID_REQUEST",
            details={"resource_type": resource_type},
        )
        self.resource_type = resource_type


class ResourceGoneError(FhirStoreError):
    """Identifier was deleted earlier and cannot be reused."""

    http_status = 410

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"Resource ID {resource_id} was previously deleted and cannot be reused. "
            "Please choose a new ID.",
            code="RESOURCE_GONE",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class VersionConflictError(FhirStoreError):
    """A concurrent writer got to the same resource version first.

    Raised when:
    - The version being superseded was already archived
    - The current document changed between archive and final write
    - Another writer created the same key first
    """

    http_status = 409
    retriable = True

    def __init__(
        self,
        message: str,
        document_key: Optional[str] = None,
        version_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="VERSION_CONFLICT",
            details={"document_key": document_key, "version_id": version_id},
        )
        self.document_key = document_key
        self.version_id = version_id


class StoreUnavailableError(FhirStoreError):
    """Backing store could not be reached or refused the transaction."""

    http_status = 503
    retriable = True

    def __init__(self, message: str, code: str = "STORE_UNAVAILABLE") -> None:
        super().__init__(message, code=code)


class WriteTimeoutError(StoreUnavailableError):
    """Write transaction exceeded its time bound and was aborted."""

    http_status = 504

    def __init__(self, message: str, timeout_s: Optional[float] = None) -> None:
        super().__init__(message, code="WRITE_TIMEOUT")
        self.details["timeout_s"] = timeout_s
        self.timeout_s = timeout_s


class WriteFailedError(FhirStoreError):
    """Write failed for a reason not covered by a more specific error.

    The underlying exception is chained as __cause__.
    """

    def __init__(self, message: str, document_key: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="WRITE_FAILED",
            details={"document_key": document_key},
        )
        self.document_key = document_key
