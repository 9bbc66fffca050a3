"""
Custom exception classes for the application.

Every error raised across the import pipeline derives from AppError so routes
can turn it into the standard error envelope.
"""

from typing import Optional, Any
from datetime import datetime


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "IMPORT_SESSION_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with existing resource or state (409)."""

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


# ===================
# SESSION ERRORS
# ===================

class ImportSessionNotFoundError(NotFoundError):
    """Import session not found or expired."""

    def __init__(self, session_id: str):
        super().__init__(
            resource="Import session",
            identifier=session_id,
            code="IMPORT_SESSION_NOT_FOUND"
        )


class InvalidStatusTransitionError(ConflictError):
    """Requested session transition is not allowed from the current status."""

    def __init__(self, current_status: str, new_status: str, reason: Optional[str] = None):
        super().__init__(
            code="INVALID_STATUS_TRANSITION",
            message=f"Cannot transition from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "new_status": new_status,
                "reason": reason or "Sessions only move forward or to cancelled",
            }
        )


class ImportCancelledError(AppError):
    """Raised at a checkpoint once cancellation has been requested."""

    def __init__(self, session_id: str):
        super().__init__(
            code="IMPORT_CANCELLED",
            message="Import session was cancelled",
            status_code=409,
            details={"session_id": session_id}
        )


# ===================
# PARSER ERRORS
# ===================

class FileParseError(ValidationError):
    """Uploaded file cannot be read as tabular data."""

    def __init__(
        self,
        message: str,
        code: str = "FILE_UNREADABLE",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            details=details
        )


class ImportLimitExceededError(ValidationError):
    """Upload exceeds a configured size or row ceiling."""

    def __init__(self, code: str, limit: int, actual: int):
        what = "bytes" if code == "FILE_TOO_LARGE" else "rows"
        super().__init__(
            code=code,
            message=f"File exceeds the limit of {limit} {what} ({actual} found)",
            details={"limit": limit, "actual": actual}
        )


# ===================
# MAPPING ERRORS
# ===================

class UnmappedRequiredFieldError(ValidationError):
    """Required target fields have no source column."""

    def __init__(self, fields: list[str]):
        super().__init__(
            code="UNMAPPED_REQUIRED_FIELDS",
            message=f"Required fields are not mapped: {', '.join(fields)}",
            details={"fields": fields}
        )


class DuplicateTargetMappingError(ConflictError):
    """Two source columns were mapped to the same target field."""

    def __init__(self, target_field: str, source_columns: list[str]):
        super().__init__(
            code="DUPLICATE_TARGET_MAPPING",
            message=f"Target field '{target_field}' is mapped more than once",
            details={"target_field": target_field, "source_columns": source_columns}
        )


class UnknownTargetFieldError(ValidationError):
    """Mapping refers to a field the catalog does not have."""

    def __init__(self, target_field: str):
        super().__init__(
            code="UNKNOWN_TARGET_FIELD",
            message=f"Unknown target field: {target_field}",
            details={"target_field": target_field}
        )


# ===================
# RECOVERY ERRORS
# ===================

class RecordNotFoundError(NotFoundError):
    """Record index outside the session's record set."""

    def __init__(self, record_index: int):
        super().__init__(
            resource="Import record",
            identifier=str(record_index),
            code="IMPORT_RECORD_NOT_FOUND"
        )


class FieldNotMappedError(ValidationError):
    """Fix targets a field that is not part of the mapping."""

    def __init__(self, field: str):
        super().__init__(
            code="FIELD_NOT_MAPPED",
            message=f"Field '{field}' is not mapped in this session",
            details={"field": field}
        )


class NoAutoFixError(ValidationError):
    """No issue on the cell carries an auto-fix."""

    def __init__(self, record_index: int, field: str):
        super().__init__(
            code="NO_AUTO_FIX",
            message="No auto-fix is available for this field",
            details={"record_index": record_index, "field": field}
        )


# ===================
# EXTERNAL SERVICE ERRORS
# ===================

class SuggestionServiceError(ExternalServiceError):
    """Mapping suggestion service failed or timed out."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            service="suggestion_service",
            message=message,
            details=details
        )


class CatalogStoreError(ExternalServiceError):
    """Catalog store rejected or failed a write."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            service="catalog_store",
            message=message,
            details=details
        )


class CatalogStoreUnavailableError(CatalogStoreError):
    """Catalog store cannot be reached at all."""

    def __init__(self, message: str = "Catalog store is unavailable"):
        super().__init__(message=message, details={"unavailable": True})
