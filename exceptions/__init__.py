"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ConflictError,
    ExternalServiceError,

    # Sessions
    ImportSessionNotFoundError,
    InvalidStatusTransitionError,
    ImportCancelledError,

    # Parser
    FileParseError,
    ImportLimitExceededError,

    # Mapping
    UnmappedRequiredFieldError,
    DuplicateTargetMappingError,
    UnknownTargetFieldError,

    # Recovery
    RecordNotFoundError,
    FieldNotMappedError,
    NoAutoFixError,

    # External services
    SuggestionServiceError,
    CatalogStoreError,
    CatalogStoreUnavailableError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "ExternalServiceError",

    # Sessions
    "ImportSessionNotFoundError",
    "InvalidStatusTransitionError",
    "ImportCancelledError",

    # Parser
    "FileParseError",
    "ImportLimitExceededError",

    # Mapping
    "UnmappedRequiredFieldError",
    "DuplicateTargetMappingError",
    "UnknownTargetFieldError",

    # Recovery
    "RecordNotFoundError",
    "FieldNotMappedError",
    "NoAutoFixError",

    # External services
    "SuggestionServiceError",
    "CatalogStoreError",
    "CatalogStoreUnavailableError",
]
