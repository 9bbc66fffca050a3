"""
Pydantic models for validation and serialization.
"""

from models.base import (
    BaseSchema,
    PaginationParams,
)
from models.catalog import (
    FieldType,
    CatalogField,
    CATALOG_FIELDS,
    get_field,
    required_fields,
)
from models.import_session import (
    SessionStatus,
    MappingMethod,
    IssueSeverity,
    IssueRule,
    FixOrigin,
    FieldMapping,
    AutoFix,
    ValidationIssue,
    FixAction,
    ImportProgress,
    SourceMeta,
    ImportRecord,
    ImportSession,
    is_valid_status_transition,
)

__all__ = [
    # Base
    "BaseSchema",
    "PaginationParams",

    # Catalog
    "FieldType",
    "CatalogField",
    "CATALOG_FIELDS",
    "get_field",
    "required_fields",

    # Import session
    "SessionStatus",
    "MappingMethod",
    "IssueSeverity",
    "IssueRule",
    "FixOrigin",
    "FieldMapping",
    "AutoFix",
    "ValidationIssue",
    "FixAction",
    "ImportProgress",
    "SourceMeta",
    "ImportRecord",
    "ImportSession",
    "is_valid_status_transition",
]
