"""
Import session schemas.

Covers the session lifecycle (status + transitions), column mappings,
validation issues, fix actions, progress counters and the API payloads built
from them.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from models.base import BaseSchema


class SessionStatus(str, Enum):
    """Import session lifecycle states."""
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    MAPPING_READY = "mapping_ready"
    VALIDATING = "validating"
    PREVIEW_READY = "preview_ready"
    AWAITING_APPROVAL = "awaiting_approval"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
})

# Cancellation is legal from every non-terminal state and is added below.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.UPLOADED: frozenset({SessionStatus.ANALYZING, SessionStatus.FAILED}),
    SessionStatus.ANALYZING: frozenset({SessionStatus.MAPPING_READY, SessionStatus.FAILED}),
    SessionStatus.MAPPING_READY: frozenset({SessionStatus.VALIDATING}),
    SessionStatus.VALIDATING: frozenset({SessionStatus.PREVIEW_READY, SessionStatus.FAILED}),
    SessionStatus.PREVIEW_READY: frozenset({SessionStatus.AWAITING_APPROVAL, SessionStatus.VALIDATING}),
    SessionStatus.AWAITING_APPROVAL: frozenset({SessionStatus.IMPORTING, SessionStatus.VALIDATING}),
    SessionStatus.IMPORTING: frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def is_valid_status_transition(current: SessionStatus, new: SessionStatus) -> bool:
    """
    Check if a session status transition is valid.

    Rules:
    - The linear flow only moves forward
    - preview_ready/awaiting_approval may loop back to validating
    - Any non-terminal status may move to cancelled
    - completed, failed and cancelled are terminal
    """
    if current in TERMINAL_STATUSES:
        return False
    if new == SessionStatus.CANCELLED:
        return True
    return new in ALLOWED_TRANSITIONS[current]


class MappingMethod(str, Enum):
    """How a column mapping was produced."""
    EXACT = "exact"
    HEURISTIC = "heuristic"
    SUGGESTED = "suggested"
    LEARNED = "learned"
    MANUAL = "manual"


class TemplateFormat(str, Enum):
    """Downloadable import template formats."""
    CSV = "csv"
    XLSX = "xlsx"
    JSON = "json"


class IssueSeverity(str, Enum):
    """Validation issue severity. Only errors block import."""
    ERROR = "error"
    WARNING = "warning"


class IssueRule(str, Enum):
    """Validation rules, in the order the engine applies them."""
    REQUIRED = "required"
    TYPE = "type"
    FORMAT = "format"
    RANGE = "range"
    UNIQUE = "unique"


RULE_ORDER = {rule: i for i, rule in enumerate(IssueRule)}


class FixOrigin(str, Enum):
    """Where a fix action came from."""
    MANUAL = "manual"
    AUTO = "auto"
    SKIP = "skip"


# ===================
# CORE SCHEMAS
# ===================

class FieldMapping(BaseModel):
    """Assignment of one uploaded column to a catalog field."""

    source_column: str = Field(..., description="Column header in the uploaded file")
    target_field: Optional[str] = Field(None, description="Catalog field, or None when ignored")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Mapping confidence 0-1")
    method: Optional[MappingMethod] = Field(None, description="How the mapping was produced")

    @property
    def is_mapped(self) -> bool:
        return self.target_field is not None


class AutoFix(BaseModel):
    """Deterministic repair suggested for an issue."""

    action: str = Field(..., description="Short description of the repair")
    new_value: Any = Field(None, description="Value the field would take")
    confidence: float = Field(..., ge=0.0, le=1.0, description="How certain the repair is")


class ValidationIssue(BaseModel):
    """A single rule violation on one field of one record."""

    record_index: int = Field(..., ge=0)
    field: str
    raw_value: Optional[str] = None
    rule: IssueRule
    severity: IssueSeverity
    message: str
    suggestion: Optional[str] = None
    auto_fix: Optional[AutoFix] = None
    ignored: bool = Field(default=False, description="Set when the record was skipped")

    @property
    def blocking(self) -> bool:
        """True for error issues that have not been skipped."""
        return self.severity == IssueSeverity.ERROR and not self.ignored


class FixAction(BaseSchema):
    """One requested change to a resolved record value."""

    record_index: int = Field(..., ge=0)
    field: Optional[str] = Field(None, description="Target field (unused for skip)")
    new_value: Any = None
    origin: FixOrigin = FixOrigin.MANUAL


class ImportProgress(BaseModel):
    """Session counters. Execution counters only ever grow during a run."""

    total: int = Field(default=0, ge=0)
    validated: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)


class ParseWarning(BaseModel):
    """Non-fatal anomaly found while parsing."""

    row: Optional[int] = Field(None, description="1-based data row, None for file-level warnings")
    message: str


class SourceMeta(BaseModel):
    """Facts about the uploaded file."""

    filename: str
    size_bytes: int = Field(..., ge=0)
    content_type: Optional[str] = None
    file_format: Optional[str] = None
    row_count: int = Field(default=0, ge=0)
    warnings: list[ParseWarning] = Field(default_factory=list)


class RecordResult(BaseModel):
    """Commit outcome for one record."""

    record_index: int
    status: Literal["succeeded", "failed", "skipped"]
    error: Optional[str] = None


@dataclass
class ImportRecord:
    """Raw values as uploaded plus the resolved values after mapping and fixes."""
    index: int
    raw: dict[str, Optional[str]]
    resolved: dict[str, Optional[str]] = field(default_factory=dict)


@dataclass
class ImportSession:
    """
    One bounded import attempt.

    Only reachable through SessionStore; `lock` serializes writers and
    `cancel_requested` is the cooperative cancellation flag.
    """
    id: str
    source_meta: SourceMeta
    status: SessionStatus = SessionStatus.UPLOADED
    headers: list[str] = field(default_factory=list)
    mapping: list[FieldMapping] = field(default_factory=list)
    records: list[ImportRecord] = field(default_factory=list)
    issues: dict[int, list[ValidationIssue]] = field(default_factory=dict)
    skipped: set[int] = field(default_factory=set)
    progress: ImportProgress = field(default_factory=ImportProgress)
    results: list[RecordResult] = field(default_factory=list)
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    running: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    cancel_requested: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def mapped_fields(self) -> list[str]:
        """Target fields in mapping order."""
        return [m.target_field for m in self.mapping if m.target_field]

    def all_issues(self) -> list[ValidationIssue]:
        """Flatten issues in record order."""
        return [issue for index in sorted(self.issues) for issue in self.issues[index]]

    def is_blocked(self, record_index: int) -> bool:
        return any(issue.blocking for issue in self.issues.get(record_index, []))

    def eligible_indices(self) -> list[int]:
        """Records that may be committed: not skipped and not blocked."""
        return [
            r.index for r in self.records
            if r.index not in self.skipped and not self.is_blocked(r.index)
        ]


# ===================
# API SCHEMAS
# ===================

class IssueCounts(BaseModel):
    """Issue and record tallies for a session."""

    errors: int = 0
    warnings: int = 0
    ignored: int = 0
    auto_fixable: int = 0
    blocked_records: int = 0
    skipped_records: int = 0
    eligible_records: int = 0


class SessionStatusResponse(BaseModel):
    """Pull-based status, also used by reconnecting listeners."""

    session_id: str
    status: SessionStatus
    progress: ImportProgress
    issue_counts: IssueCounts
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SessionSummary(BaseModel):
    """Row of the session list."""

    session_id: str
    status: SessionStatus
    filename: str
    row_count: int
    created_at: datetime
    updated_at: datetime


class SessionListResponse(BaseModel):
    data: list[SessionSummary]
    total: int


class UploadResponse(BaseModel):
    """Result of upload: the session and its proposed mapping."""

    session_id: str
    status: SessionStatus
    source_meta: SourceMeta
    mappings: list[FieldMapping] = Field(default_factory=list)
    unmapped_required: list[str] = Field(default_factory=list)
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None


class MappingListResponse(BaseModel):
    session_id: str
    status: SessionStatus
    mappings: list[FieldMapping]
    unmapped_required: list[str]
    target_fields: list[dict]


class MappingOverride(BaseSchema):
    source_column: str = Field(..., min_length=1)
    target_field: Optional[str] = None


class MappingOverrideRequest(BaseSchema):
    mappings: list[MappingOverride] = Field(..., min_length=1)


class PreviewRecord(BaseModel):
    record_index: int
    raw: dict[str, Optional[str]]
    resolved: dict[str, Optional[str]]
    issues: list[ValidationIssue]
    skipped: bool = False
    blocked: bool = False


class PreviewResponse(BaseModel):
    session_id: str
    status: SessionStatus
    records: list[PreviewRecord]
    issue_counts: IssueCounts
    total: int
    page: int
    page_size: int
    total_pages: int


class FixRequest(BaseSchema):
    record_index: int = Field(..., ge=0)
    field: str = Field(..., min_length=1)
    new_value: Any = None


class AutoFixRequest(BaseSchema):
    record_index: int = Field(..., ge=0)
    field: str = Field(..., min_length=1)


class AutoFixAllRequest(BaseSchema):
    min_confidence: float = Field(default=0.9, ge=0.0, le=1.0)


class BulkFixRequest(BaseSchema):
    actions: list[FixAction] = Field(..., min_length=1)


class FixActionResult(BaseModel):
    record_index: int
    field: Optional[str] = None
    success: bool
    error_code: Optional[str] = None
    message: Optional[str] = None


class FixResponse(BaseModel):
    session_id: str
    status: SessionStatus
    issue_counts: IssueCounts
    results: list[FixActionResult] = Field(default_factory=list)


class AutoFixSummary(BaseModel):
    """How many open issues can be repaired automatically."""

    session_id: str
    total_issues: int
    auto_fixable: int
    manual_required: int
    threshold: float


class ExecuteResponse(BaseModel):
    session_id: str
    status: SessionStatus
    message: str


class ProgressMessage(BaseModel):
    """Compact push message sent to listeners."""

    session_id: str
    status: SessionStatus
    progress: ImportProgress
