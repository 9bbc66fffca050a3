"""
Import session service.

Owns the session lifecycle:

    uploaded -> analyzing -> mapping_ready -> validating -> preview_ready
        -> awaiting_approval -> importing -> completed | failed

preview_ready and awaiting_approval loop back through validating after fixes;
any non-terminal status can move to cancelled. Illegal transitions raise
InvalidStatusTransitionError and leave the session untouched.

Sessions live in SessionStore (process memory, TTL expiry). All mutation goes
through ImportSessionService.locked(), which holds the session's own lock and
applies a pending cancellation once no stage is running.
"""

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional
import structlog

import pandas as pd

from config import settings
from exceptions import (
    FileParseError,
    ImportCancelledError,
    ImportLimitExceededError,
    ImportSessionNotFoundError,
    InvalidStatusTransitionError,
    UnmappedRequiredFieldError,
)
from models.base import PaginationParams
from models.catalog import CATALOG_FIELDS
from models.import_session import (
    ImportProgress,
    ImportRecord,
    ImportSession,
    IssueCounts,
    IssueSeverity,
    MappingListResponse,
    MappingOverride,
    PreviewRecord,
    PreviewResponse,
    SessionListResponse,
    SessionStatus,
    SessionStatusResponse,
    SessionSummary,
    SourceMeta,
    is_valid_status_transition,
)
from parsers import parse_upload
from services.field_mapper_service import FieldMapperService, get_field_mapper_service
from services.progress_broadcaster import ProgressBroadcaster, get_progress_broadcaster
from services.validation_service import group_by_record, validate_all

logger = structlog.get_logger(__name__)

PREVIEW_SOURCE_STATUSES = frozenset({
    SessionStatus.MAPPING_READY,
    SessionStatus.PREVIEW_READY,
    SessionStatus.AWAITING_APPROVAL,
})

ISSUE_EXPORT_COLUMNS = [
    "row",
    "field",
    "raw_value",
    "rule",
    "severity",
    "message",
    "suggestion",
    "auto_fix_value",
    "auto_fix_confidence",
    "ignored",
]


class SessionStore:
    """
    In-memory session registry with TTL expiry.

    The registry lock only guards the dict; each session carries its own
    lock for its contents. `on_expire` is called with each expired session
    id, outside the registry lock.
    """

    def __init__(self, ttl_minutes: Optional[int] = None, on_expire: Optional[Callable[[str], None]] = None):
        self.ttl = timedelta(minutes=ttl_minutes or settings.session_ttl_minutes)
        self.on_expire = on_expire
        self._sessions: dict[str, ImportSession] = {}
        self._lock = threading.Lock()

    def create(self, source_meta: SourceMeta) -> ImportSession:
        session = ImportSession(id=str(uuid.uuid4()), source_meta=source_meta)
        with self._lock:
            expired = self._cleanup_expired()
            self._sessions[session.id] = session
        self._notify_expired(expired)
        return session

    def get(self, session_id: str) -> ImportSession:
        """
        Raises:
            ImportSessionNotFoundError: Unknown or expired session
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and self._is_expired(session):
                del self._sessions[session_id]
                logger.info("import_session_expired", session_id=session_id)
                session = None
                expired = [session_id]
            else:
                expired = []
        self._notify_expired(expired)

        if session is None:
            raise ImportSessionNotFoundError(session_id)
        return session

    def list(self) -> list[ImportSession]:
        with self._lock:
            expired = self._cleanup_expired()
            sessions = list(self._sessions.values())
        self._notify_expired(expired)
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def _is_expired(self, session: ImportSession) -> bool:
        # A running stage keeps its session alive
        return not session.running and datetime.utcnow() - session.updated_at > self.ttl

    def _cleanup_expired(self) -> "list[str]":
        expired = [sid for sid, s in self._sessions.items() if self._is_expired(s)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("import_sessions_expired", count=len(expired))
        return expired

    def _notify_expired(self, session_ids: "list[str]") -> None:
        if self.on_expire is None:
            return
        for session_id in session_ids:
            self.on_expire(session_id)


class ImportSessionService:
    """
    Session state machine.

    Upload, mapping, preview, status and cancellation. Recovery and
    execution build on transition() and locked().
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        mapper: Optional[FieldMapperService] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
    ):
        self.store = store or SessionStore()
        self.mapper = mapper or get_field_mapper_service()
        self.broadcaster = broadcaster or get_progress_broadcaster()
        if self.store.on_expire is None:
            # Expired sessions release their progress channel
            self.store.on_expire = self.broadcaster.close

    # ===================
    # SESSION ACCESS
    # ===================

    @contextmanager
    def locked(self, session_id: str) -> Iterator[ImportSession]:
        """Hold the session lock; apply a pending cancel on the way out."""
        session = self.store.get(session_id)
        with session.lock:
            try:
                yield session
            finally:
                session.updated_at = datetime.utcnow()
                self._apply_pending_cancel(session)

    def transition(self, session: ImportSession, new_status: SessionStatus) -> None:
        """
        Move a session to a new status. Caller holds the session lock.

        Raises:
            InvalidStatusTransitionError: Transition not allowed
        """
        if not is_valid_status_transition(session.status, new_status):
            raise InvalidStatusTransitionError(session.status.value, new_status.value)

        previous = session.status
        session.status = new_status
        session.updated_at = datetime.utcnow()

        logger.info(
            "import_session_transition",
            session_id=session.id,
            from_status=previous.value,
            to_status=new_status.value
        )

        self.publish(session)
        if session.is_terminal:
            self.broadcaster.close(session.id)

    def fail(self, session: ImportSession, code: str, reason: str) -> None:
        session.failure_code = code
        session.failure_reason = reason
        logger.warning("import_session_failed", session_id=session.id, code=code, reason=reason)
        self.transition(session, SessionStatus.FAILED)

    def publish(self, session: ImportSession) -> None:
        self.broadcaster.publish(session.id, session.status, session.progress)

    def _apply_pending_cancel(self, session: ImportSession) -> None:
        if session.cancel_requested.is_set() and not session.running and not session.is_terminal:
            self.transition(session, SessionStatus.CANCELLED)

    def require_status(self, session: ImportSession, allowed: frozenset, target: SessionStatus) -> None:
        if session.status not in allowed:
            raise InvalidStatusTransitionError(
                session.status.value,
                target.value,
                reason=f"Requires status {', '.join(sorted(s.value for s in allowed))}"
            )

    # ===================
    # UPLOAD AND MAPPING
    # ===================

    def upload(self, content: bytes, filename: str, content_type: Optional[str] = None) -> ImportSession:
        """
        Create a session from an uploaded file and propose its mapping.

        Parse and limit errors do not raise: the session ends failed with
        the error code and a readable reason.
        """
        meta = SourceMeta(filename=filename, size_bytes=len(content), content_type=content_type)
        session = self.store.create(meta)

        logger.info("import_upload_started", session_id=session.id, filename=filename, size_bytes=len(content))

        with self.locked(session.id):
            self.transition(session, SessionStatus.ANALYZING)
            session.running = True

        try:
            parsed = parse_upload(
                content,
                filename,
                max_rows=settings.import_max_rows,
                max_bytes=settings.import_max_file_bytes,
                content_type=content_type,
            )
            mapping = self.mapper.propose(parsed.headers, parsed.sample(self.mapper.sample_rows))
        except (FileParseError, ImportLimitExceededError) as e:
            with self.locked(session.id):
                session.running = False
                if not session.cancel_requested.is_set():
                    self.fail(session, e.code, e.message)
            return session
        except Exception:
            with self.locked(session.id):
                session.running = False
                if not session.cancel_requested.is_set():
                    self.fail(session, "ANALYSIS_FAILED", "Unexpected error while analyzing the file")
            raise

        with self.locked(session.id):
            session.running = False
            if session.cancel_requested.is_set():
                return session

            session.source_meta = SourceMeta(
                filename=filename,
                size_bytes=len(content),
                content_type=content_type,
                file_format=parsed.file_format,
                row_count=parsed.row_count,
                warnings=parsed.warnings,
            )
            session.headers = parsed.headers
            session.mapping = mapping
            session.records = [ImportRecord(index=i, raw=row) for i, row in enumerate(parsed.rows)]
            self.mapper.project_records(session.records, mapping)
            session.progress = ImportProgress(total=len(session.records))
            self.transition(session, SessionStatus.MAPPING_READY)

        logger.info(
            "import_upload_analyzed",
            session_id=session.id,
            rows=parsed.row_count,
            columns=len(parsed.headers),
            parse_warnings=len(parsed.warnings)
        )
        return session

    def get_mappings(self, session_id: str) -> MappingListResponse:
        with self.locked(session_id) as session:
            return MappingListResponse(
                session_id=session.id,
                status=session.status,
                mappings=list(session.mapping),
                unmapped_required=self.mapper.unmapped_required(session.mapping),
                target_fields=[f.to_dict() for f in CATALOG_FIELDS],
            )

    def override_mappings(self, session_id: str, overrides: list[MappingOverride]) -> ImportSession:
        """Apply manual mappings and re-project resolved values from raw."""
        with self.locked(session_id) as session:
            self.require_status(session, frozenset({SessionStatus.MAPPING_READY}), SessionStatus.MAPPING_READY)

            session.mapping = self.mapper.apply_override(session.mapping, overrides)
            self.mapper.project_records(session.records, session.mapping)
            session.issues = {}

            logger.info(
                "import_mappings_overridden",
                session_id=session.id,
                overrides=len(overrides),
                unmapped_required=self.mapper.unmapped_required(session.mapping)
            )
            return session

    # ===================
    # PREVIEW
    # ===================

    def generate_preview(self, session_id: str) -> ImportSession:
        """
        Validate every record and build the preview.

        Raises:
            UnmappedRequiredFieldError: A required field has no column
            InvalidStatusTransitionError: Session is not ready for validation
        """
        with self.locked(session_id) as session:
            self.require_status(session, PREVIEW_SOURCE_STATUSES, SessionStatus.VALIDATING)
            missing = self.mapper.unmapped_required(session.mapping)
            if missing:
                raise UnmappedRequiredFieldError(missing)

            self.mapper.memory.learn(session.mapping)
            self.transition(session, SessionStatus.VALIDATING)
            session.running = True
            session.progress.validated = 0
            records = list(session.records)
            mapped_fields = session.mapped_fields
            excluded = set(session.skipped)

        def checkpoint(rows_done: int) -> None:
            if session.cancel_requested.is_set():
                raise ImportCancelledError(session.id)
            with session.lock:
                session.progress.validated = rows_done
                self.publish(session)

        logger.info("import_validation_started", session_id=session.id, records=len(records))

        try:
            issues = validate_all(
                records,
                mapped_fields,
                excluded=excluded,
                checkpoint=checkpoint,
                checkpoint_every=settings.validation_checkpoint_rows,
            )
        except ImportCancelledError:
            logger.info("import_validation_cancelled", session_id=session.id)
            with self.locked(session.id):
                session.running = False
            return session
        except Exception as e:
            logger.error("import_validation_failed", session_id=session.id, error=str(e))
            with self.locked(session.id):
                session.running = False
                self.fail(session, "VALIDATION_FAILED", "Unexpected error while validating records")
            raise

        with self.locked(session.id):
            session.running = False
            if session.cancel_requested.is_set():
                return session

            session.issues = group_by_record(issues)
            session.progress.validated = len(records)
            self.settle_validation(session)

        logger.info(
            "import_validation_completed",
            session_id=session.id,
            issues=len(issues),
            status=session.status.value
        )
        return session

    def settle_validation(self, session: ImportSession) -> None:
        """validating -> preview_ready, then awaiting_approval when nothing blocks."""
        session.progress.skipped = len(session.skipped)
        self.transition(session, SessionStatus.PREVIEW_READY)
        if not any(session.is_blocked(r.index) for r in session.records if r.index not in session.skipped):
            self.transition(session, SessionStatus.AWAITING_APPROVAL)

    def get_preview(
        self,
        session_id: str,
        page: int = 1,
        page_size: int = 50,
        only_issues: bool = False,
    ) -> PreviewResponse:
        """One page of records with their issues."""
        pagination = PaginationParams(page=page, page_size=page_size)

        with self.locked(session_id) as session:
            records = session.records
            if only_issues:
                records = [r for r in records if session.issues.get(r.index)]

            total = len(records)
            page_records = pagination.window(records)

            return PreviewResponse(
                session_id=session.id,
                status=session.status,
                records=[
                    PreviewRecord(
                        record_index=r.index,
                        raw=r.raw,
                        resolved=r.resolved,
                        issues=session.issues.get(r.index, []),
                        skipped=r.index in session.skipped,
                        blocked=session.is_blocked(r.index),
                    )
                    for r in page_records
                ],
                issue_counts=self.issue_counts(session),
                total=total,
                page=pagination.page,
                page_size=pagination.page_size,
                total_pages=pagination.total_pages(total),
            )

    # ===================
    # STATUS
    # ===================

    def get_status(self, session_id: str) -> SessionStatusResponse:
        with self.locked(session_id) as session:
            return self.status_response(session)

    def status_response(self, session: ImportSession) -> SessionStatusResponse:
        return SessionStatusResponse(
            session_id=session.id,
            status=session.status,
            progress=session.progress.model_copy(),
            issue_counts=self.issue_counts(session),
            failure_code=session.failure_code,
            failure_reason=session.failure_reason,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    def list_sessions(self) -> SessionListResponse:
        sessions = self.store.list()
        return SessionListResponse(
            data=[
                SessionSummary(
                    session_id=s.id,
                    status=s.status,
                    filename=s.source_meta.filename,
                    row_count=s.source_meta.row_count,
                    created_at=s.created_at,
                    updated_at=s.updated_at,
                )
                for s in sessions
            ],
            total=len(sessions),
        )

    def issue_counts(self, session: ImportSession) -> IssueCounts:
        issues = session.all_issues()
        blocked = sum(
            1 for r in session.records
            if r.index not in session.skipped and session.is_blocked(r.index)
        )
        return IssueCounts(
            errors=sum(1 for i in issues if i.blocking),
            warnings=sum(1 for i in issues if i.severity == IssueSeverity.WARNING),
            ignored=sum(1 for i in issues if i.ignored),
            auto_fixable=sum(1 for i in issues if i.auto_fix and not i.ignored),
            blocked_records=blocked,
            skipped_records=len(session.skipped),
            eligible_records=len(session.eligible_indices()),
        )

    # ===================
    # CANCEL
    # ===================

    def cancel(self, session_id: str) -> ImportSession:
        """
        Request cancellation.

        Applied immediately when no stage is running; otherwise the running
        stage stops at its next checkpoint. Never waits on a running stage.

        Raises:
            InvalidStatusTransitionError: Session already terminal
        """
        session = self.store.get(session_id)
        if session.is_terminal:
            raise InvalidStatusTransitionError(session.status.value, SessionStatus.CANCELLED.value)

        session.cancel_requested.set()
        logger.info("import_cancel_requested", session_id=session.id, status=session.status.value)

        if session.lock.acquire(blocking=False):
            try:
                self._apply_pending_cancel(session)
            finally:
                session.lock.release()
        return session

    # ===================
    # EXPORT
    # ===================

    def export_issues_csv(self, session_id: str) -> str:
        """Issue report as CSV, one row per issue, rows numbered from 1."""
        with self.locked(session_id) as session:
            rows = [
                {
                    "row": issue.record_index + 1,
                    "field": issue.field,
                    "raw_value": issue.raw_value,
                    "rule": issue.rule.value,
                    "severity": issue.severity.value,
                    "message": issue.message,
                    "suggestion": issue.suggestion,
                    "auto_fix_value": issue.auto_fix.new_value if issue.auto_fix else None,
                    "auto_fix_confidence": issue.auto_fix.confidence if issue.auto_fix else None,
                    "ignored": issue.ignored,
                }
                for issue in session.all_issues()
            ]

        logger.info("import_issues_exported", session_id=session_id, issues=len(rows))
        return pd.DataFrame(rows, columns=ISSUE_EXPORT_COLUMNS).to_csv(index=False)


# Singleton instance for convenience
_import_session_service: Optional[ImportSessionService] = None

def get_import_session_service() -> ImportSessionService:
    """Get or create ImportSessionService instance."""
    global _import_session_service
    if _import_session_service is None:
        _import_session_service = ImportSessionService()
    return _import_session_service
