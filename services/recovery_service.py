"""
Recovery service.

Lets the user repair records between preview and execution:
- fix_single / fix_bulk: set resolved values by hand
- apply_auto_fix / auto_fix_all: apply the repairs the validation engine proposed
- skip: exclude a record from the import

Every mutation loops the session through validating, re-validates only the
touched cells (plus batch-wide uniqueness of touched unique fields) and
settles back in preview_ready or awaiting_approval. Raw values are never
changed.
"""

from typing import Any, Iterable, Optional
import structlog

from exceptions import (
    AppError,
    FieldNotMappedError,
    NoAutoFixError,
    RecordNotFoundError,
)
from models.import_session import (
    AutoFixSummary,
    FixAction,
    FixActionResult,
    FixOrigin,
    FixResponse,
    ImportRecord,
    ImportSession,
    IssueSeverity,
    SessionStatus,
)
from services.import_session_service import ImportSessionService, get_import_session_service
from services.validation_service import merge_scoped, validate_cells

logger = structlog.get_logger(__name__)

RECOVERABLE_STATUSES = frozenset({
    SessionStatus.PREVIEW_READY,
    SessionStatus.AWAITING_APPROVAL,
})

DEFAULT_AUTO_FIX_THRESHOLD = 0.9


class RecoveryService:
    """Error recovery on a validated session."""

    def __init__(self, sessions: Optional[ImportSessionService] = None):
        self.sessions = sessions or get_import_session_service()

    # ===================
    # FIXES
    # ===================

    def fix_single(self, session_id: str, record_index: int, field: str, new_value: Any) -> FixResponse:
        """
        Set one resolved value and re-validate that cell.

        Raises:
            ImportSessionNotFoundError: Unknown session
            InvalidStatusTransitionError: Session not in preview_ready/awaiting_approval
            RecordNotFoundError: Index out of range
            FieldNotMappedError: Field is not part of the mapping
        """
        with self.sessions.locked(session_id) as session:
            self._require_recoverable(session)
            record = self._get_record(session, record_index)
            self._require_mapped(session, field)

            self.sessions.transition(session, SessionStatus.VALIDATING)
            self._set_value(session, record, field, new_value, FixOrigin.MANUAL)
            self._revalidate(session, {(record_index, field)}, changed={record_index})

            return self._response(session, [
                FixActionResult(record_index=record_index, field=field, success=True)
            ])

    def fix_bulk(self, session_id: str, actions: list[FixAction]) -> FixResponse:
        """
        Apply several fixes with a single re-validation.

        Each action succeeds or fails on its own; a rejected action is
        reported in the results and never stops the others.
        """
        with self.sessions.locked(session_id) as session:
            self._require_recoverable(session)
            self.sessions.transition(session, SessionStatus.VALIDATING)

            cells: set[tuple[int, str]] = set()
            changed: set[int] = set()
            skipped_now: set[int] = set()
            results: list[FixActionResult] = []

            for action in actions:
                try:
                    record = self._get_record(session, action.record_index)
                    if action.origin == FixOrigin.SKIP:
                        self._mark_skipped(session, record)
                        skipped_now.add(record.index)
                        cells.update((record.index, f) for f in session.mapped_fields)
                    else:
                        self._require_mapped(session, action.field)
                        self._set_value(session, record, action.field, action.new_value, action.origin)
                        cells.add((record.index, action.field))
                        changed.add(record.index)
                    results.append(FixActionResult(
                        record_index=action.record_index,
                        field=action.field,
                        success=True
                    ))
                except AppError as e:
                    logger.warning(
                        "import_fix_rejected",
                        session_id=session.id,
                        record_index=action.record_index,
                        field=action.field,
                        code=e.code
                    )
                    results.append(FixActionResult(
                        record_index=action.record_index,
                        field=action.field,
                        success=False,
                        error_code=e.code,
                        message=e.message
                    ))

            self._revalidate(session, cells, changed=changed - skipped_now)

            logger.info(
                "import_bulk_fix_applied",
                session_id=session.id,
                actions=len(actions),
                succeeded=sum(1 for r in results if r.success)
            )
            return self._response(session, results)

    def apply_auto_fix(self, session_id: str, record_index: int, field: str) -> FixResponse:
        """
        Apply the auto-fix attached to an issue on the cell.

        Raises:
            NoAutoFixError: No open issue on the cell carries an auto-fix
        """
        with self.sessions.locked(session_id) as session:
            self._require_recoverable(session)
            record = self._get_record(session, record_index)
            self._require_mapped(session, field)

            issue = next(
                (
                    i for i in session.issues.get(record_index, [])
                    if i.field == field and i.auto_fix is not None and not i.ignored
                ),
                None
            )
            if issue is None:
                raise NoAutoFixError(record_index, field)

            self.sessions.transition(session, SessionStatus.VALIDATING)
            self._set_value(session, record, field, issue.auto_fix.new_value, FixOrigin.AUTO)
            self._revalidate(session, {(record_index, field)}, changed={record_index})

            return self._response(session, [
                FixActionResult(
                    record_index=record_index,
                    field=field,
                    success=True,
                    message=issue.auto_fix.action
                )
            ])

    def auto_fix_all(self, session_id: str, min_confidence: float = DEFAULT_AUTO_FIX_THRESHOLD) -> FixResponse:
        """Apply every open auto-fix at or above min_confidence, one per cell."""
        with self.sessions.locked(session_id) as session:
            self._require_recoverable(session)

            fixes: dict[tuple[int, str], Any] = {}
            for issue in session.all_issues():
                if issue.ignored or issue.record_index in session.skipped:
                    continue
                if issue.auto_fix is None or issue.auto_fix.confidence < min_confidence:
                    continue
                fixes.setdefault((issue.record_index, issue.field), issue.auto_fix.new_value)

            if not fixes:
                return self._response(session, [])

            self.sessions.transition(session, SessionStatus.VALIDATING)
            records = {r.index: r for r in session.records}
            for (record_index, field), value in fixes.items():
                self._set_value(session, records[record_index], field, value, FixOrigin.AUTO)
            self._revalidate(session, fixes.keys())

            logger.info(
                "import_auto_fix_all_applied",
                session_id=session.id,
                fixes=len(fixes),
                min_confidence=min_confidence
            )
            return self._response(session, [
                FixActionResult(record_index=record_index, field=field, success=True)
                for record_index, field in fixes
            ])

    # ===================
    # SKIP
    # ===================

    def skip(self, session_id: str, record_index: int) -> FixResponse:
        """Exclude a record from the import and ignore its errors."""
        with self.sessions.locked(session_id) as session:
            self._require_recoverable(session)
            record = self._get_record(session, record_index)

            self.sessions.transition(session, SessionStatus.VALIDATING)
            self._mark_skipped(session, record)
            self._revalidate(session, {(record.index, f) for f in session.mapped_fields})

            return self._response(session, [
                FixActionResult(record_index=record_index, success=True)
            ])

    # ===================
    # SUMMARY
    # ===================

    def summarize(self, session_id: str, threshold: float = DEFAULT_AUTO_FIX_THRESHOLD) -> AutoFixSummary:
        """How many open issues an auto-fix at `threshold` would resolve."""
        with self.sessions.locked(session_id) as session:
            open_issues = [i for i in session.all_issues() if not i.ignored]
            auto_fixable = sum(
                1 for i in open_issues
                if i.auto_fix is not None and i.auto_fix.confidence >= threshold
            )
            return AutoFixSummary(
                session_id=session.id,
                total_issues=len(open_issues),
                auto_fixable=auto_fixable,
                manual_required=len(open_issues) - auto_fixable,
                threshold=threshold,
            )

    # ===================
    # HELPERS
    # ===================

    def _require_recoverable(self, session: ImportSession) -> None:
        self.sessions.require_status(session, RECOVERABLE_STATUSES, SessionStatus.VALIDATING)

    def _get_record(self, session: ImportSession, record_index: int) -> ImportRecord:
        if record_index < 0 or record_index >= len(session.records):
            raise RecordNotFoundError(record_index)
        return session.records[record_index]

    def _require_mapped(self, session: ImportSession, field: Optional[str]) -> None:
        if not field or field not in session.mapped_fields:
            raise FieldNotMappedError(field or "")

    def _set_value(
        self,
        session: ImportSession,
        record: ImportRecord,
        field: str,
        new_value: Any,
        origin: FixOrigin
    ) -> None:
        if new_value is None:
            value = None
        elif isinstance(new_value, bool):
            value = "true" if new_value else "false"
        else:
            value = str(new_value)

        record.resolved[field] = value

        logger.info(
            "import_record_fixed",
            session_id=session.id,
            record_index=record.index,
            field=field,
            origin=origin.value
        )

    def _mark_skipped(self, session: ImportSession, record: ImportRecord) -> None:
        session.skipped.add(record.index)
        for issue in session.issues.get(record.index, []):
            if issue.severity == IssueSeverity.ERROR:
                issue.ignored = True
        logger.info("import_record_skipped", session_id=session.id, record_index=record.index)

    def _revalidate(
        self,
        session: ImportSession,
        cells: Iterable[tuple[int, str]],
        changed: Iterable[int] = ()
    ) -> None:
        """Scoped re-validation, un-skip of repaired records, then settle."""
        cells = set(cells)
        try:
            fresh = validate_cells(session.records, cells, session.mapped_fields, excluded=session.skipped)
            session.issues = merge_scoped(session.issues, fresh, cells, session.mapped_fields)

            for index in sorted(set(changed)):
                if index not in session.skipped or self._has_errors(session, index):
                    continue
                # Skipped records sit out uniqueness, so check as if included
                included = session.skipped - {index}
                record_cells = {(index, f) for f in session.mapped_fields}
                fresh = validate_cells(session.records, record_cells, session.mapped_fields, excluded=included)
                if any(i.record_index == index and i.severity == IssueSeverity.ERROR for i in fresh):
                    logger.info("import_record_stays_skipped", session_id=session.id, record_index=index)
                    continue

                session.skipped.discard(index)
                session.issues = merge_scoped(session.issues, fresh, record_cells, session.mapped_fields)
                logger.info("import_record_unskipped", session_id=session.id, record_index=index)
        except Exception as e:
            logger.error("import_revalidation_failed", session_id=session.id, error=str(e))
            self.sessions.fail(session, "VALIDATION_FAILED", "Unexpected error while re-validating records")
            raise

        self.sessions.settle_validation(session)

    def _has_errors(self, session: ImportSession, index: int) -> bool:
        return any(
            i.severity == IssueSeverity.ERROR for i in session.issues.get(index, [])
        )

    def _response(self, session: ImportSession, results: list[FixActionResult]) -> FixResponse:
        return FixResponse(
            session_id=session.id,
            status=session.status,
            issue_counts=self.sessions.issue_counts(session),
            results=results,
        )


# Singleton instance for convenience
_recovery_service: Optional[RecoveryService] = None

def get_recovery_service() -> RecoveryService:
    """Get or create RecoveryService instance."""
    global _recovery_service
    if _recovery_service is None:
        _recovery_service = RecoveryService()
    return _recovery_service
