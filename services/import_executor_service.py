"""
Import executor service.

Commits the eligible records of an approved session to the catalog store.

- Eligible = not skipped and not blocked
- Records are written in batches of `import_batch_size`, one batch at a time
- Each batch write has a timeout and is retried once
- A failed batch marks its records failed and the run continues
- Cancellation is checked between batches

Progress: `processed` starts at the skipped count and grows by each batch;
at completion succeeded + failed + skipped == total.
"""

from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Optional
import structlog

from config import settings
from exceptions import CatalogStoreError, CatalogStoreUnavailableError
from integrations.catalog_store import CatalogStore, get_catalog_store
from models.import_session import ImportSession, RecordResult, SessionStatus
from services.import_session_service import ImportSessionService, get_import_session_service
from services.validation_service import coerce_record
from utils.deadline import DeadlineRunner

logger = structlog.get_logger(__name__)

BATCH_ATTEMPTS = 2


@dataclass
class BatchOutcome:
    """Result of writing one batch."""
    success: bool
    error: Optional[str] = None
    unavailable: bool = False


class ImportExecutorService:
    """
    Batch commit of approved sessions.

    start() validates and flips the session to importing; run() does the
    writes and is meant to execute in a background task.
    """

    def __init__(
        self,
        sessions: Optional[ImportSessionService] = None,
        store: Optional[CatalogStore] = None,
        batch_size: Optional[int] = None,
        batch_timeout: Optional[float] = None,
        write_workers: Optional[int] = None,
    ):
        self.sessions = sessions or get_import_session_service()
        self.store = store or get_catalog_store()
        self.batch_size = batch_size or settings.import_batch_size
        self.batch_timeout = batch_timeout or settings.import_batch_timeout_seconds
        self.writer = DeadlineRunner("catalog-writer", write_workers or settings.import_write_workers)

    def start(self, session_id: str) -> ImportSession:
        """
        Move an approved session to importing.

        Raises:
            InvalidStatusTransitionError: Session is not awaiting approval
        """
        with self.sessions.locked(session_id) as session:
            self.sessions.require_status(
                session,
                frozenset({SessionStatus.AWAITING_APPROVAL}),
                SessionStatus.IMPORTING
            )

            skipped = sorted(session.skipped)
            session.results = [RecordResult(record_index=i, status="skipped") for i in skipped]
            session.progress.skipped = len(skipped)
            session.progress.processed = len(skipped)
            session.progress.succeeded = 0
            session.progress.failed = 0
            session.running = True
            self.sessions.transition(session, SessionStatus.IMPORTING)

        logger.info(
            "import_execution_started",
            session_id=session.id,
            total=session.progress.total,
            skipped=session.progress.skipped
        )
        return session

    def run(self, session_id: str) -> ImportSession:
        """Write every eligible record. Never raises for store failures."""
        session = self.sessions.store.get(session_id)
        try:
            self._run(session)
        except Exception as e:
            logger.error(
                "import_execution_crashed",
                session_id=session.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True
            )
            with self.sessions.locked(session.id):
                session.running = False
                if not session.is_terminal:
                    self.sessions.fail(session, "EXECUTION_FAILED", "Unexpected error during import")
        return session

    def execute(self, session_id: str) -> ImportSession:
        """start() followed by run(), in the calling thread."""
        self.start(session_id)
        return self.run(session_id)

    # ===================
    # EXECUTION
    # ===================

    def _run(self, session: ImportSession) -> None:
        with session.lock:
            eligible = session.eligible_indices()
            mapped_fields = session.mapped_fields
            pending: list[tuple[int, dict[str, Any]]] = []

            for index in eligible:
                try:
                    pending.append((index, coerce_record(session.records[index].resolved, mapped_fields)))
                except ValueError as e:
                    logger.warning("import_record_coercion_failed", session_id=session.id, record_index=index, error=str(e))
                    self._record_outcome(session, [index], BatchOutcome(success=False, error=str(e)))
            self.sessions.publish(session)

        if pending and not self.store.is_available():
            with self.sessions.locked(session.id):
                self._record_outcome(
                    session,
                    [index for index, _ in pending],
                    BatchOutcome(success=False, error="Catalog store is unavailable", unavailable=True)
                )
                session.running = False
                self.sessions.fail(session, "STORE_UNAVAILABLE", "Catalog store is unavailable")
            return

        batches = [pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
        outcomes: list[BatchOutcome] = []

        for number, batch in enumerate(batches, start=1):
            if session.cancel_requested.is_set():
                logger.info("import_execution_cancelled", session_id=session.id, batches_done=number - 1)
                with self.sessions.locked(session.id):
                    session.running = False
                return

            outcome = self._write_batch(session, number, [payload for _, payload in batch])
            outcomes.append(outcome)

            with self.sessions.locked(session.id):
                self._record_outcome(session, [index for index, _ in batch], outcome)
                self.sessions.publish(session)

        with self.sessions.locked(session.id):
            session.running = False
            if outcomes and not any(o.success for o in outcomes):
                if all(o.unavailable for o in outcomes):
                    self.sessions.fail(session, "STORE_UNAVAILABLE", "Catalog store was unavailable for the whole import")
                else:
                    self.sessions.fail(session, "ALL_BATCHES_FAILED", outcomes[-1].error or "Every batch failed")
            else:
                self.sessions.transition(session, SessionStatus.COMPLETED)

        logger.info(
            "import_execution_finished",
            session_id=session.id,
            status=session.status.value,
            succeeded=session.progress.succeeded,
            failed=session.progress.failed,
            skipped=session.progress.skipped
        )

    def _write_batch(self, session: ImportSession, number: int, payloads: list[dict[str, Any]]) -> BatchOutcome:
        """Write one batch with a timeout, retrying once."""
        outcome = BatchOutcome(success=False)

        for attempt in range(1, BATCH_ATTEMPTS + 1):
            try:
                self.writer.call(
                    self.store.create_many,
                    payloads,
                    timeout=self.batch_timeout,
                    context={"session_id": session.id, "batch": number, "attempt": attempt}
                )
                logger.debug("import_batch_written", session_id=session.id, batch=number, records=len(payloads))
                return BatchOutcome(success=True)
            except FuturesTimeout:
                outcome = BatchOutcome(success=False, error=f"Batch write timed out after {self.batch_timeout}s")
            except CatalogStoreUnavailableError as e:
                outcome = BatchOutcome(success=False, error=e.message, unavailable=True)
            except CatalogStoreError as e:
                outcome = BatchOutcome(success=False, error=e.message)
            except Exception as e:
                outcome = BatchOutcome(success=False, error=str(e))

            logger.warning(
                "import_batch_failed",
                session_id=session.id,
                batch=number,
                attempt=attempt,
                records=len(payloads),
                error=outcome.error
            )

        return outcome

    def _record_outcome(self, session: ImportSession, indices: list[int], outcome: BatchOutcome) -> None:
        """Per-record results and counters. Caller holds the session lock."""
        status = "succeeded" if outcome.success else "failed"
        for index in indices:
            session.results.append(RecordResult(record_index=index, status=status, error=outcome.error))
            if not outcome.success:
                logger.warning(
                    "import_record_failed",
                    session_id=session.id,
                    record_index=index,
                    error=outcome.error
                )

        session.progress.processed += len(indices)
        if outcome.success:
            session.progress.succeeded += len(indices)
        else:
            session.progress.failed += len(indices)


# Singleton instance for convenience
_import_executor_service: Optional[ImportExecutorService] = None

def get_import_executor_service() -> ImportExecutorService:
    """Get or create ImportExecutorService instance."""
    global _import_executor_service
    if _import_executor_service is None:
        _import_executor_service = ImportExecutorService()
    return _import_executor_service
