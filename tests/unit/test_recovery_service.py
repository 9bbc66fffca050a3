"""
Unit tests for RecoveryService.

Run with: pytest tests/unit/test_recovery_service.py -v

The shared session has three records:
    0: name missing (error, no auto-fix)
    1: price "$12.99" (type error, auto-fix "12.99" at 0.95)
    2: valid
"""

import pytest

from models.import_session import FixAction, FixOrigin, IssueRule, SessionStatus
from exceptions import (
    FieldNotMappedError,
    InvalidStatusTransitionError,
    NoAutoFixError,
    RecordNotFoundError,
)
from tests.factories import CatalogRowFactory, csv_bytes, three_record_csv


@pytest.fixture
def session(session_service):
    """Validated three-record session in preview_ready."""
    session = session_service.upload(three_record_csv(), "products.csv")
    session_service.generate_preview(session.id)
    assert session.status == SessionStatus.PREVIEW_READY
    return session


# ===================
# FIXES
# ===================

class TestFixSingle:
    """Tests for fix_single."""

    def test_fix_clears_issue(self, recovery_service, session):
        response = recovery_service.fix_single(session.id, 1, "price", "12.99")

        assert response.results[0].success
        assert session.issues.get(1) is None
        assert session.records[1].resolved["price"] == "12.99"
        # Raw values are never touched
        assert session.records[1].raw["price"] == "$12.99"
        # Record 0 still blocks
        assert response.status == SessionStatus.PREVIEW_READY

    def test_fixing_everything_awaits_approval(self, recovery_service, session):
        recovery_service.fix_single(session.id, 1, "price", "12.99")
        response = recovery_service.fix_single(session.id, 0, "name", "Gizmo")

        assert response.status == SessionStatus.AWAITING_APPROVAL
        assert response.issue_counts.errors == 0
        assert response.issue_counts.eligible_records == 3

    def test_bad_fix_introduces_new_error(self, recovery_service, session):
        response = recovery_service.fix_single(session.id, 2, "price", "lots")

        assert response.status == SessionStatus.PREVIEW_READY
        assert session.issues[2][0].rule == IssueRule.TYPE

    def test_fix_from_awaiting_approval_can_block_again(self, recovery_service, session):
        recovery_service.skip(session.id, 0)
        recovery_service.fix_single(session.id, 1, "price", "12.99")
        assert session.status == SessionStatus.AWAITING_APPROVAL

        response = recovery_service.fix_single(session.id, 2, "sku", "bad sku")

        assert response.status == SessionStatus.PREVIEW_READY

    def test_fix_creating_duplicate_flags_both_records(self, recovery_service, session):
        recovery_service.fix_single(session.id, 2, "sku", "SKU-2")

        assert session.issues[1][0].rule == IssueRule.UNIQUE
        assert session.issues[2][0].rule == IssueRule.UNIQUE

    def test_unmapped_field_rejected(self, recovery_service, session):
        with pytest.raises(FieldNotMappedError):
            recovery_service.fix_single(session.id, 0, "brand", "Acme")

        assert session.status == SessionStatus.PREVIEW_READY

    def test_unknown_record_rejected(self, recovery_service, session):
        with pytest.raises(RecordNotFoundError):
            recovery_service.fix_single(session.id, 99, "name", "x")

    def test_wrong_status_rejected(self, session_service, recovery_service):
        session = session_service.upload(three_record_csv(), "products.csv")

        with pytest.raises(InvalidStatusTransitionError):
            recovery_service.fix_single(session.id, 0, "name", "x")


class TestFixBulk:
    """Tests for fix_bulk."""

    def test_each_action_reported(self, recovery_service, session):
        response = recovery_service.fix_bulk(session.id, [
            FixAction(record_index=1, field="price", new_value="12.99"),
            FixAction(record_index=0, field="brand", new_value="Acme"),
            FixAction(record_index=0, origin=FixOrigin.SKIP),
        ])

        assert [r.success for r in response.results] == [True, False, True]
        assert response.results[1].error_code == "FIELD_NOT_MAPPED"
        assert response.status == SessionStatus.AWAITING_APPROVAL
        assert 0 in session.skipped

    def test_non_string_values_stored_as_text(self, recovery_service, session):
        recovery_service.fix_bulk(session.id, [
            FixAction(record_index=1, field="price", new_value=12.99),
        ])

        assert session.records[1].resolved["price"] == "12.99"
        assert session.issues.get(1) is None


# ===================
# AUTO-FIX
# ===================

class TestAutoFix:
    """Tests for apply_auto_fix, auto_fix_all and summarize."""

    def test_apply_auto_fix(self, recovery_service, session):
        response = recovery_service.apply_auto_fix(session.id, 1, "price")

        assert session.records[1].resolved["price"] == "12.99"
        assert response.results[0].message == "Remove currency symbols and separators"
        assert response.issue_counts.errors == 1

    def test_no_auto_fix_available(self, recovery_service, session):
        with pytest.raises(NoAutoFixError):
            recovery_service.apply_auto_fix(session.id, 0, "name")

    def test_auto_fix_all_respects_threshold(self, session_service, recovery_service):
        rows = [
            {"name": "A", "sku": "A-1", "price": "$5.00"},
            {"name": "B", "sku": "B-1", "price": "call us"},
        ]
        session = session_service.upload(csv_bytes(rows), "products.csv")
        session_service.generate_preview(session.id)

        response = recovery_service.auto_fix_all(session.id, min_confidence=0.9)

        assert [(r.record_index, r.field) for r in response.results] == [(0, "price")]
        assert session.records[0].resolved["price"] == "5.00"
        assert session.records[1].resolved["price"] == "call us"
        assert response.status == SessionStatus.PREVIEW_READY

    def test_auto_fix_all_nothing_to_do(self, session_service, recovery_service):
        session = session_service.upload(csv_bytes(CatalogRowFactory.create_batch(2)), "products.csv")
        session_service.generate_preview(session.id)

        response = recovery_service.auto_fix_all(session.id)

        assert response.results == []
        assert response.status == SessionStatus.AWAITING_APPROVAL

    def test_summary(self, recovery_service, session):
        summary = recovery_service.summarize(session.id, threshold=0.9)

        assert summary.total_issues == 2
        assert summary.auto_fixable == 1
        assert summary.manual_required == 1

    def test_summary_above_fix_confidence(self, recovery_service, session):
        assert recovery_service.summarize(session.id, threshold=0.99).auto_fixable == 0


# ===================
# SKIP
# ===================

class TestSkip:
    """Tests for skip and un-skip."""

    def test_skip_ignores_errors(self, recovery_service, session):
        response = recovery_service.skip(session.id, 0)

        assert 0 in session.skipped
        assert all(i.ignored for i in session.issues[0])
        assert response.issue_counts.ignored == 1
        assert response.issue_counts.skipped_records == 1
        # Record 1 still blocks
        assert response.status == SessionStatus.PREVIEW_READY

    def test_skip_and_fix_reach_approval(self, recovery_service, session):
        recovery_service.apply_auto_fix(session.id, 1, "price")
        response = recovery_service.skip(session.id, 0)

        assert response.status == SessionStatus.AWAITING_APPROVAL
        assert response.issue_counts.eligible_records == 2

    def test_fixing_skipped_record_unskips_it(self, recovery_service, session):
        recovery_service.skip(session.id, 0)

        recovery_service.fix_single(session.id, 0, "name", "Gizmo")

        assert 0 not in session.skipped
        assert session.issues.get(0) is None

    def test_partial_fix_keeps_record_skipped(self, session_service, recovery_service):
        rows = [{"name": None, "sku": "bad sku"}, {"name": "B", "sku": "B-1"}]
        session = session_service.upload(csv_bytes(rows), "products.csv")
        session_service.generate_preview(session.id)
        recovery_service.skip(session.id, 0)

        recovery_service.fix_single(session.id, 0, "name", "A")

        assert 0 in session.skipped
        assert all(i.ignored for i in session.issues[0])

    def test_skipped_duplicate_stays_skipped_after_other_fix(self, session_service, recovery_service):
        rows = [{"name": "A", "sku": "DUP-1"}, {"name": "B", "sku": "DUP-1"}]
        session = session_service.upload(csv_bytes(rows), "products.csv")
        session_service.generate_preview(session.id)
        recovery_service.skip(session.id, 1)
        assert session.status == SessionStatus.AWAITING_APPROVAL

        response = recovery_service.fix_single(session.id, 1, "name", "B2")

        assert 1 in session.skipped
        assert session.records[1].resolved["name"] == "B2"
        assert not session.is_blocked(0)
        assert session.issues.get(0) is None
        assert response.status == SessionStatus.AWAITING_APPROVAL

    def test_skipped_duplicate_unskips_once_unique(self, session_service, recovery_service):
        rows = [{"name": "A", "sku": "DUP-1"}, {"name": "B", "sku": "DUP-1"}]
        session = session_service.upload(csv_bytes(rows), "products.csv")
        session_service.generate_preview(session.id)
        recovery_service.skip(session.id, 1)

        response = recovery_service.fix_single(session.id, 1, "sku", "DUP-2")

        assert 1 not in session.skipped
        assert session.issues.get(0) is None
        assert session.issues.get(1) is None
        assert response.status == SessionStatus.AWAITING_APPROVAL

    def test_skipped_valid_record_stays_skipped(self, recovery_service, session):
        recovery_service.skip(session.id, 2)

        recovery_service.fix_single(session.id, 1, "price", "12.99")

        assert 2 in session.skipped

    def test_skipped_record_leaves_uniqueness(self, session_service, recovery_service):
        rows = [{"name": "A", "sku": "T-1"}, {"name": "B", "sku": "T-1"}]
        session = session_service.upload(csv_bytes(rows), "products.csv")
        session_service.generate_preview(session.id)
        assert session.status == SessionStatus.PREVIEW_READY

        response = recovery_service.skip(session.id, 1)

        assert response.status == SessionStatus.AWAITING_APPROVAL
        assert session.issues.get(0) is None
