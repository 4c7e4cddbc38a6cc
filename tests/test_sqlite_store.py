"""
Tests for SQLite-based procurement persistence.

This test suite verifies that the SQLite store:
- Persists requisitions and approvals across instances
- Guards approval transitions (compare-and-swap)
- Enforces one active approval per requisition
- Guards budget increments against the limit
"""

import sqlite3
from datetime import timedelta

import pytest

from procurement_approvals.core.errors import (
    ApprovalNotFoundError,
    BudgetExceededError,
    ConfigurationError,
    ConflictError,
    RequisitionNotFoundError,
)
from procurement_approvals.models import (
    DEFAULT_WORKFLOW_RULES,
    ApprovalLevel,
    ApprovalRecord,
    ApprovalStatus,
    Requisition,
    RequisitionStatus,
)
from procurement_approvals.services.events import EventPublisher
from procurement_approvals.services.storage import SQLiteProcurementStore
from procurement_approvals.workflow import build_workflow


def make_record(record_id, clock, requisition_id="REQ-1", status=ApprovalStatus.PENDING):
    return ApprovalRecord(
        id=record_id,
        requisition_id=requisition_id,
        vessel_id="vessel1",
        level=ApprovalLevel.SUPERINTENDENT,
        assigned_to="super1",
        status=status,
        created_at=clock.now(),
        escalation_deadline=clock.now() + timedelta(hours=24),
    )


def test_create_approval_persists_to_db(sqlite_store, db_path, clock):
    """Test that creating an approval writes to SQLite database"""
    sqlite_store.create_approval(make_record("a1", clock))

    # Verify it's in the database by querying directly
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT id, status, version, data FROM approvals WHERE id = ?", ("a1",))
    row = cursor.fetchone()
    conn.close()

    assert row is not None
    assert row[1] == "PENDING"
    assert row[2] == 0
    assert "super1" in row[3]  # JSON payload carries the approver


def test_get_approval_roundtrips_fields(sqlite_store, clock):
    sqlite_store.create_approval(make_record("a1", clock))

    record = sqlite_store.get_approval("a1")

    assert record.level == ApprovalLevel.SUPERINTENDENT
    assert record.escalation_deadline == clock.now() + timedelta(hours=24)


def test_second_active_record_conflicts(sqlite_store, clock):
    sqlite_store.create_approval(make_record("a1", clock))

    with pytest.raises(ConflictError):
        sqlite_store.create_approval(make_record("a2", clock))


def test_inactive_records_do_not_count(sqlite_store, clock):
    sqlite_store.create_approval(make_record("a1", clock, status=ApprovalStatus.ESCALATED))
    sqlite_store.create_approval(make_record("a2", clock))

    assert sqlite_store.get_active_approval("REQ-1").id == "a2"
    assert [r.id for r in sqlite_store.list_active_approvals()] == ["a2"]


class TestTransition:
    def test_transition_applies_changes(self, sqlite_store, clock):
        sqlite_store.create_approval(make_record("a1", clock))

        updated = sqlite_store.transition_approval(
            "a1", (ApprovalStatus.PENDING,), status=ApprovalStatus.APPROVED, decided_by="super1"
        )

        assert updated.status == ApprovalStatus.APPROVED
        assert sqlite_store.get_approval("a1").decided_by == "super1"

    def test_transition_from_unexpected_state_conflicts(self, sqlite_store, clock):
        sqlite_store.create_approval(make_record("a1", clock))
        sqlite_store.transition_approval("a1", (ApprovalStatus.PENDING,), status=ApprovalStatus.REJECTED)

        with pytest.raises(ConflictError):
            sqlite_store.transition_approval("a1", (ApprovalStatus.PENDING,), status=ApprovalStatus.APPROVED)

        assert sqlite_store.get_approval("a1").status == ApprovalStatus.REJECTED

    def test_transition_unknown_record(self, sqlite_store):
        with pytest.raises(ApprovalNotFoundError):
            sqlite_store.transition_approval("missing", (ApprovalStatus.PENDING,), status=ApprovalStatus.APPROVED)

    def test_version_increments(self, sqlite_store, db_path, clock):
        sqlite_store.create_approval(make_record("a1", clock))
        sqlite_store.transition_approval("a1", (ApprovalStatus.PENDING,), status=ApprovalStatus.DELEGATED)

        conn = sqlite3.connect(db_path)
        version = conn.execute("SELECT version FROM approvals WHERE id = 'a1'").fetchone()[0]
        conn.close()

        assert version == 1

    def test_stale_version_conflicts_even_with_matching_status(self, sqlite_store, clock):
        sqlite_store.create_approval(make_record("a1", clock))
        sqlite_store.transition_approval("a1", (ApprovalStatus.PENDING,), 0, status=ApprovalStatus.ESCALATED)
        sqlite_store.transition_approval("a1", (ApprovalStatus.ESCALATED,), 1, status=ApprovalStatus.PENDING)

        with pytest.raises(ConflictError):
            sqlite_store.transition_approval("a1", (ApprovalStatus.PENDING,), 0, status=ApprovalStatus.APPROVED)

        record = sqlite_store.get_approval("a1")
        assert record.status == ApprovalStatus.PENDING
        assert record.version == 2


class TestRequisitionTransition:
    @pytest.fixture
    def requisition(self, sqlite_store):
        sqlite_store.add_requisition(Requisition(id="REQ-T", amount=2500, vessel_id="vessel1",
                                                 requested_by_id="crew1"))
        return sqlite_store.get_requisition("REQ-T")

    def test_transition_applies_changes_and_bumps_version(self, sqlite_store, db_path, requisition):
        updated = sqlite_store.transition_requisition(
            "REQ-T", (RequisitionStatus.DRAFT,), requisition.version,
            status=RequisitionStatus.PENDING_APPROVAL, current_tier=0,
        )

        assert updated.version == requisition.version + 1
        conn = sqlite3.connect(db_path)
        row = conn.execute("SELECT status, version FROM requisitions WHERE id = 'REQ-T'").fetchone()
        conn.close()
        assert row == ("PENDING_APPROVAL", requisition.version + 1)

    def test_unexpected_status_conflicts(self, sqlite_store, requisition):
        with pytest.raises(ConflictError):
            sqlite_store.transition_requisition("REQ-T", (RequisitionStatus.PENDING_APPROVAL,),
                                                status=RequisitionStatus.APPROVED)

        assert sqlite_store.get_requisition("REQ-T").status == RequisitionStatus.DRAFT

    def test_stale_version_conflicts(self, sqlite_store, requisition):
        sqlite_store.transition_requisition("REQ-T", (RequisitionStatus.DRAFT,), requisition.version,
                                            budget_id="vessel1-budget")

        with pytest.raises(ConflictError):
            sqlite_store.transition_requisition("REQ-T", (RequisitionStatus.DRAFT,), requisition.version,
                                                status=RequisitionStatus.APPROVED)

        assert sqlite_store.get_requisition("REQ-T").status == RequisitionStatus.DRAFT

    def test_unknown_requisition(self, sqlite_store):
        with pytest.raises(RequisitionNotFoundError):
            sqlite_store.transition_requisition("REQ-404", (RequisitionStatus.DRAFT,),
                                                status=RequisitionStatus.APPROVED)


class TestBudgetIncrement:
    def test_increment_within_limit(self, sqlite_store):
        budget = sqlite_store.increment_budget_spent("vessel1-budget", 4000, 100_000)

        assert budget.current_spent == 4000
        assert sqlite_store.get_budget("vessel1-budget").current_spent == 4000

    def test_one_increment_may_carry_spend_past_limit(self, sqlite_store):
        sqlite_store.increment_budget_spent("vessel1-budget", 90_000, 100_000)
        sqlite_store.increment_budget_spent("vessel1-budget", 20_000, 100_000)

        with pytest.raises(BudgetExceededError):
            sqlite_store.increment_budget_spent("vessel1-budget", 1, 100_000)

        assert sqlite_store.get_budget("vessel1-budget").current_spent == 110_000

    def test_exhausted_budget_refuses_increment(self, sqlite_store):
        sqlite_store.increment_budget_spent("vessel1-budget", 100_000, 100_000)

        with pytest.raises(BudgetExceededError):
            sqlite_store.increment_budget_spent("vessel1-budget", 1, 100_000)

        assert sqlite_store.get_budget("vessel1-budget").current_spent == 100_000

    def test_amount_over_limit_raises_and_leaves_spend(self, sqlite_store):
        with pytest.raises(BudgetExceededError):
            sqlite_store.increment_budget_spent("vessel1-budget", 100_001, 100_000)

        assert sqlite_store.get_budget("vessel1-budget").current_spent == 0

    def test_increment_unknown_budget(self, sqlite_store):
        with pytest.raises(ConfigurationError):
            sqlite_store.increment_budget_spent("nope", 1, 100)


def test_query_by_status_with_sql(sqlite_store, db_path, clock):
    """Test that approval status is queryable with plain SQL for reporting"""
    sqlite_store.create_approval(make_record("a1", clock, requisition_id="REQ-1"))
    sqlite_store.create_approval(make_record("a2", clock, requisition_id="REQ-2"))
    sqlite_store.transition_approval("a1", (ApprovalStatus.PENDING,), status=ApprovalStatus.APPROVED)

    conn = sqlite3.connect(db_path)
    rows = conn.execute("SELECT id FROM approvals WHERE status = 'PENDING'").fetchall()
    conn.close()

    assert rows == [("a2",)]


def test_rules_roundtrip(sqlite_store):
    for rule in DEFAULT_WORKFLOW_RULES:
        sqlite_store.add_rule(rule)

    assert sqlite_store.list_rules() == DEFAULT_WORKFLOW_RULES


def test_persistence_across_instances(sqlite_store, db_path, clock):
    """Test that a routed requisition survives a new store instance (cron-driven escalation)"""
    sqlite_store.add_requisition(Requisition(id="REQ-P", amount=2500, vessel_id="vessel1", requested_by_id="crew1"))
    workflow = build_workflow(sqlite_store, publisher=EventPublisher(None), clock=clock)
    routed = workflow.router.process_requisition("REQ-P")

    store2 = SQLiteProcurementStore(db_path)
    clock.advance(hours=25)
    report = build_workflow(store2, publisher=EventPublisher(None), clock=clock).scheduler.process_escalations()

    assert store2.get_requisition("REQ-P").status == RequisitionStatus.PENDING_APPROVAL
    assert report.escalated_approvals[0].previous_approval_id == routed.approval_id
    assert store2.get_active_approval("REQ-P").level == ApprovalLevel.PROCUREMENT_MANAGER


def test_get_nonexistent_returns_none(sqlite_store):
    """Test that getting non-existent records returns None"""
    assert sqlite_store.get_approval("nonexistent-id-67890") is None
    assert sqlite_store.get_requisition("nonexistent") is None
