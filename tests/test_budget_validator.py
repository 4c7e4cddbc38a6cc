"""
Tests for vessel → fleet budget validation and commitment.
"""

from datetime import datetime, UTC

import pytest

from procurement_approvals.core.errors import BudgetExceededError
from procurement_approvals.models import (
    ApprovalLevel,
    Budget,
    BudgetScope,
    Requisition,
)
from procurement_approvals.services.budget_validator import (
    BudgetValidation,
    BudgetValidator,
    seasonal_multiplier,
)
from procurement_approvals.services.storage import InMemoryProcurementStore


def make_requisition(amount, currency="USD"):
    return Requisition(id="REQ-B", amount=amount, currency=currency, vessel_id="v1", requested_by_id="crew1")


@pytest.fixture
def budget_store():
    """Vessel limit 10,000 with 3,000 spent, under a fleet with plenty of headroom"""
    store = InMemoryProcurementStore()
    store.add_budget(Budget(id="fleet", scope=BudgetScope.FLEET, owner_id="f1", monthly_limit=100_000))
    store.add_budget(Budget(
        id="v1-budget",
        scope=BudgetScope.VESSEL,
        owner_id="v1",
        monthly_limit=10_000,
        current_spent=3_000,
        parent_budget_id="fleet",
    ))
    return store


@pytest.fixture
def validator(budget_store, clock):
    return BudgetValidator(budget_store, clock)


def test_within_vessel_budget(validator):
    """Test limit 10,000, spent 3,000, requisition 8,000"""
    result = validator.validate(make_requisition(8_000), at=datetime(2024, 4, 10, tzinfo=UTC))

    assert result.within_budget is True
    assert result.remaining == 7_000
    assert result.level == BudgetScope.VESSEL
    assert result.budget_id == "v1-budget"
    assert result.escalated is False
    assert result.required_level == ApprovalLevel.AUTO


def test_exhausted_vessel_budget_falls_to_fleet(budget_store, clock):
    """A vessel budget already at its limit covers nothing more this period"""
    budget_store.add_budget(Budget(id="v1-budget", scope=BudgetScope.VESSEL, owner_id="v1",
                                   monthly_limit=10_000, current_spent=10_000, parent_budget_id="fleet"))

    result = BudgetValidator(budget_store, clock).validate(make_requisition(50))

    assert result.level == BudgetScope.FLEET
    assert result.escalated is True


def test_exceeding_vessel_escalates_to_fleet(validator):
    result = validator.validate(make_requisition(12_000), at=datetime(2024, 4, 10, tzinfo=UTC))

    assert result.within_budget is True
    assert result.level == BudgetScope.FLEET
    assert result.escalated is True
    assert result.reason == "Vessel budget exceeded"
    assert result.budget_id == "fleet"
    assert result.required_level == ApprovalLevel.PROCUREMENT_MANAGER


def test_exceeding_both_requires_senior_management(validator):
    result = validator.validate(make_requisition(200_000))

    assert result.within_budget is False
    assert result.required_level == ApprovalLevel.SENIOR_MANAGEMENT


def test_no_fleet_parent_fails(budget_store, clock):
    budget_store.add_budget(Budget(id="v1-budget", scope=BudgetScope.VESSEL, owner_id="v1",
                                   monthly_limit=10_000, current_spent=3_000))

    result = BudgetValidator(budget_store, clock).validate(make_requisition(12_000))

    assert result.within_budget is False


def test_missing_vessel_budget_fails_closed(clock):
    result = BudgetValidator(InMemoryProcurementStore(), clock).validate(make_requisition(10))

    assert result.within_budget is False
    assert result.required_level == ApprovalLevel.SENIOR_MANAGEMENT


def test_currency_mismatch_fails_closed(validator):
    result = validator.validate(make_requisition(100, currency="EUR"))

    assert result.within_budget is False


class TestSeasonalAdjustment:
    def test_winter_multiplier(self, budget_store, clock):
        """Test winter multiplier 1.5 on a 10,000 limit"""
        budget_store.add_budget(Budget(id="v1-budget", scope=BudgetScope.VESSEL, owner_id="v1",
                                       monthly_limit=10_000, current_spent=3_000, parent_budget_id="fleet",
                                       seasonal_adjustments={"winter": 1.5}))
        validator = BudgetValidator(budget_store, clock)

        result = validator.validate(make_requisition(12_000))  # clock is January

        assert result.adjusted_limit == 15_000
        assert result.season == "winter"
        assert result.level == BudgetScope.VESSEL
        assert result.remaining == 12_000

    def test_full_adjusted_limit_in_winter(self, budget_store, clock):
        """Test 15,000 against 10,000 x 1.5 with 2,000 already spent"""
        budget_store.add_budget(Budget(id="v1-budget", scope=BudgetScope.VESSEL, owner_id="v1",
                                       monthly_limit=10_000, current_spent=2_000,
                                       seasonal_adjustments={"winter": 1.5, "summer": 1.0,
                                                             "spring": 1.2, "autumn": 1.1}))

        result = BudgetValidator(budget_store, clock).validate(make_requisition(15_000))

        assert result.within_budget is True
        assert result.adjusted_limit == 15_000
        assert result.seasonal_multiplier == 1.5
        assert result.season == "winter"
        assert result.level == BudgetScope.VESSEL

    def test_missing_entry_defaults_to_one(self):
        budget = Budget(id="b", scope=BudgetScope.VESSEL, owner_id="v1", monthly_limit=1,
                        seasonal_adjustments={"winter": 1.5})

        assert seasonal_multiplier(budget, datetime(2024, 7, 1, tzinfo=UTC)) == (1.0, "summer")

    def test_month_entry_beats_season(self):
        budget = Budget(id="b", scope=BudgetScope.VESSEL, owner_id="v1", monthly_limit=1,
                        seasonal_adjustments={"Winter": 1.5, 12: 2.0})

        assert seasonal_multiplier(budget, datetime(2024, 12, 1, tzinfo=UTC)) == (2.0, "winter")
        assert seasonal_multiplier(budget, datetime(2024, 1, 1, tzinfo=UTC)) == (1.5, "winter")


class TestCommit:
    def test_commit_charges_only_covering_budget(self, validator, budget_store):
        requisition = make_requisition(12_000)
        validation = validator.validate(requisition)

        validator.commit(requisition, validation)

        assert budget_store.get_budget("fleet").current_spent == 12_000
        assert budget_store.get_budget("v1-budget").current_spent == 3_000

    def test_validate_does_not_reserve(self, validator, budget_store):
        validator.validate(make_requisition(5_000))

        assert budget_store.get_budget("v1-budget").current_spent == 3_000

    def test_commit_may_carry_spend_past_limit_once(self, validator, budget_store):
        first = make_requisition(8_000)
        validator.commit(first, validator.validate(first))
        assert budget_store.get_budget("v1-budget").current_spent == 11_000

        # A validation taken before the first commit no longer holds
        second = make_requisition(1_000)
        stale = BudgetValidation(within_budget=True, level=BudgetScope.VESSEL, budget_id="v1-budget",
                                 adjusted_limit=10_000)
        with pytest.raises(BudgetExceededError):
            validator.commit(second, stale)

        assert budget_store.get_budget("v1-budget").current_spent == 11_000

    def test_commit_uncovered_raises(self, validator, budget_store):
        requisition = make_requisition(500_000)

        with pytest.raises(BudgetExceededError):
            validator.commit(requisition, validator.validate(requisition))

        assert budget_store.get_budget("fleet").current_spent == 0
