"""
Budget hierarchy validation (vessel → fleet) with seasonal adjustment.

Validation is read-only. Spend is committed only on final approval, as one
guarded increment against whichever budget actually covered the amount.
"""

from datetime import datetime
from typing import Optional

from loguru import logger
from pydantic import BaseModel

from ..core.clock import Clock, SystemClock
from ..core.errors import BudgetExceededError
from ..models import SEASON_BY_MONTH, ApprovalLevel, Budget, BudgetScope, Requisition
from .storage.store_base import ProcurementStoreBase, fits_budget


class BudgetValidation(BaseModel):
    within_budget: bool
    level: Optional[BudgetScope] = None  # budget that covers the amount
    budget_id: str | None = None
    remaining: float = 0.0  # adjusted limit minus spend, before this requisition
    escalated: bool = False
    adjusted_limit: float = 0.0  # limit the commit is guarded against
    seasonal_multiplier: float = 1.0
    season: str | None = None
    required_level: ApprovalLevel = ApprovalLevel.AUTO
    reason: str = ""


def seasonal_multiplier(budget: Budget, at: datetime) -> tuple[float, str]:
    """
    Look up the multiplier for a month.

    A month-number entry ("1".."12") beats its season entry ("winter").
    Missing entries default to 1.0.
    """
    season = SEASON_BY_MONTH[at.month]
    table = budget.seasonal_adjustments
    month_key = str(at.month)
    if month_key in table:
        return float(table[month_key]), season
    return float(table.get(season, 1.0)), season


class BudgetValidator:
    """
    Checks a requisition against its vessel budget, then the parent fleet budget.

    A budget covers a requisition while it still has headroom and the
    amount fits its (seasonally adjusted) limit; see ``fits_budget``.
    Limit 10,000 with 3,000 spent covers 8,000 and reports 7,000 remaining.

    Outcomes:
    - VESSEL: the vessel budget covers it, no extra approval
    - FLEET: only the fleet budget covers it, escalated, needs PROCUREMENT_MANAGER+
    - not within budget: needs SENIOR_MANAGEMENT+ and is approved uncommitted
    """

    def __init__(self, store: ProcurementStoreBase, clock: Clock = None):
        self.store = store
        self.clock = clock or SystemClock()

    def validate(self, requisition: Requisition, at: datetime = None) -> BudgetValidation:
        at = at or self.clock.now()
        amount = requisition.amount

        vessel_budget = self.store.get_vessel_budget(requisition.vessel_id)
        if vessel_budget is None:
            logger.warning("No vessel budget configured", vessel_id=requisition.vessel_id,
                           requisition_id=requisition.id)
            return BudgetValidation(
                within_budget=False,
                required_level=ApprovalLevel.SENIOR_MANAGEMENT,
                reason=f"No budget configured for vessel {requisition.vessel_id}",
            )

        if vessel_budget.currency != requisition.currency:
            logger.warning(
                "Requisition currency does not match vessel budget",
                requisition_id=requisition.id,
                requisition_currency=requisition.currency,
                budget_currency=vessel_budget.currency,
            )
            return BudgetValidation(
                within_budget=False,
                budget_id=vessel_budget.id,
                required_level=ApprovalLevel.SENIOR_MANAGEMENT,
                reason=f"Currency {requisition.currency} does not match budget currency {vessel_budget.currency}",
            )

        multiplier, season = seasonal_multiplier(vessel_budget, at)
        adjusted_limit = vessel_budget.monthly_limit * multiplier

        if fits_budget(vessel_budget.current_spent, amount, adjusted_limit):
            return BudgetValidation(
                within_budget=True,
                level=BudgetScope.VESSEL,
                budget_id=vessel_budget.id,
                remaining=adjusted_limit - vessel_budget.current_spent,
                adjusted_limit=adjusted_limit,
                seasonal_multiplier=multiplier,
                season=season,
                reason="Within vessel budget",
            )

        fleet_budget = None
        if vessel_budget.parent_budget_id:
            fleet_budget = self.store.get_budget(vessel_budget.parent_budget_id)

        if (
            fleet_budget is not None
            and fleet_budget.currency == requisition.currency
            and fits_budget(fleet_budget.current_spent, amount, fleet_budget.monthly_limit)
        ):
            logger.info(
                "Vessel budget exceeded, fleet budget covers requisition",
                requisition_id=requisition.id,
                vessel_budget_id=vessel_budget.id,
                fleet_budget_id=fleet_budget.id,
            )
            return BudgetValidation(
                within_budget=True,
                level=BudgetScope.FLEET,
                budget_id=fleet_budget.id,
                remaining=fleet_budget.monthly_limit - fleet_budget.current_spent,
                escalated=True,
                adjusted_limit=fleet_budget.monthly_limit,
                seasonal_multiplier=multiplier,
                season=season,
                required_level=ApprovalLevel.PROCUREMENT_MANAGER,
                reason="Vessel budget exceeded",
            )

        logger.warning(
            "Requisition exceeds vessel and fleet budgets",
            requisition_id=requisition.id,
            amount=amount,
            vessel_budget_id=vessel_budget.id,
        )
        return BudgetValidation(
            within_budget=False,
            budget_id=vessel_budget.id,
            remaining=adjusted_limit - vessel_budget.current_spent,
            escalated=True,
            adjusted_limit=adjusted_limit,
            seasonal_multiplier=multiplier,
            season=season,
            required_level=ApprovalLevel.SENIOR_MANAGEMENT,
            reason="Vessel and fleet budgets exceeded",
        )

    def commit(self, requisition: Requisition, validation: BudgetValidation) -> Budget:
        """
        Charge the requisition to the budget that covered it.

        Raises:
            BudgetExceededError: if the validation failed or a concurrent
                commit consumed the headroom
        """
        if not validation.within_budget or validation.budget_id is None:
            raise BudgetExceededError(
                f"No budget covers requisition {requisition.id}: {validation.reason}",
                details={"requisition_id": requisition.id, "amount": requisition.amount},
            )

        budget = self.store.increment_budget_spent(
            validation.budget_id, requisition.amount, validation.adjusted_limit
        )
        logger.info(
            "Budget committed",
            requisition_id=requisition.id,
            budget_id=budget.id,
            scope=budget.scope.value,
            amount=requisition.amount,
            current_spent=budget.current_spent,
        )
        return budget
