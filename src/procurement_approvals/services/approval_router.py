"""
Approval routing and the sequential approval chain.

process_requisition() decides the required level and opens the first tier;
submit_decision() advances the chain one tier per approval, or ends it on a
rejection. Every write to a requisition or approval record is a
compare-and-swap on the version that was read, so a decision racing an
escalation, an override or another decision fails with ConflictError
instead of corrupting the chain.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from pydantic import BaseModel

from ..core.clock import Clock, SystemClock
from ..core.errors import (
    ApprovalNotFoundError,
    AuthorizationError,
    BudgetExceededError,
    ConflictError,
    RequisitionNotFoundError,
    ValidationError,
)
from ..models import (
    ACTIVE_STATUSES,
    LEVEL_RANK,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ApprovalLevel,
    ApprovalRecord,
    ApprovalStatus,
    AuditEntry,
    Requisition,
    RequisitionStatus,
    RuleActionType,
    build_tiers,
    higher_level,
)
from .budget_validator import BudgetValidation, BudgetValidator
from .delegation_resolver import ApproverResolution, DelegationResolver
from .rule_evaluator import RuleEvaluator
from .storage.store_base import ProcurementStoreBase


class RoutingResult(BaseModel):
    requisition_id: str
    approved: bool = False
    auto_approved: bool = False
    pending_approval: bool = False
    rejected: bool = False
    approval_level: Optional[ApprovalLevel] = None
    approval_tiers: list[ApprovalLevel] = []
    assigned_to: str | None = None
    approval_id: str | None = None
    delegated: bool = False
    original_approver_id: str | None = None
    expedited: bool = False
    escalation_time_hours: float | None = None
    matched_rule: str | None = None
    budget: Optional[BudgetValidation] = None
    reason: str = ""


class DecisionResult(BaseModel):
    approval_id: str
    requisition_id: str
    approved: bool = False
    rejected: bool = False
    can_proceed: bool = False
    requisition_status: RequisitionStatus
    approval_level: ApprovalLevel
    next_approval_id: str | None = None
    next_level: Optional[ApprovalLevel] = None
    assigned_to: str | None = None
    budget_exceeded: bool = False


def new_approval_id() -> str:
    return str(uuid.uuid4())


def next_tier_index(tiers: list[ApprovalLevel], record: ApprovalRecord) -> int:
    """
    Cursor position after a record is approved.

    An escalated record carries a higher level than its tier; approving it
    also satisfies the shore tiers at or below that level.
    """
    index = record.tier_index + 1
    if record.level == ApprovalLevel.CAPTAIN:
        return index
    while (
        index < len(tiers)
        and tiers[index] != ApprovalLevel.CAPTAIN
        and LEVEL_RANK[tiers[index]] <= LEVEL_RANK[record.level]
    ):
        index += 1
    return index


def extend_tiers(
    tiers: list[ApprovalLevel],
    required: ApprovalLevel,
    record: ApprovalRecord,
) -> list[ApprovalLevel]:
    """
    Tier list after the budget is re-checked at decision time.

    When budget cover has shrunk since routing, the shore tiers above
    anything already in the chain (or already signed by an escalated
    record) are appended up to the newly required level.
    """
    if required in (ApprovalLevel.AUTO, ApprovalLevel.CAPTAIN):
        return list(tiers)
    top = max((LEVEL_RANK[t] for t in tiers if t != ApprovalLevel.CAPTAIN), default=0)
    if record.level != ApprovalLevel.CAPTAIN:
        top = max(top, LEVEL_RANK[record.level])
    return list(tiers) + [t for t in build_tiers(required) if LEVEL_RANK[t] > top]


class ApprovalRouter:
    """
    Routes requisitions and applies approval decisions.

    Consults the rule evaluator and budget validator for the required level,
    the delegation resolver for the current approver, and persists approval
    records through the store.
    """

    def __init__(
        self,
        store: ProcurementStoreBase,
        evaluator: RuleEvaluator,
        budget_validator: BudgetValidator,
        resolver: DelegationResolver,
        clock: Clock = None,
    ):
        self.store = store
        self.evaluator = evaluator
        self.budget_validator = budget_validator
        self.resolver = resolver
        self.clock = clock or SystemClock()

    def _load_requisition(self, requisition_id: str) -> Requisition:
        requisition = self.store.get_requisition(requisition_id)
        if requisition is None:
            raise RequisitionNotFoundError(f"Requisition {requisition_id} not found")
        return requisition

    def _required_tiers(self, rule_level: ApprovalLevel, budget: BudgetValidation) -> tuple[ApprovalLevel, list[ApprovalLevel]]:
        level = higher_level(rule_level, budget.required_level)
        if level == ApprovalLevel.CAPTAIN:
            # Captain sign-off plus whatever shore tiers the budget demands
            return level, [ApprovalLevel.CAPTAIN] + build_tiers(budget.required_level)
        return level, build_tiers(level)

    def _claim(self, requisition: Requisition, **changes) -> Requisition:
        """Move an open requisition on, provided nobody wrote it since it was read."""
        return self.store.transition_requisition(requisition.id, OPEN_STATUSES, requisition.version, **changes)

    def process_requisition(self, requisition_id: str) -> RoutingResult:
        """
        Route a new or resubmitted requisition.

        Args:
            requisition_id: Requisition to route

        Returns:
            RoutingResult describing auto-approval, rejection or the pending tier

        Raises:
            RequisitionNotFoundError: unknown requisition
            ValidationError: non-positive amount or already decided
            ConflictError: an approval is already in progress, or another
                writer moved the requisition on while it was being routed
            BudgetExceededError: an auto-approval lost its budget headroom
                to a concurrent commit (nothing is persisted)
        """
        requisition = self._load_requisition(requisition_id)
        if requisition.amount <= 0:
            raise ValidationError(
                f"Requisition amount must be positive, got {requisition.amount}",
                details={"requisition_id": requisition_id},
            )
        if requisition.status in TERMINAL_STATUSES:
            raise ValidationError(
                f"Requisition {requisition_id} is already {requisition.status.value}",
                details={"requisition_id": requisition_id, "status": requisition.status.value},
            )
        active = self.store.get_active_approval(requisition_id)
        if active is not None:
            raise ConflictError(
                f"Requisition {requisition_id} already has active approval {active.id}",
                details={"active_approval_id": active.id},
            )

        now = self.clock.now()
        evaluation = self.evaluator.evaluate(requisition)

        if evaluation.action == RuleActionType.REJECT:
            self._claim(requisition, status=RequisitionStatus.REJECTED, expedited=evaluation.expedited)
            self.store.record_audit(AuditEntry(
                action="RULE_REJECTED",
                requisition_id=requisition_id,
                actor_id="system",
                timestamp=now,
                details={
                    "matched_rule": evaluation.matched_rule,
                    "reason": evaluation.reason,
                    "diagnostics": evaluation.diagnostics,
                },
            ))
            logger.info("Requisition rejected by workflow rules", requisition_id=requisition_id,
                        matched_rule=evaluation.matched_rule)
            return RoutingResult(
                requisition_id=requisition_id,
                rejected=True,
                expedited=evaluation.expedited,
                matched_rule=evaluation.matched_rule,
                reason=evaluation.reason,
            )

        budget = self.budget_validator.validate(requisition, now)
        level, tiers = self._required_tiers(evaluation.level, budget)
        routing = {
            "approval_level": level,
            "approval_tiers": tiers,
            "current_tier": 0,
            "expedited": evaluation.expedited,
            "budget_scope": budget.level,
            "budget_id": budget.budget_id,
        }

        reason = evaluation.reason
        if budget.required_level != ApprovalLevel.AUTO:
            reason += f"; {budget.reason}"

        if level == ApprovalLevel.AUTO:
            return self._auto_approve(requisition, routing, budget, evaluation, reason)

        # Resolve before writing so a missing approver leaves nothing behind
        resolution = self.resolver.resolve_for_level(tiers[0], requisition.vessel_id, now)

        # The one-active-record rule makes this the point where concurrent
        # routings of the same requisition part ways
        record = self._open_tier(requisition, tiers[0], 0, resolution, evaluation.escalation_hours, now)
        try:
            self._claim(requisition, status=RequisitionStatus.PENDING_APPROVAL, **routing)
        except ConflictError:
            self._cancel(record, now)
            raise

        logger.info(
            "Requisition routed for approval",
            requisition_id=requisition_id,
            level=level.value,
            tiers=[t.value for t in tiers],
            assigned_to=record.assigned_to,
            expedited=evaluation.expedited,
        )

        return RoutingResult(
            requisition_id=requisition_id,
            pending_approval=True,
            approval_level=level,
            approval_tiers=tiers,
            assigned_to=record.assigned_to,
            approval_id=record.id,
            delegated=resolution.delegated,
            original_approver_id=resolution.original_approver_id,
            expedited=evaluation.expedited,
            escalation_time_hours=evaluation.escalation_hours,
            matched_rule=evaluation.matched_rule,
            budget=budget,
            reason=reason,
        )

    def _auto_approve(self, requisition, routing, budget, evaluation, reason) -> RoutingResult:
        # Claim first: of two concurrent routings only one reaches the budget
        claimed = self._claim(requisition, status=RequisitionStatus.APPROVED, auto_approved=True, **routing)
        try:
            self.budget_validator.commit(requisition, budget)
        except BudgetExceededError:
            self.store.transition_requisition(
                requisition.id,
                (RequisitionStatus.APPROVED,),
                claimed.version,
                status=requisition.status,
                auto_approved=False,
                approval_level=requisition.approval_level,
                approval_tiers=requisition.approval_tiers,
                current_tier=requisition.current_tier,
                expedited=requisition.expedited,
                budget_scope=requisition.budget_scope,
                budget_id=requisition.budget_id,
            )
            raise

        logger.info("Requisition auto-approved", requisition_id=requisition.id, amount=requisition.amount)
        return RoutingResult(
            requisition_id=requisition.id,
            approved=True,
            auto_approved=True,
            approval_level=ApprovalLevel.AUTO,
            expedited=evaluation.expedited,
            matched_rule=evaluation.matched_rule,
            budget=budget,
            reason=reason,
        )

    def _open_tier(
        self,
        requisition: Requisition,
        level: ApprovalLevel,
        tier_index: int,
        resolution: ApproverResolution,
        escalation_hours: float,
        now: datetime,
    ) -> ApprovalRecord:
        record = ApprovalRecord(
            id=new_approval_id(),
            requisition_id=requisition.id,
            vessel_id=requisition.vessel_id,
            level=level,
            tier_index=tier_index,
            assigned_to=resolution.approver_id,
            created_at=now,
            escalation_deadline=now + timedelta(hours=escalation_hours),
            escalation_hours=escalation_hours,
            delegated_to=resolution.approver_id if resolution.delegated else None,
            original_approver_id=resolution.original_approver_id,
            delegation_reason=resolution.delegation_reason,
            history=[{"action": "CREATED", "assigned_to": resolution.approver_id, "at": now.isoformat()}],
        )
        return self.store.create_approval(record)

    def _cancel(self, record: ApprovalRecord, now: datetime) -> None:
        """Withdraw a record opened by a write that then lost its race."""
        try:
            self.store.transition_approval(
                record.id,
                ACTIVE_STATUSES,
                record.version,
                status=ApprovalStatus.CANCELLED,
                reason="Superseded by a concurrent update",
                history=record.history + [{"action": "CANCELLED", "at": now.isoformat()}],
            )
        except ConflictError as e:
            # The winning writer already closed it
            logger.info("Approval already closed by a concurrent update", approval_id=record.id, error=e.message)

    def _revert(self, record: ApprovalRecord, updated: ApprovalRecord) -> None:
        """Put a decided record back into the state it was read in."""
        self.store.transition_approval(
            record.id,
            (updated.status,),
            updated.version,
            status=record.status,
            decided_by=record.decided_by,
            decided_at=record.decided_at,
            comments=record.comments,
            history=record.history,
        )

    def submit_decision(
        self,
        approval_id: str,
        approver_id: str,
        approved: bool,
        comments: str = None,
    ) -> DecisionResult:
        """
        Apply one approver's decision to an active approval record.

        Approval advances the chain exactly one tier; rejection at any tier is
        terminal. The budget is re-checked on every approval: if its cover
        shrank since routing, higher tiers are appended. The final approval
        commits the budget, or, when no budget covers the amount, is made at
        SENIOR_MANAGEMENT level and flagged ``budget_exceeded``.

        Raises:
            ApprovalNotFoundError: unknown approval record
            ConflictError: record no longer active (decided, escalated,
                reassigned) or a concurrent write won
            AuthorizationError: approver is neither assigned nor a valid delegate
            BudgetExceededError: a concurrent commit took the headroom of the
                budget this approval was about to charge (nothing is persisted)
        """
        record = self.store.get_approval(approval_id)
        if record is None:
            raise ApprovalNotFoundError(f"Approval {approval_id} not found")
        if not record.is_active:
            raise ConflictError(
                f"Approval {approval_id} is already {record.status.value}",
                details={"approval_id": approval_id, "status": record.status.value},
            )

        now = self.clock.now()
        if not self.resolver.is_authorized(record, approver_id, now):
            logger.warning("Unauthorized approval decision", approval_id=approval_id, approver_id=approver_id,
                           assigned_to=record.assigned_to)
            raise AuthorizationError(
                f"User {approver_id} is not authorized to decide approval {approval_id}",
                details={"approval_id": approval_id, "assigned_to": record.assigned_to},
            )

        requisition = self._load_requisition(record.requisition_id)
        if requisition.status != RequisitionStatus.PENDING_APPROVAL:
            raise ConflictError(
                f"Requisition {requisition.id} is {requisition.status.value}, not awaiting approval",
                details={"requisition_id": requisition.id, "status": requisition.status.value},
            )

        decision = {
            "decided_by": approver_id,
            "decided_at": now,
            "comments": comments,
            "history": record.history + [{
                "action": "APPROVED" if approved else "REJECTED",
                "by": approver_id,
                "at": now.isoformat(),
            }],
        }

        if not approved:
            return self._reject(record, requisition, approver_id, comments, decision, now)

        validation = self.budget_validator.validate(requisition, now)
        tiers = extend_tiers(requisition.approval_tiers, validation.required_level, record)
        if len(tiers) > len(requisition.approval_tiers):
            logger.info("Budget cover changed since routing, approval chain extended", requisition_id=requisition.id,
                        added=[t.value for t in tiers[len(requisition.approval_tiers):]])
        next_index = next_tier_index(tiers, record)

        if next_index >= len(tiers):
            return self._final_approval(record, requisition, tiers, validation, decision, now)

        # Resolve before writing so a missing approver leaves the chain untouched
        next_level = tiers[next_index]
        resolution = self.resolver.resolve_for_level(next_level, requisition.vessel_id, now)

        updated = self.store.transition_approval(
            approval_id, (record.status,), record.version, status=ApprovalStatus.APPROVED, **decision
        )
        try:
            next_record = self._open_tier(
                requisition, next_level, next_index, resolution, record.escalation_hours, now
            )
        except ConflictError:
            self._revert(record, updated)
            raise
        try:
            self.store.transition_requisition(
                requisition.id,
                (RequisitionStatus.PENDING_APPROVAL,),
                requisition.version,
                current_tier=next_index,
                approval_tiers=tiers,
            )
        except ConflictError:
            self._cancel(next_record, now)
            self._revert(record, updated)
            raise

        logger.info(
            "Approval tier satisfied",
            approval_id=approval_id,
            requisition_id=requisition.id,
            level=record.level.value,
            next_level=next_level.value,
            assigned_to=next_record.assigned_to,
        )
        return DecisionResult(
            approval_id=approval_id,
            requisition_id=requisition.id,
            approved=True,
            can_proceed=False,
            requisition_status=RequisitionStatus.PENDING_APPROVAL,
            approval_level=record.level,
            next_approval_id=next_record.id,
            next_level=next_level,
            assigned_to=next_record.assigned_to,
        )

    def _reject(self, record, requisition, approver_id, comments, decision, now) -> DecisionResult:
        updated = self.store.transition_approval(
            record.id, (record.status,), record.version, status=ApprovalStatus.REJECTED, **decision
        )
        try:
            self.store.transition_requisition(
                requisition.id,
                (RequisitionStatus.PENDING_APPROVAL,),
                requisition.version,
                status=RequisitionStatus.REJECTED,
            )
        except ConflictError:
            self._revert(record, updated)
            raise

        self.store.record_audit(AuditEntry(
            action="REJECTED",
            requisition_id=requisition.id,
            actor_id=approver_id,
            timestamp=now,
            details={"approval_id": record.id, "level": record.level.value, "comments": comments},
        ))

        logger.info("Requisition rejected", requisition_id=requisition.id, approval_id=record.id,
                    level=record.level.value, rejected_by=approver_id)
        return DecisionResult(
            approval_id=record.id,
            requisition_id=requisition.id,
            rejected=True,
            requisition_status=RequisitionStatus.REJECTED,
            approval_level=record.level,
        )

    def _final_approval(self, record, requisition, tiers, validation, decision, now) -> DecisionResult:
        covered = validation.within_budget
        updated = self.store.transition_approval(
            record.id, (record.status,), record.version, status=ApprovalStatus.APPROVED, **decision
        )
        try:
            approved = self.store.transition_requisition(
                requisition.id,
                (RequisitionStatus.PENDING_APPROVAL,),
                requisition.version,
                status=RequisitionStatus.APPROVED,
                approval_tiers=tiers,
                current_tier=record.tier_index,
                budget_scope=validation.level if covered else None,
                budget_id=validation.budget_id if covered else None,
                budget_exceeded=not covered,
            )
        except ConflictError:
            self._revert(record, updated)
            raise

        if covered:
            try:
                self.budget_validator.commit(requisition, validation)
            except BudgetExceededError:
                # A concurrent final approval used the headroom; reopen this tier
                self.store.transition_requisition(
                    requisition.id,
                    (RequisitionStatus.APPROVED,),
                    approved.version,
                    status=RequisitionStatus.PENDING_APPROVAL,
                    approval_tiers=requisition.approval_tiers,
                    current_tier=requisition.current_tier,
                    budget_scope=requisition.budget_scope,
                    budget_id=requisition.budget_id,
                    budget_exceeded=False,
                )
                self._revert(record, updated)
                raise
        else:
            self.store.record_audit(AuditEntry(
                action="APPROVED_OVER_BUDGET",
                requisition_id=requisition.id,
                actor_id=decision["decided_by"],
                timestamp=now,
                details={
                    "approval_id": record.id,
                    "level": record.level.value,
                    "amount": requisition.amount,
                    "budget_reason": validation.reason,
                },
            ))
            logger.warning("Requisition approved with no budget covering it", requisition_id=requisition.id,
                           approval_id=record.id, amount=requisition.amount, budget_reason=validation.reason)

        logger.info("Requisition fully approved", requisition_id=requisition.id, approval_id=record.id,
                    level=record.level.value, budget_scope=validation.level.value if covered else None)
        return DecisionResult(
            approval_id=record.id,
            requisition_id=requisition.id,
            approved=True,
            can_proceed=True,
            requisition_status=RequisitionStatus.APPROVED,
            approval_level=record.level,
            budget_exceeded=not covered,
        )

    def approve(self, approval_id: str, approver_id: str, comments: str = None) -> DecisionResult:
        return self.submit_decision(approval_id, approver_id, True, comments)

    def reject(self, approval_id: str, approver_id: str, comments: str = None) -> DecisionResult:
        return self.submit_decision(approval_id, approver_id, False, comments)
