"""
Captain's emergency override.

A narrow privileged path: the vessel's captain approves an EMERGENCY
requisition immediately, bypassing routing. The requisition is flagged for
mandatory post-hoc review by shore management, which does not block
execution.
"""

from typing import Optional

from loguru import logger
from pydantic import BaseModel

from ..core.clock import Clock, SystemClock
from ..core.errors import (
    AuthorizationError,
    BudgetExceededError,
    ClassificationError,
    ConflictError,
    RequisitionNotFoundError,
    ValidationError,
)
from ..models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ApprovalStatus,
    AuditEntry,
    Requisition,
    RequisitionStatus,
    Urgency,
    UserRole,
)
from .budget_validator import BudgetValidator
from .events import EmergencyOverrideEvent, EventPublisher
from .storage.store_base import ProcurementStoreBase

POST_REVIEW_ROLES = (UserRole.PROCUREMENT_MANAGER, UserRole.SENIOR_MANAGEMENT, UserRole.ADMIN)


class OverrideRequest(BaseModel):
    captain_id: str
    reason: str


class OverrideResult(BaseModel):
    requisition_id: str
    approved: bool
    emergency_override: bool
    requires_post_approval: bool
    overridden_by: str
    budget_committed: bool = False
    closed_approval_id: str | None = None


class EmergencyOverrideHandler:
    def __init__(
        self,
        store: ProcurementStoreBase,
        budget_validator: BudgetValidator,
        publisher: Optional[EventPublisher] = None,
        clock: Clock = None,
    ):
        self.store = store
        self.budget_validator = budget_validator
        self.publisher = publisher or EventPublisher(service_bus_sender=None)
        self.clock = clock or SystemClock()

    def _load_requisition(self, requisition_id: str) -> Requisition:
        requisition = self.store.get_requisition(requisition_id)
        if requisition is None:
            raise RequisitionNotFoundError(f"Requisition {requisition_id} not found")
        return requisition

    def process_override(self, requisition_id: str, request: OverrideRequest) -> OverrideResult:
        """
        Approve an EMERGENCY requisition on the captain's authority.

        Args:
            requisition_id: Requisition to approve
            request: Captain identity and justification (stored verbatim)

        Returns:
            OverrideResult

        Raises:
            AuthorizationError: actor is not the captain of the requisition's vessel
            ClassificationError: requisition urgency is not EMERGENCY
            ValidationError: empty justification or requisition already decided
            ConflictError: the requisition or its open approval record changed
                concurrently (nothing is left half-applied)
        """
        requisition = self._load_requisition(requisition_id)

        captain = self.store.get_user(request.captain_id)
        if (
            captain is None
            or not captain.is_active
            or captain.role != UserRole.CAPTAIN
            or requisition.vessel_id not in captain.vessel_assignments
        ):
            logger.warning("Emergency override refused", requisition_id=requisition_id, actor_id=request.captain_id)
            raise AuthorizationError(
                "Only captains can perform emergency overrides",
                details={"requisition_id": requisition_id, "actor_id": request.captain_id},
            )

        if requisition.urgency != Urgency.EMERGENCY:
            raise ClassificationError(
                f"Emergency override requires EMERGENCY urgency, requisition is {requisition.urgency.value}",
                details={"requisition_id": requisition_id, "urgency": requisition.urgency.value},
            )
        if not request.reason or not request.reason.strip():
            raise ValidationError("Emergency override requires a justification")
        if requisition.status in TERMINAL_STATUSES:
            raise ValidationError(
                f"Requisition {requisition_id} is already {requisition.status.value}",
                details={"requisition_id": requisition_id, "status": requisition.status.value},
            )

        now = self.clock.now()

        # Close the open tier so the scheduler and approvers stop acting on it
        active = self.store.get_active_approval(requisition_id)
        closed = None
        if active is not None:
            closed = self.store.transition_approval(
                active.id,
                (active.status,),
                active.version,
                status=ApprovalStatus.APPROVED,
                decided_by=request.captain_id,
                decided_at=now,
                comments="Emergency override",
                history=active.history + [{
                    "action": "EMERGENCY_OVERRIDE",
                    "by": request.captain_id,
                    "at": now.isoformat(),
                }],
            )

        validation = self.budget_validator.validate(requisition, now)
        try:
            overridden = self.store.transition_requisition(
                requisition_id,
                OPEN_STATUSES,
                requisition.version,
                status=RequisitionStatus.APPROVED,
                emergency_override=True,
                requires_post_approval=True,
                overridden_by=request.captain_id,
                override_reason=request.reason,
                overridden_at=now,
                override_budget_exceeded=not validation.within_budget,
                budget_scope=validation.level if validation.within_budget else None,
                budget_id=validation.budget_id if validation.within_budget else None,
            )
        except ConflictError:
            if closed is not None:
                self.store.transition_approval(
                    active.id,
                    (ApprovalStatus.APPROVED,),
                    closed.version,
                    status=active.status,
                    decided_by=None,
                    decided_at=None,
                    comments=None,
                    history=active.history,
                )
            raise

        committed = False
        if validation.within_budget:
            try:
                self.budget_validator.commit(requisition, validation)
                committed = True
            except BudgetExceededError as e:
                logger.warning("Budget headroom consumed concurrently, flagging override", requisition_id=requisition_id,
                               error=e.message)
                self.store.transition_requisition(
                    requisition_id,
                    (RequisitionStatus.APPROVED,),
                    overridden.version,
                    override_budget_exceeded=True,
                    budget_scope=None,
                    budget_id=None,
                )

        self.store.record_audit(AuditEntry(
            action="EMERGENCY_OVERRIDE",
            requisition_id=requisition_id,
            actor_id=request.captain_id,
            timestamp=now,
            details={
                "justification": request.reason,
                "amount": requisition.amount,
                "currency": requisition.currency,
                "closed_approval_id": active.id if active else None,
                "budget_committed": committed,
                "budget_reason": validation.reason,
            },
        ))

        logger.info("Emergency override applied", requisition_id=requisition_id, captain_id=request.captain_id,
                    budget_committed=committed)

        try:
            self.publisher.publish_emergency_override(EmergencyOverrideEvent(
                requisition_id=requisition_id,
                vessel_id=requisition.vessel_id,
                overridden_by=request.captain_id,
                reason=request.reason,
                amount=requisition.amount,
                currency=requisition.currency,
                timestamp=now.isoformat(),
            ))
        except Exception as e:
            logger.warning("Failed to publish emergency override event", requisition_id=requisition_id, error=str(e))

        return OverrideResult(
            requisition_id=requisition_id,
            approved=True,
            emergency_override=True,
            requires_post_approval=True,
            overridden_by=request.captain_id,
            budget_committed=committed,
            closed_approval_id=active.id if active else None,
        )

    def approve_post_review(self, requisition_id: str, reviewer_id: str, comments: str = None) -> Requisition:
        """
        Record shore management's after-the-fact review of an override.

        Raises:
            ValidationError: requisition has no outstanding review
            AuthorizationError: reviewer lacks a review role
        """
        requisition = self._load_requisition(requisition_id)
        if not (requisition.emergency_override and requisition.requires_post_approval):
            raise ValidationError(f"Requisition {requisition_id} has no pending post-approval review")

        reviewer = self.store.get_user(reviewer_id)
        if reviewer is None or not reviewer.is_active or reviewer.role not in POST_REVIEW_ROLES:
            raise AuthorizationError(
                f"User {reviewer_id} cannot review emergency overrides",
                details={"requisition_id": requisition_id, "reviewer_id": reviewer_id},
            )

        now = self.clock.now()
        requisition = self.store.transition_requisition(
            requisition_id,
            (requisition.status,),
            requisition.version,
            requires_post_approval=False,
            post_approved_by=reviewer_id,
            post_approved_at=now,
            post_approval_comments=comments,
        )

        self.store.record_audit(AuditEntry(
            action="POST_APPROVAL",
            requisition_id=requisition_id,
            actor_id=reviewer_id,
            timestamp=now,
            details={"comments": comments, "overridden_by": requisition.overridden_by},
        ))
        logger.info("Emergency override reviewed", requisition_id=requisition_id, reviewer_id=reviewer_id)
        return requisition

    def list_pending_post_reviews(self) -> list[Requisition]:
        pending = [
            r for r in self.store.list_requisitions()
            if r.emergency_override and r.requires_post_approval
        ]
        pending.sort(key=lambda r: r.overridden_at)
        return pending
