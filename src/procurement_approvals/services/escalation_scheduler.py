"""
Escalation of overdue approvals.

process_escalations() is one pass, triggered from outside (cron, the CLI).
Each overdue active record moves up exactly one authority level per pass.
The old record's CAS to ESCALATED makes a pass idempotent: a record that
was already escalated, decided or delegated concurrently is left alone.
"""

from datetime import timedelta
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..core.clock import Clock, SystemClock
from ..core.errors import ConfigurationError, ConflictError
from ..models import (
    ESCALATION_PATH,
    ApprovalLevel,
    ApprovalRecord,
    ApprovalStatus,
)
from .approval_router import new_approval_id
from .delegation_resolver import DelegationResolver
from .events import EscalationNotificationEvent, EventPublisher
from .storage.store_base import ProcurementStoreBase

ESCALATION_REASON = "Approval overdue"


class EscalatedApproval(BaseModel):
    approval_id: str  # the new PENDING record
    previous_approval_id: str
    requisition_id: str
    original_approver: str
    new_approver: str
    previous_level: ApprovalLevel
    new_level: ApprovalLevel
    escalation_reason: str = ESCALATION_REASON


class EscalationReport(BaseModel):
    escalated_approvals: list[EscalatedApproval] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)  # overdue but nowhere to go
    conflicts: list[str] = Field(default_factory=list)  # changed under us this pass
    notification_failures: list[str] = Field(default_factory=list)


class EscalationScheduler:
    def __init__(
        self,
        store: ProcurementStoreBase,
        resolver: DelegationResolver,
        publisher: Optional[EventPublisher] = None,
        clock: Clock = None,
    ):
        self.store = store
        self.resolver = resolver
        self.publisher = publisher or EventPublisher(service_bus_sender=None)
        self.clock = clock or SystemClock()

    def process_escalations(self) -> EscalationReport:
        """
        Escalate every active approval whose deadline has passed.

        Returns:
            EscalationReport listing escalated, skipped and conflicting records
        """
        now = self.clock.now()
        report = EscalationReport()

        overdue = [r for r in self.store.list_active_approvals() if r.escalation_deadline < now]
        for record in overdue:
            next_level = ESCALATION_PATH.get(record.level)
            if next_level is None:
                logger.warning("Overdue approval is already at the top of the chain", approval_id=record.id,
                               requisition_id=record.requisition_id, level=record.level.value)
                report.skipped.append(record.id)
                continue

            try:
                resolution = self.resolver.resolve_for_level(next_level, record.vessel_id, now)
            except ConfigurationError as e:
                logger.warning("Cannot escalate approval, no approver for next level", approval_id=record.id,
                               next_level=next_level.value, error=e.message)
                report.skipped.append(record.id)
                continue

            try:
                escalated_record = self.store.transition_approval(
                    record.id,
                    (record.status,),
                    record.version,
                    status=ApprovalStatus.ESCALATED,
                    reason=ESCALATION_REASON,
                    history=record.history + [{
                        "action": "ESCALATED",
                        "to_level": next_level.value,
                        "at": now.isoformat(),
                    }],
                )
            except ConflictError as e:
                logger.info("Approval changed during escalation pass, skipping", approval_id=record.id,
                            error=e.message)
                report.conflicts.append(record.id)
                continue

            new_record = ApprovalRecord(
                id=new_approval_id(),
                requisition_id=record.requisition_id,
                vessel_id=record.vessel_id,
                level=next_level,
                tier_index=record.tier_index,
                assigned_to=resolution.approver_id,
                created_at=now,
                escalation_deadline=now + timedelta(hours=record.escalation_hours),
                escalation_hours=record.escalation_hours,
                delegated_to=resolution.approver_id if resolution.delegated else None,
                original_approver_id=resolution.original_approver_id,
                delegation_reason=resolution.delegation_reason,
                reason=ESCALATION_REASON,
                escalated_from=record.id,
                history=[{"action": "CREATED", "escalated_from": record.id, "at": now.isoformat()}],
            )
            try:
                self.store.create_approval(new_record)
            except ConflictError as e:
                # Another writer opened an active record for this requisition
                logger.error("Escalated approval could not be reopened", approval_id=record.id,
                             requisition_id=record.requisition_id, error=e.message)
                self._restore(record, escalated_record)
                report.conflicts.append(record.id)
                continue
            except Exception:
                self._restore(record, escalated_record)
                raise

            logger.info(
                "Approval escalated",
                approval_id=record.id,
                new_approval_id=new_record.id,
                requisition_id=record.requisition_id,
                from_level=record.level.value,
                to_level=next_level.value,
                new_approver=new_record.assigned_to,
            )

            escalated = EscalatedApproval(
                approval_id=new_record.id,
                previous_approval_id=record.id,
                requisition_id=record.requisition_id,
                original_approver=record.assigned_to,
                new_approver=new_record.assigned_to,
                previous_level=record.level,
                new_level=next_level,
            )
            report.escalated_approvals.append(escalated)

            event = EscalationNotificationEvent(
                approval_id=new_record.id,
                original_approver=record.assigned_to,
                new_approver=new_record.assigned_to,
                requisition_id=record.requisition_id,
                reason=ESCALATION_REASON,
                previous_level=record.level.value,
                new_level=next_level.value,
                timestamp=now.isoformat(),
            )
            if not self.send_escalation_notification(event):
                report.notification_failures.append(new_record.id)

        if overdue:
            logger.info(
                "Escalation pass complete",
                overdue=len(overdue),
                escalated=len(report.escalated_approvals),
                skipped=len(report.skipped),
                conflicts=len(report.conflicts),
            )
        return report

    def _restore(self, record: ApprovalRecord, escalated_record: ApprovalRecord) -> None:
        """Reactivate an overdue record whose replacement could not be created."""
        try:
            self.store.transition_approval(
                record.id,
                (ApprovalStatus.ESCALATED,),
                escalated_record.version,
                status=record.status,
                reason=record.reason,
                history=record.history,
            )
        except ConflictError as e:
            logger.error("Could not reactivate approval after failed escalation", approval_id=record.id,
                         requisition_id=record.requisition_id, error=e.message)
            return
        logger.warning("Escalation rolled back, approval left with its current approver", approval_id=record.id,
                       requisition_id=record.requisition_id)

    def send_escalation_notification(self, event: EscalationNotificationEvent) -> bool:
        """
        Hand an escalation event to the notification collaborator.

        Returns False when delivery failed. A disabled publisher counts as
        delivered (nothing is configured to receive it).
        """
        try:
            self.publisher.publish_escalation(event)
            return True
        except Exception as e:
            logger.warning("Failed to publish escalation notification", approval_id=event.approval_id,
                           error=str(e))
            return False
