"""
Delegation of approval authority.

Maps an approval role on a vessel to the person who should act now, following
at most one active delegation from the role's default approver. The
original approver is kept on the record so the audit trail stays continuous.
"""

from datetime import datetime
from typing import Optional

from loguru import logger
from pydantic import BaseModel

from ..core.clock import Clock, SystemClock
from ..core.errors import ApprovalNotFoundError, ConfigurationError
from ..models import ApprovalLevel, ApprovalRecord, ApprovalStatus, Delegation, UserRole
from .storage.store_base import ProcurementStoreBase

ROLE_FOR_LEVEL = {
    ApprovalLevel.SUPERINTENDENT: UserRole.SUPERINTENDENT,
    ApprovalLevel.PROCUREMENT_MANAGER: UserRole.PROCUREMENT_MANAGER,
    ApprovalLevel.SENIOR_MANAGEMENT: UserRole.SENIOR_MANAGEMENT,
    ApprovalLevel.CAPTAIN: UserRole.CAPTAIN,
}


class ApproverResolution(BaseModel):
    approver_id: str
    delegated: bool = False
    original_approver_id: str | None = None
    delegation_id: str | None = None
    delegation_reason: str | None = None
    ambiguous: bool = False


class ApprovalContinuity(BaseModel):
    continuity_maintained: bool
    current_approver: str | None = None
    original_approver: str | None = None
    delegated: bool = False


class DelegationResolver:
    def __init__(self, store: ProcurementStoreBase, clock: Clock = None):
        self.store = store
        self.clock = clock or SystemClock()

    def default_approver(self, role: UserRole, vessel_id: str) -> str:
        """
        The role's approver of record for a vessel.

        Raises:
            ConfigurationError: if nobody holds the role for the vessel
        """
        candidates = self.store.find_users_by_role(role, vessel_id)
        if not candidates:
            raise ConfigurationError(
                f"No active {role.value} configured for vessel {vessel_id}",
                details={"role": role.value, "vessel_id": vessel_id},
            )
        return candidates[0].id

    def active_delegation(self, from_user_id: str, vessel_id: str, at: datetime) -> tuple[Optional[Delegation], bool]:
        """
        Find the delegation in force for a user on a vessel.

        A vessel-specific delegation beats a fleet-wide one. Overlapping
        delegations in the same scope are a configuration error: the most
        recently created one wins and the result is flagged ambiguous.

        Returns:
            (delegation or None, ambiguous)
        """
        covering = [d for d in self.store.list_delegations(from_user_id) if d.covers(vessel_id, at)]
        if not covering:
            return None, False

        specific = [d for d in covering if d.vessel_id == vessel_id]
        scope = specific or covering
        scope.sort(key=lambda d: d.created_at, reverse=True)

        ambiguous = len(scope) > 1
        if ambiguous:
            logger.warning(
                "Overlapping delegations, using most recent",
                from_user_id=from_user_id,
                vessel_id=vessel_id,
                delegation_ids=[d.id for d in scope],
                chosen=scope[0].id,
            )
        return scope[0], ambiguous

    def resolve_approver(self, role: UserRole, vessel_id: str, at: datetime = None) -> ApproverResolution:
        """
        Resolve who approves for a role on a vessel at a point in time.

        Delegations are single-hop: a delegate's own delegation is not followed.
        """
        at = at or self.clock.now()
        original = self.default_approver(role, vessel_id)

        delegation, ambiguous = self.active_delegation(original, vessel_id, at)
        if delegation is None:
            return ApproverResolution(approver_id=original)

        logger.info(
            "Approval delegated",
            role=role.value,
            vessel_id=vessel_id,
            original_approver=original,
            delegate=delegation.to_user_id,
        )
        return ApproverResolution(
            approver_id=delegation.to_user_id,
            delegated=True,
            original_approver_id=original,
            delegation_id=delegation.id,
            delegation_reason=delegation.reason,
            ambiguous=ambiguous,
        )

    def resolve_for_level(self, level: ApprovalLevel, vessel_id: str, at: datetime = None) -> ApproverResolution:
        if level not in ROLE_FOR_LEVEL:
            raise ConfigurationError(f"Level {level.value} has no approver role")
        return self.resolve_approver(ROLE_FOR_LEVEL[level], vessel_id, at)

    def is_authorized(self, record: ApprovalRecord, actor_id: str, at: datetime = None) -> bool:
        """
        True when the actor may decide an approval record right now.

        Allowed: the assigned approver, an active delegate of the assigned
        approver, or the original approver once their delegation has lapsed.
        """
        at = at or self.clock.now()
        if actor_id == record.assigned_to:
            return True

        delegation, _ = self.active_delegation(record.assigned_to, record.vessel_id, at)
        if delegation is not None and delegation.to_user_id == actor_id:
            return True

        if record.original_approver_id == actor_id:
            lapsed, _ = self.active_delegation(actor_id, record.vessel_id, at)
            return lapsed is None

        return False

    def apply_delegation(self, approval_id: str) -> ApprovalRecord:
        """
        Reassign a PENDING record to its approver's current delegate.

        Returns the record unchanged when no delegation is in force.

        Raises:
            ApprovalNotFoundError: unknown record
            ConflictError: record is no longer PENDING
        """
        record = self.store.get_approval(approval_id)
        if record is None:
            raise ApprovalNotFoundError(f"Approval {approval_id} not found")

        at = self.clock.now()
        delegation, _ = self.active_delegation(record.assigned_to, record.vessel_id, at)
        if delegation is None:
            return record

        updated = self.store.transition_approval(
            approval_id,
            (ApprovalStatus.PENDING,),
            record.version,
            status=ApprovalStatus.DELEGATED,
            assigned_to=delegation.to_user_id,
            delegated_to=delegation.to_user_id,
            original_approver_id=record.assigned_to,
            delegation_reason=delegation.reason,
            history=record.history + [{
                "action": "DELEGATED",
                "from": record.assigned_to,
                "to": delegation.to_user_id,
                "at": at.isoformat(),
                "delegation_id": delegation.id,
            }],
        )
        logger.info(
            "Approval reassigned to delegate",
            approval_id=approval_id,
            original_approver=record.assigned_to,
            delegate=delegation.to_user_id,
        )
        return updated

    def check_approval_continuity(self, requisition_id: str) -> ApprovalContinuity:
        """Whether the active approval can still be traced to an approver of record."""
        record = self.store.get_active_approval(requisition_id)
        if record is None:
            return ApprovalContinuity(continuity_maintained=False)

        delegated = record.original_approver_id is not None
        return ApprovalContinuity(
            continuity_maintained=not delegated or record.delegated_to == record.assigned_to,
            current_approver=record.assigned_to,
            original_approver=record.original_approver_id or record.assigned_to,
            delegated=delegated,
        )
