"""
Abstract base class for the procurement data store.

The workflow core never owns persistence: it reads snapshots and hands
mutations back through this interface. Implementations must make
``transition_requisition`` and ``transition_approval`` compare-and-swaps
on status and version, and ``increment_budget_spent`` an atomic guarded
increment.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ...models import (
    ApprovalRecord,
    ApprovalStatus,
    AuditEntry,
    Budget,
    Delegation,
    Requisition,
    RequisitionStatus,
    User,
    UserRole,
    WorkflowRule,
)

# Absorbs float noise in limit comparisons
BUDGET_EPSILON = 1e-6


def fits_budget(current_spent: float, amount: float, limit: float) -> bool:
    """
    Whether a budget can take a requisition.

    The budget must still have headroom and the requisition on its own must
    fit the period limit. A single requisition may carry spend past the
    limit, after which the budget covers nothing more this period.
    """
    return current_spent < limit - BUDGET_EPSILON and amount <= limit + BUDGET_EPSILON


class ProcurementStoreBase(ABC):
    """
    Abstract data-access collaborator.

    Implementations can use:
    - In-memory storage (for testing/demo)
    - SQLite (for single-instance deployments)
    - PostgreSQL / SQL Server (for production)
    """

    # ---- requisitions -------------------------------------------------

    @abstractmethod
    def get_requisition(self, requisition_id: str) -> Optional[Requisition]:
        """Return a snapshot of the requisition, or None if unknown."""
        pass

    @abstractmethod
    def save_requisition(self, requisition: Requisition) -> None:
        """Insert or replace a requisition as given (intake and seeding)."""
        pass

    @abstractmethod
    def transition_requisition(
        self,
        requisition_id: str,
        expected: tuple[RequisitionStatus, ...],
        expected_version: Optional[int] = None,
        **changes,
    ) -> Requisition:
        """
        Compare-and-swap update of a requisition's workflow fields.

        Applies ``changes`` only if the stored status is one of ``expected``
        and, when given, the stored version equals ``expected_version``.
        The version is bumped on success.

        Raises:
            ConflictError: if the status or version no longer match
            RequisitionNotFoundError: if the requisition does not exist
        """
        pass

    @abstractmethod
    def list_requisitions(self) -> list[Requisition]:
        pass

    # ---- users --------------------------------------------------------

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def find_users_by_role(self, role: UserRole, vessel_id: str) -> list[User]:
        """
        Active users holding a role who serve a vessel.

        Users assigned to the vessel come first, then fleet-wide users
        (no vessel assignments), each group ordered by id.
        """
        pass

    # ---- budgets ------------------------------------------------------

    @abstractmethod
    def get_budget(self, budget_id: str) -> Optional[Budget]:
        pass

    @abstractmethod
    def get_vessel_budget(self, vessel_id: str) -> Optional[Budget]:
        pass

    @abstractmethod
    def increment_budget_spent(self, budget_id: str, amount: float, limit: float) -> Budget:
        """
        Atomically add to a budget's current_spent.

        Args:
            budget_id: Budget to charge
            amount: Amount to add
            limit: Limit checked with ``fits_budget`` against the stored spend

        Returns:
            Updated budget snapshot

        Raises:
            BudgetExceededError: if the budget no longer fits the amount
            ConfigurationError: if the budget does not exist
        """
        pass

    # ---- reference data ----------------------------------------------

    @abstractmethod
    def list_delegations(self, from_user_id: Optional[str] = None) -> list[Delegation]:
        pass

    @abstractmethod
    def list_rules(self) -> list[WorkflowRule]:
        pass

    # ---- approval records --------------------------------------------

    @abstractmethod
    def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        """
        Insert a new approval record.

        Raises:
            ConflictError: if the requisition already has an active record
        """
        pass

    @abstractmethod
    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        pass

    @abstractmethod
    def list_approvals(self, requisition_id: str) -> list[ApprovalRecord]:
        """All records for a requisition, oldest first."""
        pass

    @abstractmethod
    def get_active_approval(self, requisition_id: str) -> Optional[ApprovalRecord]:
        pass

    @abstractmethod
    def list_active_approvals(self) -> list[ApprovalRecord]:
        """Every PENDING or DELEGATED record, oldest first."""
        pass

    @abstractmethod
    def transition_approval(
        self,
        approval_id: str,
        expected: tuple[ApprovalStatus, ...],
        expected_version: Optional[int] = None,
        **changes,
    ) -> ApprovalRecord:
        """
        Compare-and-swap update of an approval record.

        Applies ``changes`` only if the stored status is one of ``expected``
        and, when given, the stored version equals ``expected_version``
        (nobody wrote the record since it was read). The version is bumped
        on success.

        Raises:
            ConflictError: if the record is not in an expected state or version
            ApprovalNotFoundError: if the record does not exist
        """
        pass

    # ---- audit --------------------------------------------------------

    @abstractmethod
    def record_audit(self, entry: AuditEntry) -> None:
        pass

    @abstractmethod
    def list_audit(self, requisition_id: Optional[str] = None) -> list[AuditEntry]:
        pass
