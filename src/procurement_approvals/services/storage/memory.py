"""
In-memory procurement store (tests, demos, single-process use).
A single re-entrant lock makes CAS updates and budget increments atomic.
"""
import threading
from typing import Dict, Optional

from ...core.errors import (
    ApprovalNotFoundError,
    BudgetExceededError,
    ConfigurationError,
    ConflictError,
    RequisitionNotFoundError,
)
from ...models import (
    ACTIVE_STATUSES,
    ApprovalRecord,
    ApprovalStatus,
    AuditEntry,
    Budget,
    BudgetScope,
    Delegation,
    Requisition,
    RequisitionStatus,
    User,
    UserRole,
    WorkflowRule,
)
from .store_base import ProcurementStoreBase, fits_budget


class InMemoryProcurementStore(ProcurementStoreBase):
    def __init__(self):
        self._lock = threading.RLock()
        self._requisitions: Dict[str, Requisition] = {}
        self._users: Dict[str, User] = {}
        self._budgets: Dict[str, Budget] = {}
        self._delegations: Dict[str, Delegation] = {}
        self._rules: Dict[str, WorkflowRule] = {}
        self._approvals: Dict[str, ApprovalRecord] = {}
        self._audit: list[AuditEntry] = []

    # Seeding helpers (the surrounding service owns these writes)

    def add_requisition(self, requisition: Requisition) -> None:
        self.save_requisition(requisition)

    def add_user(self, user: User) -> None:
        with self._lock:
            self._users[user.id] = user.model_copy(deep=True)

    def add_budget(self, budget: Budget) -> None:
        with self._lock:
            self._budgets[budget.id] = budget.model_copy(deep=True)

    def add_delegation(self, delegation: Delegation) -> None:
        with self._lock:
            self._delegations[delegation.id] = delegation.model_copy(deep=True)

    def add_rule(self, rule: WorkflowRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule.model_copy(deep=True)

    # Requisitions

    def get_requisition(self, requisition_id: str) -> Optional[Requisition]:
        with self._lock:
            requisition = self._requisitions.get(requisition_id)
            return requisition.model_copy(deep=True) if requisition else None

    def save_requisition(self, requisition: Requisition) -> None:
        with self._lock:
            self._requisitions[requisition.id] = requisition.model_copy(deep=True)

    def transition_requisition(
        self,
        requisition_id: str,
        expected: tuple[RequisitionStatus, ...],
        expected_version: Optional[int] = None,
        **changes,
    ) -> Requisition:
        with self._lock:
            requisition = self._requisitions.get(requisition_id)
            if requisition is None:
                raise RequisitionNotFoundError(f"Requisition {requisition_id} not found")
            if requisition.status not in expected:
                raise ConflictError(
                    f"Requisition {requisition_id} is {requisition.status.value}, expected "
                    + "/".join(s.value for s in expected),
                    details={"requisition_id": requisition_id, "status": requisition.status.value},
                )
            if expected_version is not None and requisition.version != expected_version:
                raise ConflictError(
                    f"Requisition {requisition_id} was modified concurrently",
                    details={"requisition_id": requisition_id, "version": requisition.version},
                )
            updated = requisition.model_copy(update={**changes, "version": requisition.version + 1}, deep=True)
            self._requisitions[requisition_id] = updated
            return updated.model_copy(deep=True)

    def list_requisitions(self) -> list[Requisition]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._requisitions.values()]

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def find_users_by_role(self, role: UserRole, vessel_id: str) -> list[User]:
        with self._lock:
            candidates = [
                u for u in self._users.values()
                if u.is_active and u.role == role and u.serves_vessel(vessel_id)
            ]
        candidates.sort(key=lambda u: (vessel_id not in u.vessel_assignments, u.id))
        return [u.model_copy(deep=True) for u in candidates]

    # Budgets

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        with self._lock:
            budget = self._budgets.get(budget_id)
            return budget.model_copy(deep=True) if budget else None

    def get_vessel_budget(self, vessel_id: str) -> Optional[Budget]:
        with self._lock:
            for budget in self._budgets.values():
                if budget.scope == BudgetScope.VESSEL and budget.owner_id == vessel_id:
                    return budget.model_copy(deep=True)
        return None

    def increment_budget_spent(self, budget_id: str, amount: float, limit: float) -> Budget:
        with self._lock:
            budget = self._budgets.get(budget_id)
            if budget is None:
                raise ConfigurationError(f"Budget {budget_id} not found")
            if not fits_budget(budget.current_spent, amount, limit):
                raise BudgetExceededError(
                    f"Budget {budget_id} cannot absorb {amount:.2f}",
                    details={"budget_id": budget_id, "current_spent": budget.current_spent, "limit": limit},
                )
            budget.current_spent += amount
            return budget.model_copy(deep=True)

    # Reference data

    def list_delegations(self, from_user_id: Optional[str] = None) -> list[Delegation]:
        with self._lock:
            return [
                d.model_copy(deep=True) for d in self._delegations.values()
                if from_user_id is None or d.from_user_id == from_user_id
            ]

    def list_rules(self) -> list[WorkflowRule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._rules.values()]

    # Approval records

    def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        with self._lock:
            if record.id in self._approvals:
                raise ConflictError(f"Approval {record.id} already exists")
            if record.is_active:
                active = self._find_active(record.requisition_id)
                if active is not None:
                    raise ConflictError(
                        f"Requisition {record.requisition_id} already has active approval {active.id}",
                        details={"active_approval_id": active.id},
                    )
            self._approvals[record.id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            record = self._approvals.get(approval_id)
            return record.model_copy(deep=True) if record else None

    def list_approvals(self, requisition_id: str) -> list[ApprovalRecord]:
        with self._lock:
            records = [r for r in self._approvals.values() if r.requisition_id == requisition_id]
            records.sort(key=lambda r: r.created_at)
            return [r.model_copy(deep=True) for r in records]

    def get_active_approval(self, requisition_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            active = self._find_active(requisition_id)
            return active.model_copy(deep=True) if active else None

    def list_active_approvals(self) -> list[ApprovalRecord]:
        with self._lock:
            records = [r for r in self._approvals.values() if r.is_active]
            records.sort(key=lambda r: r.created_at)
            return [r.model_copy(deep=True) for r in records]

    def transition_approval(
        self,
        approval_id: str,
        expected: tuple[ApprovalStatus, ...],
        expected_version: Optional[int] = None,
        **changes,
    ) -> ApprovalRecord:
        with self._lock:
            record = self._approvals.get(approval_id)
            if record is None:
                raise ApprovalNotFoundError(f"Approval {approval_id} not found")
            if record.status not in expected:
                raise ConflictError(
                    f"Approval {approval_id} is {record.status.value}, expected "
                    + "/".join(s.value for s in expected),
                    details={"approval_id": approval_id, "status": record.status.value},
                )
            if expected_version is not None and record.version != expected_version:
                raise ConflictError(
                    f"Approval {approval_id} was modified concurrently",
                    details={"approval_id": approval_id, "version": record.version},
                )
            updated = record.model_copy(update={**changes, "version": record.version + 1}, deep=True)
            if updated.is_active and not record.is_active:
                other = self._find_active(record.requisition_id)
                if other is not None and other.id != approval_id:
                    raise ConflictError(f"Requisition {record.requisition_id} already has active approval {other.id}")
            self._approvals[approval_id] = updated
            return updated.model_copy(deep=True)

    def _find_active(self, requisition_id: str) -> Optional[ApprovalRecord]:
        for record in self._approvals.values():
            if record.requisition_id == requisition_id and record.status in ACTIVE_STATUSES:
                return record
        return None

    # Audit

    def record_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry.model_copy(deep=True))

    def list_audit(self, requisition_id: Optional[str] = None) -> list[AuditEntry]:
        with self._lock:
            return [
                e.model_copy(deep=True) for e in self._audit
                if requisition_id is None or e.requisition_id == requisition_id
            ]
