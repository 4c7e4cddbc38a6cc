"""
SQLite-backed procurement store.

Snapshots are stored as JSON payloads next to the columns the workflow
filters or guards on. Concurrency guarantees come from SQL itself:

- requisition and approval transitions: ``BEGIN IMMEDIATE``, a status and
  version check, then ``UPDATE ... WHERE id = ? AND version = ?``
- one active approval per requisition: partial unique index
- budget commitment: the headroom guard inside the UPDATE
"""

import sqlite3
from typing import Optional

from ...core.errors import (
    ApprovalNotFoundError,
    BudgetExceededError,
    ConfigurationError,
    ConflictError,
    RequisitionNotFoundError,
)
from ...models import (
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
from .store_base import BUDGET_EPSILON, ProcurementStoreBase


class SQLiteProcurementStore(ProcurementStoreBase):
    """
    SQLite-backed store with persistent storage.

    Features:
    - Persistent storage across process restarts (cron-driven escalation)
    - Optimistic concurrency on requisitions and approval records via version columns
    - Atomic, limit-guarded budget increments
    - Thread-safe operations (one connection per call, SQLite locking)
    """

    def __init__(self, db_path: str = "approvals.db"):
        """
        Initialize store with database path.

        Args:
            db_path: Path to SQLite database file (default: approvals.db)
        """
        self.db_path = db_path
        self._init_database()

    def _init_database(self):
        """Create tables and indexes if they don't exist"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.executescript("""
            CREATE TABLE IF NOT EXISTS requisitions (
                id TEXT PRIMARY KEY,
                vessel_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                role TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS budgets (
                id TEXT PRIMARY KEY,
                scope TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                monthly_limit REAL NOT NULL,
                current_spent REAL NOT NULL DEFAULT 0,
                data TEXT NOT NULL,
                CHECK (scope IN ('VESSEL', 'FLEET'))
            );

            CREATE TABLE IF NOT EXISTS delegations (
                id TEXT PRIMARY KEY,
                from_user_id TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workflow_rules (
                id TEXT PRIMARY KEY,
                priority INTEGER NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS approvals (
                id TEXT PRIMARY KEY,
                requisition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL,
                CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED', 'ESCALATED', 'DELEGATED', 'CANCELLED'))
            );

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                requisition_id TEXT NOT NULL,
                action TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL
            );
        """)

        # Enforces "one active approval per requisition" at the storage layer
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_one_active_approval
            ON approvals(requisition_id)
            WHERE status IN ('PENDING', 'DELEGATED')
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_approvals_status
            ON approvals(status)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_budgets_owner
            ON budgets(scope, owner_id)
        """)

        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory"""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _fetch_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    def _write(self, sql: str, params: tuple) -> None:
        conn = self._get_connection()
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    # Seeding helpers

    def add_requisition(self, requisition: Requisition) -> None:
        self.save_requisition(requisition)

    def add_user(self, user: User) -> None:
        self._write("""
            INSERT OR REPLACE INTO users (id, role, data) VALUES (?, ?, ?)
        """, (user.id, user.role.value, user.model_dump_json()))

    def add_budget(self, budget: Budget) -> None:
        self._write("""
            INSERT OR REPLACE INTO budgets (id, scope, owner_id, monthly_limit, current_spent, data)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            budget.id, budget.scope.value, budget.owner_id,
            budget.monthly_limit, budget.current_spent, budget.model_dump_json(),
        ))

    def add_delegation(self, delegation: Delegation) -> None:
        self._write("""
            INSERT OR REPLACE INTO delegations (id, from_user_id, data) VALUES (?, ?, ?)
        """, (delegation.id, delegation.from_user_id, delegation.model_dump_json()))

    def add_rule(self, rule: WorkflowRule) -> None:
        self._write("""
            INSERT OR REPLACE INTO workflow_rules (id, priority, data) VALUES (?, ?, ?)
        """, (rule.id, rule.priority, rule.model_dump_json()))

    # Requisitions

    def get_requisition(self, requisition_id: str) -> Optional[Requisition]:
        row = self._fetch_one("SELECT data FROM requisitions WHERE id = ?", (requisition_id,))
        if row is None:
            return None
        return Requisition.model_validate_json(row["data"])

    def save_requisition(self, requisition: Requisition) -> None:
        self._write("""
            INSERT INTO requisitions (id, vessel_id, status, version, data) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                vessel_id = excluded.vessel_id,
                status = excluded.status,
                version = excluded.version,
                data = excluded.data
        """, (
            requisition.id, requisition.vessel_id, requisition.status.value,
            requisition.version, requisition.model_dump_json(),
        ))

    def transition_requisition(
        self,
        requisition_id: str,
        expected: tuple[RequisitionStatus, ...],
        expected_version: Optional[int] = None,
        **changes,
    ) -> Requisition:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT status, version, data FROM requisitions WHERE id = ?", (requisition_id,)
            ).fetchone()
            if row is None:
                raise RequisitionNotFoundError(f"Requisition {requisition_id} not found")

            if row["status"] not in {s.value for s in expected}:
                raise ConflictError(
                    f"Requisition {requisition_id} is {row['status']}, expected "
                    + "/".join(s.value for s in expected),
                    details={"requisition_id": requisition_id, "status": row["status"]},
                )
            if expected_version is not None and row["version"] != expected_version:
                raise ConflictError(
                    f"Requisition {requisition_id} was modified concurrently",
                    details={"requisition_id": requisition_id, "version": row["version"]},
                )

            requisition = Requisition.model_validate_json(row["data"])
            updated = requisition.model_copy(update={**changes, "version": row["version"] + 1}, deep=True)
            conn.execute("""
                UPDATE requisitions
                SET status = ?, version = ?, data = ?
                WHERE id = ? AND version = ?
            """, (updated.status.value, updated.version, updated.model_dump_json(), requisition_id, row["version"]))
            conn.commit()
            return updated
        finally:
            conn.close()

    def list_requisitions(self) -> list[Requisition]:
        rows = self._fetch_all("SELECT data FROM requisitions ORDER BY id")
        return [Requisition.model_validate_json(row["data"]) for row in rows]

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetch_one("SELECT data FROM users WHERE id = ?", (user_id,))
        return User.model_validate_json(row["data"]) if row else None

    def find_users_by_role(self, role: UserRole, vessel_id: str) -> list[User]:
        rows = self._fetch_all("SELECT data FROM users WHERE role = ?", (role.value,))

        # Vessel assignments live in the JSON payload, filter here
        users = [User.model_validate_json(row["data"]) for row in rows]
        users = [u for u in users if u.is_active and u.serves_vessel(vessel_id)]
        users.sort(key=lambda u: (vessel_id not in u.vessel_assignments, u.id))
        return users

    # Budgets

    def _row_to_budget(self, row: sqlite3.Row) -> Budget:
        budget = Budget.model_validate_json(row["data"])
        budget.current_spent = row["current_spent"]
        return budget

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        row = self._fetch_one("SELECT data, current_spent FROM budgets WHERE id = ?", (budget_id,))
        return self._row_to_budget(row) if row else None

    def get_vessel_budget(self, vessel_id: str) -> Optional[Budget]:
        row = self._fetch_one("""
            SELECT data, current_spent FROM budgets
            WHERE scope = ? AND owner_id = ?
            ORDER BY id
            LIMIT 1
        """, (BudgetScope.VESSEL.value, vessel_id))
        return self._row_to_budget(row) if row else None

    def increment_budget_spent(self, budget_id: str, amount: float, limit: float) -> Budget:
        conn = self._get_connection()
        try:
            # Same rule as fits_budget, evaluated against the stored spend
            cursor = conn.execute("""
                UPDATE budgets
                SET current_spent = current_spent + ?
                WHERE id = ?
                  AND current_spent < ?
                  AND ? <= ?
            """, (amount, budget_id, limit - BUDGET_EPSILON, amount, limit + BUDGET_EPSILON))

            if cursor.rowcount == 0:
                conn.rollback()
                row = conn.execute(
                    "SELECT current_spent FROM budgets WHERE id = ?", (budget_id,)
                ).fetchone()
                if row is None:
                    raise ConfigurationError(f"Budget {budget_id} not found")
                raise BudgetExceededError(
                    f"Budget {budget_id} cannot absorb {amount:.2f}",
                    details={"budget_id": budget_id, "current_spent": row["current_spent"], "limit": limit},
                )

            row = conn.execute(
                "SELECT data, current_spent FROM budgets WHERE id = ?", (budget_id,)
            ).fetchone()
            conn.commit()
            return self._row_to_budget(row)
        finally:
            conn.close()

    # Reference data

    def list_delegations(self, from_user_id: Optional[str] = None) -> list[Delegation]:
        if from_user_id is None:
            rows = self._fetch_all("SELECT data FROM delegations ORDER BY id")
        else:
            rows = self._fetch_all(
                "SELECT data FROM delegations WHERE from_user_id = ? ORDER BY id", (from_user_id,)
            )
        return [Delegation.model_validate_json(row["data"]) for row in rows]

    def list_rules(self) -> list[WorkflowRule]:
        rows = self._fetch_all("SELECT data FROM workflow_rules ORDER BY priority, id")
        return [WorkflowRule.model_validate_json(row["data"]) for row in rows]

    # Approval records

    def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO approvals (id, requisition_id, status, version, created_at, data)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.id, record.requisition_id, record.status.value, record.version,
                record.created_at.isoformat(), record.model_dump_json(),
            ))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Requisition {record.requisition_id} already has an active approval",
                details={"requisition_id": record.requisition_id, "sqlite_error": str(e)},
            ) from e
        finally:
            conn.close()
        return record

    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        row = self._fetch_one("SELECT data FROM approvals WHERE id = ?", (approval_id,))
        return ApprovalRecord.model_validate_json(row["data"]) if row else None

    def list_approvals(self, requisition_id: str) -> list[ApprovalRecord]:
        rows = self._fetch_all("""
            SELECT data FROM approvals
            WHERE requisition_id = ?
            ORDER BY created_at, rowid
        """, (requisition_id,))
        return [ApprovalRecord.model_validate_json(row["data"]) for row in rows]

    def get_active_approval(self, requisition_id: str) -> Optional[ApprovalRecord]:
        row = self._fetch_one("""
            SELECT data FROM approvals
            WHERE requisition_id = ? AND status IN ('PENDING', 'DELEGATED')
        """, (requisition_id,))
        return ApprovalRecord.model_validate_json(row["data"]) if row else None

    def list_active_approvals(self) -> list[ApprovalRecord]:
        rows = self._fetch_all("""
            SELECT data FROM approvals
            WHERE status IN ('PENDING', 'DELEGATED')
            ORDER BY created_at, rowid
        """)
        return [ApprovalRecord.model_validate_json(row["data"]) for row in rows]

    def transition_approval(
        self,
        approval_id: str,
        expected: tuple[ApprovalStatus, ...],
        expected_version: Optional[int] = None,
        **changes,
    ) -> ApprovalRecord:
        conn = self._get_connection()
        try:
            # Take the write lock before reading so racing writers queue up
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT status, version, data FROM approvals WHERE id = ?", (approval_id,)
            ).fetchone()
            if row is None:
                raise ApprovalNotFoundError(f"Approval {approval_id} not found")

            if row["status"] not in {s.value for s in expected}:
                raise ConflictError(
                    f"Approval {approval_id} is {row['status']}, expected "
                    + "/".join(s.value for s in expected),
                    details={"approval_id": approval_id, "status": row["status"]},
                )
            if expected_version is not None and row["version"] != expected_version:
                raise ConflictError(
                    f"Approval {approval_id} was modified concurrently",
                    details={"approval_id": approval_id, "version": row["version"]},
                )

            record = ApprovalRecord.model_validate_json(row["data"])
            updated = record.model_copy(update={**changes, "version": row["version"] + 1}, deep=True)

            try:
                cursor = conn.execute("""
                    UPDATE approvals
                    SET status = ?, version = ?, data = ?
                    WHERE id = ? AND version = ?
                """, (updated.status.value, updated.version, updated.model_dump_json(), approval_id, row["version"]))
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise ConflictError(
                    f"Requisition {record.requisition_id} already has an active approval"
                ) from e

            if cursor.rowcount == 0:
                conn.rollback()
                raise ConflictError(
                    f"Approval {approval_id} was modified concurrently",
                    details={"approval_id": approval_id},
                )

            conn.commit()
            return updated
        finally:
            conn.close()

    # Audit

    def record_audit(self, entry: AuditEntry) -> None:
        self._write("""
            INSERT INTO audit_log (requisition_id, action, timestamp, data)
            VALUES (?, ?, ?, ?)
        """, (entry.requisition_id, entry.action, entry.timestamp.isoformat(), entry.model_dump_json()))

    def list_audit(self, requisition_id: Optional[str] = None) -> list[AuditEntry]:
        if requisition_id is None:
            rows = self._fetch_all("SELECT data FROM audit_log ORDER BY id")
        else:
            rows = self._fetch_all(
                "SELECT data FROM audit_log WHERE requisition_id = ? ORDER BY id", (requisition_id,)
            )
        return [AuditEntry.model_validate_json(row["data"]) for row in rows]
