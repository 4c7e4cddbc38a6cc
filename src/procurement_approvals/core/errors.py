"""
Error taxonomy for the approval workflow.

- ValidationError / AuthorizationError: terminal, raised before any side effect
- ConflictError: optimistic-concurrency mismatch, caller re-reads and retries
- ConfigurationError: bad reference data (rules, delegations, approvers)
- BudgetExceededError: neither vessel nor fleet budget can absorb the amount
"""

from typing import Any, Optional


class ApprovalWorkflowError(Exception):
    """Base class for every error raised by the workflow core."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ApprovalWorkflowError):
    """Malformed input (non-positive amount, unknown urgency, bad state)."""


class RequisitionNotFoundError(ValidationError):
    pass


class ApprovalNotFoundError(ValidationError):
    pass


class ClassificationError(ValidationError):
    """Requisition urgency/criticality does not qualify for the requested path."""


class AuthorizationError(ApprovalWorkflowError):
    """Acting identity is not allowed to perform the operation."""


class ConflictError(ApprovalWorkflowError):
    """Record was not in the expected state at write time."""


class ConfigurationError(ApprovalWorkflowError):
    """Reference data is ambiguous or contradictory."""


class BudgetExceededError(ApprovalWorkflowError):
    """No budget in the hierarchy covers the requested amount."""
