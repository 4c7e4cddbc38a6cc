from .approval import (
    ACTIVE_STATUSES,
    ESCALATION_PATH,
    LEVEL_RANK,
    SHORE_LADDER,
    ApprovalLevel,
    ApprovalRecord,
    ApprovalStatus,
    build_tiers,
    higher_level,
)
from .audit import AuditEntry
from .budget import SEASON_BY_MONTH, Budget, BudgetScope
from .delegation import Delegation
from .requisition import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Criticality,
    LineItem,
    Requisition,
    RequisitionStatus,
    Urgency,
)
from .rules import (
    DEFAULT_WORKFLOW_RULES,
    AllOf,
    AmountCondition,
    AnyOf,
    Condition,
    CriticalityCondition,
    Not,
    RuleAction,
    RuleActionType,
    UrgencyCondition,
    WorkflowRule,
)
from .user import User, UserRole
