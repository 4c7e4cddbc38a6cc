from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .approval import ApprovalLevel
from .budget import BudgetScope


class Urgency(str, Enum):
    ROUTINE = "ROUTINE"
    URGENT = "URGENT"
    EMERGENCY = "EMERGENCY"


class Criticality(str, Enum):
    ROUTINE = "ROUTINE"
    OPERATIONAL_CRITICAL = "OPERATIONAL_CRITICAL"
    SAFETY_CRITICAL = "SAFETY_CRITICAL"


class RequisitionStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ORDERED = "ORDERED"


TERMINAL_STATUSES = (RequisitionStatus.APPROVED, RequisitionStatus.REJECTED, RequisitionStatus.ORDERED)
OPEN_STATUSES = (RequisitionStatus.DRAFT, RequisitionStatus.PENDING_APPROVAL)


class LineItem(BaseModel):
    id: str | None = None
    name: str | None = None
    quantity: float = 1
    criticality: Criticality = Criticality.ROUTINE


class Requisition(BaseModel):
    """
    Requisition snapshot as supplied by the data store.

    The workflow reads amount/urgency/items and writes the status and
    approval fields below the divider.
    """
    id: str
    amount: float
    currency: str = "USD"
    urgency: Urgency = Urgency.ROUTINE
    vessel_id: str
    requested_by_id: str
    items: list[LineItem] = Field(default_factory=list)
    status: RequisitionStatus = RequisitionStatus.DRAFT
    justification: str | None = None

    # --- written by the workflow ---
    approval_level: Optional[ApprovalLevel] = None
    approval_tiers: list[ApprovalLevel] = Field(default_factory=list)
    current_tier: int = 0
    expedited: bool = False
    auto_approved: bool = False
    budget_scope: Optional[BudgetScope] = None  # budget actually charged
    budget_id: str | None = None
    budget_exceeded: bool = False  # approved at the top tier with no budget covering it
    version: int = 0  # bumped by the store on every transition

    emergency_override: bool = False
    requires_post_approval: bool = False
    overridden_by: str | None = None
    override_reason: str | None = None
    overridden_at: Optional[datetime] = None
    override_budget_exceeded: bool = False
    post_approved_by: str | None = None
    post_approved_at: Optional[datetime] = None
    post_approval_comments: str | None = None

    @property
    def safety_critical(self) -> bool:
        return any(item.criticality == Criticality.SAFETY_CRITICAL for item in self.items)

    @property
    def criticalities(self) -> set[Criticality]:
        return {item.criticality for item in self.items}
