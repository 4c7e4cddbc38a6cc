"""
Approval levels, approval records and the level ladder.

The ladder is the ordered list of shore tiers a requisition climbs for
sequential approval. CAPTAIN sits outside it: a safety-critical
requisition needs exactly one vessel-command approval.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ApprovalLevel(str, Enum):
    AUTO = "AUTO"
    SUPERINTENDENT = "SUPERINTENDENT"
    PROCUREMENT_MANAGER = "PROCUREMENT_MANAGER"
    SENIOR_MANAGEMENT = "SENIOR_MANAGEMENT"
    CAPTAIN = "CAPTAIN"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    DELEGATED = "DELEGATED"
    CANCELLED = "CANCELLED"  # opened by a routing that lost a race


ACTIVE_STATUSES = (ApprovalStatus.PENDING, ApprovalStatus.DELEGATED)

SHORE_LADDER = [
    ApprovalLevel.SUPERINTENDENT,
    ApprovalLevel.PROCUREMENT_MANAGER,
    ApprovalLevel.SENIOR_MANAGEMENT,
]

# Used to take "the higher of" two required levels
LEVEL_RANK = {
    ApprovalLevel.AUTO: 0,
    ApprovalLevel.SUPERINTENDENT: 1,
    ApprovalLevel.PROCUREMENT_MANAGER: 2,
    ApprovalLevel.SENIOR_MANAGEMENT: 3,
    ApprovalLevel.CAPTAIN: 4,
}

# Who picks up an overdue approval. SENIOR_MANAGEMENT is the top of the chain.
ESCALATION_PATH = {
    ApprovalLevel.SUPERINTENDENT: ApprovalLevel.PROCUREMENT_MANAGER,
    ApprovalLevel.PROCUREMENT_MANAGER: ApprovalLevel.SENIOR_MANAGEMENT,
    ApprovalLevel.CAPTAIN: ApprovalLevel.PROCUREMENT_MANAGER,
}


def higher_level(a: ApprovalLevel, b: ApprovalLevel) -> ApprovalLevel:
    return a if LEVEL_RANK[a] >= LEVEL_RANK[b] else b


def build_tiers(level: ApprovalLevel) -> list[ApprovalLevel]:
    """
    Ordered tiers that must approve, lowest first.

    SENIOR_MANAGEMENT → [SUPERINTENDENT, PROCUREMENT_MANAGER, SENIOR_MANAGEMENT]
    CAPTAIN → [CAPTAIN]; AUTO → []
    """
    if level == ApprovalLevel.AUTO:
        return []
    if level == ApprovalLevel.CAPTAIN:
        return [ApprovalLevel.CAPTAIN]
    return SHORE_LADDER[: SHORE_LADDER.index(level) + 1]


class ApprovalRecord(BaseModel):
    """One tier's approval task. At most one active (PENDING/DELEGATED) per requisition."""
    id: str
    requisition_id: str
    vessel_id: str
    level: ApprovalLevel
    tier_index: int = 0  # position in the requisition's tier list
    assigned_to: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime
    escalation_deadline: datetime
    escalation_hours: float = 24.0
    delegated_to: Optional[str] = None
    original_approver_id: Optional[str] = None
    delegation_reason: Optional[str] = None
    reason: Optional[str] = None
    escalated_from: Optional[str] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comments: Optional[str] = None
    history: list[dict] = Field(default_factory=list)
    version: int = 0  # bumped by the store on every transition

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
