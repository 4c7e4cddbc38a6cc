"""
Workflow rules as data.

A rule's condition is a tagged-union predicate tree (discriminated on
``kind``) so rules round-trip through JSON and are evaluated by a small
interpreter instead of parsing strings at decision time.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .approval import ApprovalLevel
from .requisition import Criticality, Urgency


class AmountCondition(BaseModel):
    kind: Literal["amount"] = "amount"
    op: Literal["<", "<=", ">", ">=", "==", "!="]
    value: float


class UrgencyCondition(BaseModel):
    kind: Literal["urgency"] = "urgency"
    equals: Urgency


class CriticalityCondition(BaseModel):
    """True when any line item carries the given criticality."""
    kind: Literal["criticality"] = "criticality"
    contains: Criticality


class AllOf(BaseModel):
    kind: Literal["all"] = "all"
    conditions: list["Condition"] = Field(min_length=1)


class AnyOf(BaseModel):
    kind: Literal["any"] = "any"
    conditions: list["Condition"] = Field(min_length=1)


class Not(BaseModel):
    kind: Literal["not"] = "not"
    condition: "Condition"


Condition = Annotated[
    Union[AmountCondition, UrgencyCondition, CriticalityCondition, AllOf, AnyOf, Not],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


class RuleActionType(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    ROUTE = "ROUTE"
    REJECT = "REJECT"


class RuleAction(BaseModel):
    type: RuleActionType
    level: Optional[ApprovalLevel] = None  # required for ROUTE only


class WorkflowRule(BaseModel):
    id: str
    priority: int  # lower value is evaluated first
    condition: Condition
    action: RuleAction
    description: str = ""


DEFAULT_WORKFLOW_RULES = [
    WorkflowRule(
        id="safety-critical-captain",
        priority=0,
        condition=CriticalityCondition(contains=Criticality.SAFETY_CRITICAL),
        action=RuleAction(type=RuleActionType.ROUTE, level=ApprovalLevel.CAPTAIN),
        description="Safety-critical items need the captain",
    ),
    WorkflowRule(
        id="routine-under-500",
        priority=10,
        condition=AllOf(conditions=[
            AmountCondition(op="<", value=500),
            UrgencyCondition(equals=Urgency.ROUTINE),
        ]),
        action=RuleAction(type=RuleActionType.AUTO_APPROVE),
        description="amount < 500 AND urgency = ROUTINE",
    ),
]
