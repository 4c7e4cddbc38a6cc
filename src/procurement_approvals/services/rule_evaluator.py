"""
Workflow rule evaluation for requisition routing.

Evaluates prioritized workflow rules (first match wins) and falls back to
the amount-banded default table when no rule matches. Rule sets that are
malformed or contradictory fail closed to REJECT, never to AUTO_APPROVE.
"""

import operator
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..models import (
    AllOf,
    AmountCondition,
    AnyOf,
    ApprovalLevel,
    Condition,
    CriticalityCondition,
    Not,
    Requisition,
    RuleActionType,
    Urgency,
    UrgencyCondition,
    WorkflowRule,
)

_COMPARISONS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


def evaluate_condition(condition: Condition, requisition: Requisition) -> bool:
    """Interpret one node of a rule's predicate tree against a requisition."""
    if isinstance(condition, AmountCondition):
        return _COMPARISONS[condition.op](requisition.amount, condition.value)
    if isinstance(condition, UrgencyCondition):
        return requisition.urgency == condition.equals
    if isinstance(condition, CriticalityCondition):
        return condition.contains in requisition.criticalities
    if isinstance(condition, AllOf):
        return all(evaluate_condition(c, requisition) for c in condition.conditions)
    if isinstance(condition, AnyOf):
        return any(evaluate_condition(c, requisition) for c in condition.conditions)
    if isinstance(condition, Not):
        return not evaluate_condition(condition.condition, requisition)
    raise TypeError(f"Unknown condition node: {type(condition).__name__}")


def find_rule_set_problems(rules: list[WorkflowRule]) -> list[str]:
    """
    Static checks for malformed or contradictory rule sets.

    Returns:
        Human-readable diagnostics; empty when the rule set is usable
    """
    problems = []
    seen_ids = set()
    by_priority: dict[int, WorkflowRule] = {}

    for rule in rules:
        if rule.id in seen_ids:
            problems.append(f"Duplicate rule id '{rule.id}'")
        seen_ids.add(rule.id)

        action = rule.action
        if action.type == RuleActionType.ROUTE:
            if action.level is None:
                problems.append(f"Rule '{rule.id}' routes without a level")
            elif action.level == ApprovalLevel.AUTO:
                problems.append(f"Rule '{rule.id}' routes to AUTO; use AUTO_APPROVE")
        elif action.level is not None:
            problems.append(f"Rule '{rule.id}' is {action.type.value} but names level {action.level.value}")

        # Same priority means evaluation order is undefined
        other = by_priority.get(rule.priority)
        if other is not None and other.action != rule.action:
            problems.append(
                f"Rules '{other.id}' and '{rule.id}' share priority {rule.priority} with different actions"
            )
        by_priority.setdefault(rule.priority, rule)

    return problems


class RuleEvaluation(BaseModel):
    """Result of evaluating a requisition, with explanation"""
    action: RuleActionType
    level: Optional[ApprovalLevel] = None  # None only for REJECT
    matched_rule: Optional[str] = None
    expedited: bool = False
    safety_critical: bool = False
    escalation_hours: float = 24.0
    reason: str
    diagnostics: list[str] = Field(default_factory=list)


class RuleEvaluatorConfig(BaseModel):
    """Amount bands and escalation windows (loaded from environment)"""
    auto_approve_limit: float = 500.0
    superintendent_limit: float = 5000.0
    procurement_manager_limit: float = 25000.0
    default_escalation_hours: float = 24.0
    urgent_escalation_hours: float = 2.0
    emergency_escalation_hours: float = 1.0


class RuleEvaluator:
    """
    Decides the action and approval level a requisition needs.

    Order of precedence:
    1. First matching workflow rule, by ascending priority
    2. Safety-critical line items → CAPTAIN
    3. Amount band table (< 500 AUTO, < 5,000 SUPERINTENDENT,
       < 25,000 PROCUREMENT_MANAGER, otherwise SENIOR_MANAGEMENT)

    URGENT/EMERGENCY urgency and safety-critical items never change the
    level chosen above; they set ``expedited`` and shorten the escalation
    window.
    """

    def __init__(self, config: RuleEvaluatorConfig = None, rules: Optional[list[WorkflowRule]] = None):
        self.config = config or RuleEvaluatorConfig()
        self._rules: list[WorkflowRule] = []
        self._problems: list[str] = []
        self.load_rules(rules or [])

    @property
    def rules(self) -> list[WorkflowRule]:
        return list(self._rules)

    def load_rules(self, rules: list[WorkflowRule]) -> None:
        """Replace the active rule set (rules are read-only data)."""
        self._rules = sorted(rules, key=lambda r: r.priority)
        self._problems = find_rule_set_problems(self._rules)
        if self._problems:
            logger.warning("Workflow rule set has problems", problems=self._problems)
        else:
            logger.info("Loaded workflow rules", count=len(self._rules))

    def banded_level(self, amount: float) -> ApprovalLevel:
        if amount < self.config.auto_approve_limit:
            return ApprovalLevel.AUTO
        if amount < self.config.superintendent_limit:
            return ApprovalLevel.SUPERINTENDENT
        if amount < self.config.procurement_manager_limit:
            return ApprovalLevel.PROCUREMENT_MANAGER
        return ApprovalLevel.SENIOR_MANAGEMENT

    def escalation_hours_for(self, urgency: Urgency, expedited: bool) -> float:
        if urgency == Urgency.EMERGENCY:
            return self.config.emergency_escalation_hours
        if expedited:
            return min(self.config.urgent_escalation_hours, self.config.default_escalation_hours)
        return self.config.default_escalation_hours

    def evaluate(self, requisition: Requisition) -> RuleEvaluation:
        """
        Evaluate a requisition against the rule set.

        Args:
            requisition: Requisition snapshot (amount, urgency, items)

        Returns:
            RuleEvaluation with action, level, matched rule and expedite flags
        """
        safety_critical = requisition.safety_critical
        expedited = safety_critical or requisition.urgency in (Urgency.URGENT, Urgency.EMERGENCY)
        hours = self.escalation_hours_for(requisition.urgency, expedited)

        if self._problems:
            return self._fail_closed(requisition, "Workflow rule set is invalid", self._problems,
                                     expedited, safety_critical, hours)

        matched: Optional[WorkflowRule] = None
        try:
            for rule in self._rules:
                if evaluate_condition(rule.condition, requisition):
                    matched = rule
                    break
        except Exception as e:
            return self._fail_closed(requisition, "Workflow rule evaluation failed", [str(e)],
                                     expedited, safety_critical, hours)

        if matched is not None:
            action = matched.action.type
            if action == RuleActionType.AUTO_APPROVE:
                level = ApprovalLevel.AUTO
            elif action == RuleActionType.ROUTE:
                level = matched.action.level
            else:
                level = None
            reason = f"Matched rule '{matched.id}'"
            if matched.description:
                reason += f": {matched.description}"
        elif safety_critical:
            action = RuleActionType.ROUTE
            level = ApprovalLevel.CAPTAIN
            reason = "Safety-critical items require captain approval"
        else:
            level = self.banded_level(requisition.amount)
            action = RuleActionType.AUTO_APPROVE if level == ApprovalLevel.AUTO else RuleActionType.ROUTE
            reason = f"Amount-based routing: {requisition.amount:.2f} {requisition.currency} requires {level.value}"

        if expedited and action != RuleActionType.REJECT:
            reason += f" (expedited, {hours:g}h escalation)"

        logger.info(
            "Requisition rule evaluation",
            requisition_id=requisition.id,
            action=action.value,
            level=level.value if level else None,
            matched_rule=matched.id if matched else None,
            expedited=expedited,
        )

        return RuleEvaluation(
            action=action,
            level=level,
            matched_rule=matched.id if matched else None,
            expedited=expedited,
            safety_critical=safety_critical,
            escalation_hours=hours,
            reason=reason,
        )

    def _fail_closed(self, requisition, reason, diagnostics, expedited, safety_critical, hours) -> RuleEvaluation:
        logger.error(
            "Rejecting requisition: rule configuration error",
            requisition_id=requisition.id,
            diagnostics=diagnostics,
        )
        return RuleEvaluation(
            action=RuleActionType.REJECT,
            level=None,
            expedited=expedited,
            safety_critical=safety_critical,
            escalation_hours=hours,
            reason=f"{reason}: " + "; ".join(diagnostics),
            diagnostics=diagnostics,
        )


def create_rule_evaluator(
    rules: Optional[list[WorkflowRule]] = None,
    auto_approve_limit: float = None,
    superintendent_limit: float = None,
    procurement_manager_limit: float = None,
) -> RuleEvaluator:
    """
    Factory function to create a rule evaluator with optional overrides.

    Uses environment variables as defaults, can be overridden per call.
    """
    from ..core.config import settings

    config = RuleEvaluatorConfig(
        auto_approve_limit=auto_approve_limit if auto_approve_limit is not None else settings.auto_approve_limit,
        superintendent_limit=superintendent_limit if superintendent_limit is not None else settings.superintendent_limit,
        procurement_manager_limit=(
            procurement_manager_limit if procurement_manager_limit is not None else settings.procurement_manager_limit
        ),
        default_escalation_hours=settings.default_escalation_hours,
        urgent_escalation_hours=settings.urgent_escalation_hours,
        emergency_escalation_hours=settings.emergency_escalation_hours,
    )

    return RuleEvaluator(config, rules=rules)
