from .approval_router import ApprovalRouter, DecisionResult, RoutingResult
from .budget_validator import BudgetValidation, BudgetValidator
from .delegation_resolver import ApproverResolution, DelegationResolver
from .emergency_override import EmergencyOverrideHandler, OverrideRequest, OverrideResult
from .escalation_scheduler import EscalationReport, EscalationScheduler
from .rule_evaluator import RuleEvaluation, RuleEvaluator, create_rule_evaluator
from .rule_parser import compile_condition, compile_rule
