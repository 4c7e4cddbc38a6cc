"""
Composition root: wires every workflow service over one data store.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .core.clock import Clock, SystemClock
from .models import DEFAULT_WORKFLOW_RULES, WorkflowRule
from .services.approval_router import ApprovalRouter
from .services.budget_validator import BudgetValidator
from .services.delegation_resolver import DelegationResolver
from .services.emergency_override import EmergencyOverrideHandler
from .services.escalation_scheduler import EscalationScheduler
from .services.events import EventPublisher, create_event_publisher
from .services.rule_evaluator import RuleEvaluator, create_rule_evaluator
from .services.storage.store_base import ProcurementStoreBase


@dataclass
class ProcurementWorkflow:
    store: ProcurementStoreBase
    evaluator: RuleEvaluator
    budget_validator: BudgetValidator
    resolver: DelegationResolver
    router: ApprovalRouter
    scheduler: EscalationScheduler
    overrides: EmergencyOverrideHandler
    publisher: EventPublisher
    clock: Clock

    def reload_rules(self) -> None:
        self.evaluator.load_rules(self.store.list_rules() or DEFAULT_WORKFLOW_RULES)


def build_workflow(
    store: ProcurementStoreBase,
    publisher: Optional[EventPublisher] = None,
    clock: Optional[Clock] = None,
    rules: Optional[list[WorkflowRule]] = None,
) -> ProcurementWorkflow:
    """
    Build the workflow services for a store.

    Args:
        store: Data-access collaborator
        publisher: Event publisher (default: from Service Bus settings)
        clock: Time source (default: system UTC clock)
        rules: Workflow rules (default: rules in the store, else DEFAULT_WORKFLOW_RULES)
    """
    clock = clock or SystemClock()
    publisher = publisher if publisher is not None else create_event_publisher()

    if rules is None:
        rules = store.list_rules() or DEFAULT_WORKFLOW_RULES
    evaluator = create_rule_evaluator(rules=rules)

    budget_validator = BudgetValidator(store, clock)
    resolver = DelegationResolver(store, clock)
    router = ApprovalRouter(store, evaluator, budget_validator, resolver, clock)
    scheduler = EscalationScheduler(store, resolver, publisher, clock)
    overrides = EmergencyOverrideHandler(store, budget_validator, publisher, clock)

    logger.debug("Workflow assembled", store=type(store).__name__, events_enabled=publisher.enabled)

    return ProcurementWorkflow(
        store=store,
        evaluator=evaluator,
        budget_validator=budget_validator,
        resolver=resolver,
        router=router,
        scheduler=scheduler,
        overrides=overrides,
        publisher=publisher,
        clock=clock,
    )
