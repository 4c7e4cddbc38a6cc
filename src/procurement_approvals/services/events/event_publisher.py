"""
Azure Service Bus event publishing for approval workflow events.

Enables downstream systems to react to workflow decisions:
- Notification services can email/push the newly assigned approver
- Compliance systems can queue emergency overrides for review
- Analytics systems can monitor escalation rates per vessel
"""

import json
from datetime import datetime, UTC
from typing import Optional
from dataclasses import dataclass, asdict

from loguru import logger


@dataclass
class EscalationNotificationEvent:
    """
    Event published when an overdue approval moves to the next authority.

    Consumers deliver it to ``new_approver``; the workflow has already
    moved the approval, so delivery failures are never retried by
    re-escalating.
    """

    approval_id: str
    original_approver: str
    new_approver: str
    requisition_id: str
    reason: str
    previous_level: Optional[str] = None
    new_level: Optional[str] = None
    event_type: str = "ApprovalEscalated"
    timestamp: Optional[str] = None

    def __post_init__(self):
        """Set timestamp if not provided"""
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class EmergencyOverrideEvent:
    """Event published when a captain approves a requisition by emergency override."""

    requisition_id: str
    vessel_id: str
    overridden_by: str
    reason: str
    amount: float
    currency: str
    requires_post_approval: bool = True
    event_type: str = "EmergencyOverride"
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventPublisher:
    """
    Publishes events to Azure Service Bus (Queue or Topic).

    Usage:
        from azure.servicebus import ServiceBusClient
        client = ServiceBusClient.from_connection_string(conn_str)
        sender = client.get_queue_sender(queue_name="procurement-events")
        publisher = EventPublisher(service_bus_sender=sender)

        # Disabled mode (no Service Bus configured)
        publisher = EventPublisher(service_bus_sender=None)
    """

    def __init__(
        self,
        service_bus_sender: Optional[object] = None,
        entity_name: str = "procurement-events"
    ):
        """
        Initialize event publisher.

        Args:
            service_bus_sender: Azure Service Bus sender (ServiceBusSender) or None to disable
            entity_name: Service Bus queue or topic name (default: procurement-events)
        """
        self.service_bus_sender = service_bus_sender
        self.entity_name = entity_name

    @property
    def enabled(self) -> bool:
        return self.service_bus_sender is not None

    def publish_escalation(self, event: EscalationNotificationEvent) -> None:
        """
        Publish an escalation notification event.

        Raises whatever the Service Bus sender raises; callers decide
        whether delivery failure matters.
        """
        self._send(event.to_json(), event.event_type)

    def publish_emergency_override(self, event: EmergencyOverrideEvent) -> None:
        self._send(event.to_json(), event.event_type)

    def _send(self, body: str, subject: str) -> None:
        if self.service_bus_sender is None:
            # Disabled mode - do nothing
            return

        from azure.servicebus import ServiceBusMessage

        message = ServiceBusMessage(body, content_type="application/json", subject=subject)
        self.service_bus_sender.send_messages(message)
        logger.debug("Published workflow event", event_type=subject, entity=self.entity_name)


def create_event_publisher(connection_string: Optional[str] = None, queue_name: Optional[str] = None) -> EventPublisher:
    """
    Build a publisher from settings (or explicit overrides).

    Returns a disabled publisher when no connection string is configured.
    """
    from ...core.config import settings

    connection_string = connection_string or settings.service_bus_connection_string
    queue_name = queue_name or settings.service_bus_queue_name

    if not connection_string:
        return EventPublisher(service_bus_sender=None, entity_name=queue_name)

    from azure.servicebus import ServiceBusClient

    client = ServiceBusClient.from_connection_string(connection_string)
    sender = client.get_queue_sender(queue_name=queue_name)
    return EventPublisher(service_bus_sender=sender, entity_name=queue_name)
