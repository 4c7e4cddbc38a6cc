from .event_publisher import (
    EmergencyOverrideEvent,
    EscalationNotificationEvent,
    EventPublisher,
    create_event_publisher,
)
