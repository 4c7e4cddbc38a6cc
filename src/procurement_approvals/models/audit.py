from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class AuditEntry(BaseModel):
    """Audit content handed to the data store for overrides, rejections and reviews."""
    action: str  # EMERGENCY_OVERRIDE, REJECTED, RULE_REJECTED, POST_APPROVAL, ...
    requisition_id: str
    actor_id: str
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)
