from datetime import datetime

from pydantic import BaseModel


class Delegation(BaseModel):
    """Temporary redirection of one approver's authority to another."""
    id: str
    from_user_id: str
    to_user_id: str
    vessel_id: str | None = None  # None = every vessel the delegator serves
    start_date: datetime
    end_date: datetime
    reason: str = ""
    created_at: datetime
    is_active: bool = True  # False once revoked

    def covers(self, vessel_id: str, at: datetime) -> bool:
        if not self.is_active:
            return False
        if self.vessel_id is not None and self.vessel_id != vessel_id:
            return False
        return self.start_date <= at <= self.end_date
