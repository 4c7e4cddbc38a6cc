from enum import Enum

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    CREW = "CREW"
    CHIEF_ENGINEER = "CHIEF_ENGINEER"
    CAPTAIN = "CAPTAIN"
    SUPERINTENDENT = "SUPERINTENDENT"
    PROCUREMENT_MANAGER = "PROCUREMENT_MANAGER"
    SENIOR_MANAGEMENT = "SENIOR_MANAGEMENT"
    ADMIN = "ADMIN"


class User(BaseModel):
    id: str
    role: UserRole
    vessel_assignments: list[str] = Field(default_factory=list)  # empty = fleet-wide (shore staff)
    is_active: bool = True
    email: str | None = None

    def serves_vessel(self, vessel_id: str) -> bool:
        return not self.vessel_assignments or vessel_id in self.vessel_assignments
