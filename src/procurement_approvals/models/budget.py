from enum import Enum

from pydantic import BaseModel, Field, field_validator


class BudgetScope(str, Enum):
    VESSEL = "VESSEL"
    FLEET = "FLEET"


# Calendar month → season used for seasonal budget multipliers
SEASON_BY_MONTH = {
    12: "winter", 1: "winter", 2: "winter",
    3: "spring", 4: "spring", 5: "spring",
    6: "summer", 7: "summer", 8: "summer",
    9: "autumn", 10: "autumn", 11: "autumn",
}


class Budget(BaseModel):
    id: str
    scope: BudgetScope
    owner_id: str  # vessel id or fleet id
    monthly_limit: float
    current_spent: float = 0.0
    currency: str = "USD"
    # Keys are season names ("winter") or month numbers ("1".."12")
    seasonal_adjustments: dict[str, float] = Field(default_factory=dict)
    parent_budget_id: str | None = None  # vessel budget → fleet budget

    @field_validator("seasonal_adjustments", mode="before")
    @classmethod
    def _normalise_keys(cls, value):
        if not value:
            return {}
        return {str(k).strip().lower(): v for k, v in dict(value).items()}

    @property
    def headroom(self) -> float:
        return self.monthly_limit - self.current_spent
