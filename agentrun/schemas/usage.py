"""Usage ledger and budget schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UsageEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    owner_id: str
    run_id: str
    model: str | None = None
    input_units: int = 0
    output_units: int = 0
    cost: float = 0.0
    occurred_at: datetime


class BudgetWindow(BaseModel):
    """Derived view of one owner's accounting window."""

    window_start: datetime
    window_end: datetime
    consumed: float
    limit: float
    reserved: float = 0.0

    @property
    def key(self) -> str:
        return self.window_start.strftime("%Y-%m-%d")

    @property
    def reset_at(self) -> datetime:
        return self.window_end

    @property
    def remaining(self) -> float:
        return max(0.0, self.limit - self.consumed)


class Admission(BaseModel):
    """Result of ``RateLimiter.admit``."""

    allowed: bool
    reserved: float = 0.0
    reason: str | None = None
    reset_at: datetime
    window: BudgetWindow


class UsageRead(BaseModel):
    consumed: float
    limit: float
    remaining: float
    reset_at: datetime
    recent_events: list[UsageEventRead] = Field(default_factory=list)
