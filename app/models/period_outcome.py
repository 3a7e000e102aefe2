from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from datetime import datetime, timezone

from .challenge import CadenceUnit

class PeriodOutcomeBase(SQLModel):
    challenge_id: int = Field(foreign_key="challenge.challenge_id", index=True)
    user_id: str = Field(index=True, max_length=128)
    period_key: str = Field(max_length=10)
    period_unit: CadenceUnit = Field(default=CadenceUnit.DAILY)
    satisfied: bool
    completed_count: int = Field(default=0, ge=0)
    required_count: int = Field(default=1, ge=1)
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class PeriodOutcome(PeriodOutcomeBase, table=True):
    __tablename__ = "period_outcome"
    # One closure decision per member per period
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", "period_key", name="uq_period_outcome_member_period"),
    )

    outcome_id: Optional[int] = Field(default=None, primary_key=True)
