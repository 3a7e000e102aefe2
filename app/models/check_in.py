from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

from .challenge import CadenceUnit

class CheckInStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    MISSED = "missed"
    FAILED = "failed"

class Period(SQLModel):
    unit: CadenceUnit
    day_key: Optional[str] = None
    week_key: Optional[str] = None

    def key_for(self, unit: CadenceUnit) -> Optional[str]:
        return self.week_key if unit == CadenceUnit.WEEKLY else self.day_key

class CheckInBase(SQLModel):
    challenge_id: int = Field(foreign_key="challenge.challenge_id", index=True)
    user_id: str = Field(index=True, max_length=128)
    period_unit: CadenceUnit = Field(default=CadenceUnit.DAILY)
    day_key: Optional[str] = Field(default=None, index=True, max_length=10)
    week_key: Optional[str] = Field(default=None, index=True, max_length=10)
    status: CheckInStatus = Field(default=CheckInStatus.COMPLETED)
    value: Optional[float] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# Append-only: rows are never updated once written
class CheckIn(CheckInBase, table=True):
    __tablename__ = "check_in"

    check_in_id: Optional[int] = Field(default=None, primary_key=True)

    @property
    def period(self) -> Period:
        return Period(unit=self.period_unit, day_key=self.day_key, week_key=self.week_key)

class CheckInPublic(CheckInBase):
    check_in_id: int
