from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import date, datetime, timezone
from enum import Enum


class ChallengeType(str, Enum):
    ELIMINATION = "elimination"
    DEADLINE = "deadline"
    PROGRESS = "progress"

class ChallengeState(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"

class CadenceUnit(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"

class TimezoneMode(str, Enum):
    FIXED_ZONE = "fixedZone"
    GROUP_LOCAL = "groupLocal"
    USER_LOCAL = "userLocal"

class Comparison(str, Enum):
    GTE = "gte"
    LTE = "lte"

class DeadlineProgressMode(str, Enum):
    ACCUMULATE = "accumulate"
    LATEST = "latest"


class Cadence(SQLModel):
    unit: CadenceUnit = CadenceUnit.DAILY
    required_count: int = 1
    week_starts_on: int = 0  # 0 = Sunday


class ChallengeBase(SQLModel):
    title: str = Field(max_length=200)
    type: ChallengeType = Field(default=ChallengeType.ELIMINATION)

    # Cadence
    cadence_unit: CadenceUnit = Field(default=CadenceUnit.DAILY)
    required_count: int = Field(default=1, ge=1)
    week_starts_on: int = Field(default=0, ge=0, le=6)

    # Due
    due_time_local: str = Field(default="23:59", max_length=5)
    timezone_mode: TimezoneMode = Field(default=TimezoneMode.USER_LOCAL)
    timezone: Optional[str] = Field(default=None, max_length=64)
    timezone_offset: Optional[int] = None
    deadline_date: Optional[date] = None

    # Rules
    strikes_allowed: int = Field(default=0, ge=0)
    late_grace_minutes: int = Field(default=0, ge=0)
    progression_duration: Optional[int] = Field(default=None, ge=1)  # days per interval
    progress_starts_at: Optional[float] = None
    progress_increase_by: Optional[float] = None
    progress_comparison: Comparison = Field(default=Comparison.GTE)
    deadline_target_value: Optional[float] = None
    deadline_comparison: Comparison = Field(default=Comparison.GTE)
    deadline_progress_mode: DeadlineProgressMode = Field(default=DeadlineProgressMode.ACCUMULATE)

    # Lifecycle
    state: ChallengeState = Field(default=ChallengeState.ACTIVE, index=True)
    winner_id: Optional[str] = Field(default=None, max_length=128)
    ended_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class Challenge(ChallengeBase, table=True):
    challenge_id: Optional[int] = Field(default=None, primary_key=True)

    @property
    def cadence(self) -> Cadence:
        return Cadence(
            unit=self.cadence_unit,
            required_count=self.required_count or 1,
            week_starts_on=self.week_starts_on or 0,
        )

class ChallengePublic(ChallengeBase):
    challenge_id: int
