from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

class MemberState(str, Enum):
    ACTIVE = "active"
    ELIMINATED = "eliminated"

class ChallengeMemberBase(SQLModel):
    challenge_id: int = Field(foreign_key="challenge.challenge_id", primary_key=True)
    user_id: str = Field(primary_key=True, max_length=128)
    state: MemberState = Field(default=MemberState.ACTIVE)
    strikes: int = Field(default=0, ge=0)
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_evaluated_period_key: Optional[str] = Field(default=None, max_length=10)
    eliminated_at: Optional[datetime] = None
    joined_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class ChallengeMember(ChallengeMemberBase, table=True):
    __tablename__ = "challenge_member"
