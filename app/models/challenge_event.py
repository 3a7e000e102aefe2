from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

class ChallengeEventType(str, Enum):
    STRIKE = "strike"
    ELIMINATED = "eliminated"
    WINNER = "winner"
    CHALLENGE_ENDED = "challenge_ended"
    DEADLINE_PASSED = "deadline_passed"
    PROGRESS_INCREASED = "progress_increased"

class ChallengeEventBase(SQLModel):
    challenge_id: int = Field(foreign_key="challenge.challenge_id", index=True)
    user_id: str = Field(default="", max_length=128)  # "" for challenge-wide events
    event_type: ChallengeEventType
    dedupe_key: str = Field(max_length=64)
    message: str = Field(max_length=500)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    delivered_at: Optional[datetime] = Field(default=None, index=True)

class ChallengeEvent(ChallengeEventBase, table=True):
    __tablename__ = "challenge_event"
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", "event_type", "dedupe_key", name="uq_challenge_event_once"),
    )

    event_id: Optional[int] = Field(default=None, primary_key=True)
