from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime, timezone

from ..auth import get_current_user_id
from ..database import get_session
from ..models.challenge import (
    CadenceUnit,
    Challenge,
    ChallengePublic,
    ChallengeState,
    ChallengeType,
    Comparison,
    DeadlineProgressMode,
    TimezoneMode,
)
from ..models.challenge_member import ChallengeMember
from ..models.check_in import CheckInPublic, CheckInStatus
from ..services.evaluation import SweepResult, SweepStatus, sweep_challenge
from ..services.ledger import build_check_in
from ..services.member_status import (
    MemberStatusView,
    build_member_status,
    can_check_in,
    list_member_statuses,
)
from ..services.period_clock import (
    DUE_TIME_PATTERN,
    compute_deadline_moment_utc,
    compute_next_due_at_utc,
    compute_period_due_moment_utc,
    format_due_in_viewer_zone,
    format_remaining,
    get_current_period_key,
    time_remaining,
)
from ..services.timezone import is_valid_zone, resolve_admin_timezone

router = APIRouter(
    prefix="/challenges",
    tags=["Challenges"]
)

def get_now() -> datetime:
    return datetime.now(timezone.utc)

def get_challenge_or_404(session: Session, challenge_id: int) -> Challenge:
    challenge = session.get(Challenge, challenge_id)
    if not challenge:
        raise HTTPException(status_code=404, detail="Challenge not found")
    return challenge


class ChallengeCreate(BaseModel):
    title: str = Field(max_length=200)
    type: ChallengeType = ChallengeType.ELIMINATION
    cadence_unit: CadenceUnit = CadenceUnit.DAILY
    required_count: int = Field(default=1, ge=1)
    week_starts_on: int = Field(default=0, ge=0, le=6)
    due_time_local: str = "23:59"
    timezone_mode: TimezoneMode = TimezoneMode.USER_LOCAL
    timezone: Optional[str] = None  # the creating device's zone for the local modes
    timezone_offset: Optional[int] = None
    deadline_date: Optional[date] = None
    strikes_allowed: int = Field(default=0, ge=0)
    late_grace_minutes: int = Field(default=0, ge=0)
    progression_duration: Optional[int] = Field(default=None, ge=1)
    progress_starts_at: Optional[float] = None
    progress_increase_by: Optional[float] = None
    progress_comparison: Comparison = Comparison.GTE
    deadline_target_value: Optional[float] = None
    deadline_comparison: Comparison = Comparison.GTE
    deadline_progress_mode: DeadlineProgressMode = DeadlineProgressMode.ACCUMULATE

@router.post("", response_model=ChallengePublic)
def create_challenge(
    challenge: ChallengeCreate,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id),
    now: datetime = Depends(get_now)
):
    match = DUE_TIME_PATTERN.match(challenge.due_time_local)
    if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
        raise HTTPException(status_code=400, detail="Due time must be HH:MM")
    if challenge.timezone and not is_valid_zone(challenge.timezone):
        raise HTTPException(status_code=400, detail="Unknown timezone")
    if challenge.timezone_mode == TimezoneMode.FIXED_ZONE and not challenge.timezone:
        raise HTTPException(status_code=400, detail="A fixed zone challenge needs a timezone")
    if challenge.type == ChallengeType.DEADLINE and not challenge.deadline_date:
        raise HTTPException(status_code=400, detail="Deadline challenges need a deadline date")

    new_challenge = Challenge(**challenge.model_dump(), created_at=now)
    session.add(new_challenge)
    session.flush()  # Get the challenge_id

    # The creator is the first member
    session.add(ChallengeMember(
        challenge_id=new_challenge.challenge_id,
        user_id=current_user_id,
        joined_at=now
    ))

    session.commit()
    session.refresh(new_challenge)
    return new_challenge

@router.get("/{challenge_id}", response_model=ChallengePublic)
def get_challenge(
    challenge_id: int,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id)
):
    return get_challenge_or_404(session, challenge_id)

@router.post("/{challenge_id}/join", response_model=MemberStatusView)
def join_challenge(
    challenge_id: int,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id),
    now: datetime = Depends(get_now)
):
    challenge = get_challenge_or_404(session, challenge_id)
    if challenge.state != ChallengeState.ACTIVE:
        raise HTTPException(status_code=400, detail="Can only join active challenges")

    member = session.get(ChallengeMember, (challenge_id, current_user_id))
    if not member:
        member = ChallengeMember(challenge_id=challenge_id, user_id=current_user_id, joined_at=now)
        session.add(member)
        session.commit()
        session.refresh(member)
    return build_member_status(session, challenge, member, now)


class PeriodResponse(BaseModel):
    challenge_id: int
    admin_timezone: str
    period_key: str
    due_at_utc: datetime
    due_label: str
    next_due_at_utc: datetime
    deadline_at_utc: Optional[datetime] = None
    remaining_label: str

@router.get("/{challenge_id}/period", response_model=PeriodResponse)
def get_current_period(
    challenge_id: int,
    viewer_zone: Optional[str] = None,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id),
    now: datetime = Depends(get_now)
):
    challenge = get_challenge_or_404(session, challenge_id)
    zone = resolve_admin_timezone(challenge)
    cadence = challenge.cadence
    period_key = get_current_period_key(zone, cadence.unit, challenge.due_time_local, cadence.week_starts_on, now)
    due_at = compute_period_due_moment_utc(zone, period_key, challenge.due_time_local, cadence.unit)
    next_due = compute_next_due_at_utc(zone, challenge.due_time_local, cadence.unit, cadence.week_starts_on, now)
    deadline_at = None
    if challenge.type == ChallengeType.DEADLINE:
        deadline_at = compute_deadline_moment_utc(zone, challenge.deadline_date, challenge.due_time_local)
    remaining = time_remaining(
        zone, challenge.due_time_local, cadence.unit, cadence.week_starts_on, now,
        deadline_date=challenge.deadline_date if deadline_at else None,
    )
    return PeriodResponse(
        challenge_id=challenge_id,
        admin_timezone=zone,
        period_key=period_key,
        due_at_utc=due_at,
        due_label=format_due_in_viewer_zone(due_at, viewer_zone or zone),
        next_due_at_utc=next_due,
        deadline_at_utc=deadline_at,
        remaining_label=format_remaining(remaining),
    )

@router.get("/{challenge_id}/status", response_model=MemberStatusView)
def get_my_status(
    challenge_id: int,
    period_key: Optional[str] = None,
    viewer_zone: Optional[str] = None,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id),
    now: datetime = Depends(get_now)
):
    challenge = get_challenge_or_404(session, challenge_id)
    member = session.get(ChallengeMember, (challenge_id, current_user_id))
    if not member:
        raise HTTPException(status_code=404, detail="Not a member of this challenge")
    if period_key:
        try:
            date.fromisoformat(period_key)
        except ValueError:
            raise HTTPException(status_code=400, detail="Period key must be YYYY-MM-DD")
    return build_member_status(session, challenge, member, now, period_key, viewer_zone)

@router.get("/{challenge_id}/members", response_model=List[MemberStatusView])
def get_members(
    challenge_id: int,
    viewer_zone: Optional[str] = None,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id),
    now: datetime = Depends(get_now)
):
    challenge = get_challenge_or_404(session, challenge_id)
    return list_member_statuses(session, challenge, now, viewer_zone)


class CheckInCreate(BaseModel):
    status: CheckInStatus = CheckInStatus.COMPLETED
    value: Optional[float] = None

class CheckInResponse(BaseModel):
    check_in: CheckInPublic
    member: MemberStatusView

@router.post("/{challenge_id}/check-ins", response_model=CheckInResponse)
def create_check_in(
    challenge_id: int,
    request: CheckInCreate,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id),
    now: datetime = Depends(get_now)
):
    # Close anything already due so the gate sees eliminations and endings
    result = sweep_challenge(session, challenge_id, now)
    if result.status == SweepStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Challenge not found")

    challenge = get_challenge_or_404(session, challenge_id)
    member = session.get(ChallengeMember, (challenge_id, current_user_id))
    allowed, reason = can_check_in(challenge, member, now)
    if not allowed:
        raise HTTPException(status_code=403, detail=reason)

    check_in = build_check_in(challenge, current_user_id, now, request.status, request.value)
    session.add(check_in)
    session.commit()
    session.refresh(check_in)

    return CheckInResponse(
        check_in=CheckInPublic.model_validate(check_in),
        member=build_member_status(session, challenge, member, now, check_in.period.key_for(challenge.cadence_unit)),
    )

@router.post("/{challenge_id}/sweep", response_model=SweepResult)
def run_sweep(
    challenge_id: int,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id),
    now: datetime = Depends(get_now)
):
    result = sweep_challenge(session, challenge_id, now)
    if result.status == SweepStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Challenge not found")
    return result
