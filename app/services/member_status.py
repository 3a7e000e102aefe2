"""Per-member status for display, and the check-in gate."""
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel
from sqlmodel import Session, select

from ..models.challenge import Challenge, ChallengeState, ChallengeType
from ..models.challenge_member import ChallengeMember, MemberState
from ..models.period_outcome import PeriodOutcome
from .evaluation import evaluate_deadline_members, first_period_key, progress_target
from .ledger import count_qualifying_check_ins, fetch_ledger_window, is_requirement_satisfied
from .period_clock import (
    compute_deadline_moment_utc,
    compute_period_due_moment_utc,
    compute_progress_interval_bounds,
    ensure_utc,
    format_due_in_viewer_zone,
    format_remaining,
    get_current_period_key,
    get_submission_period,
    has_period_due_passed,
    is_deadline_passed,
    progress_interval_index,
)
from .timezone import resolve_admin_timezone


class MemberStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    MISSED = "missed"
    ELIMINATED = "eliminated"
    ENDED = "ended"
    NOT_STARTED = "not_started"

class MemberStatusView(BaseModel):
    challenge_id: int
    user_id: str
    period_key: str
    due_at_utc: datetime
    due_label: str
    remaining: timedelta
    remaining_label: str
    completed_count: int
    required_count: int
    satisfied: bool
    status: MemberStatus
    strikes: int
    strikes_allowed: int
    current_streak: int
    longest_streak: int
    progress_target: Optional[float] = None
    progress: Optional[float] = None
    progress_interval_ends_at: Optional[datetime] = None


def can_check_in(
    challenge: Challenge,
    member: Optional[ChallengeMember],
    now: Optional[datetime] = None,
) -> Tuple[bool, Optional[str]]:
    if challenge.state == ChallengeState.ENDED:
        return False, "Challenge has ended"
    if member is None:
        return False, "Not a member of this challenge"
    if member.state == MemberState.ELIMINATED:
        return False, "You have been eliminated from this challenge"
    zone = resolve_admin_timezone(challenge)
    if challenge.type == ChallengeType.DEADLINE and is_deadline_passed(
        zone, challenge.deadline_date, challenge.due_time_local, now
    ):
        return False, "The deadline has passed"
    # A week closes at its last day's due time but keeps its key until midnight
    cadence = challenge.cadence
    period = get_submission_period(zone, cadence.unit, challenge.due_time_local, cadence.week_starts_on, now)
    if has_period_due_passed(
        zone, period.key_for(cadence.unit), challenge.due_time_local, cadence.unit, now, challenge.late_grace_minutes
    ):
        return False, "This period has already closed"
    return True, None


def _status_for(
    challenge: Challenge,
    member: ChallengeMember,
    period_key: str,
    anchor_key: str,
    due: datetime,
    satisfied: bool,
    outcome: Optional[PeriodOutcome],
    now: datetime,
) -> MemberStatus:
    if member.state == MemberState.ELIMINATED:
        return MemberStatus.ELIMINATED
    if period_key < anchor_key or ensure_utc(member.joined_at) >= due:
        return MemberStatus.NOT_STARTED
    if satisfied:
        return MemberStatus.COMPLETED
    if outcome is not None or now >= due + timedelta(minutes=challenge.late_grace_minutes or 0):
        return MemberStatus.MISSED
    if challenge.state == ChallengeState.ENDED:
        return MemberStatus.ENDED
    return MemberStatus.PENDING


def build_member_status(
    session: Session,
    challenge: Challenge,
    member: ChallengeMember,
    now: Optional[datetime] = None,
    period_key: Optional[str] = None,
    viewer_zone: Optional[str] = None,
) -> MemberStatusView:
    now = ensure_utc(now)
    zone = resolve_admin_timezone(challenge)
    cadence = challenge.cadence
    due_time = challenge.due_time_local
    period_key = period_key or get_current_period_key(zone, cadence.unit, due_time, cadence.week_starts_on, now)
    anchor_key = first_period_key(challenge, zone)
    if challenge.type == ChallengeType.DEADLINE:
        return _deadline_status(session, challenge, member, zone, period_key, now, viewer_zone)

    due = compute_period_due_moment_utc(zone, period_key, due_time, cadence.unit)
    # A closed period is reported as it was decided, never recounted
    outcome = session.exec(
        select(PeriodOutcome).where(
            PeriodOutcome.challenge_id == challenge.challenge_id,
            PeriodOutcome.user_id == member.user_id,
            PeriodOutcome.period_key == period_key,
        )
    ).first()
    target = progress_target(challenge, anchor_key, period_key)
    if outcome is not None:
        completed = outcome.completed_count
        satisfied = outcome.satisfied
    else:
        check_ins = fetch_ledger_window(session, challenge, period_key)
        completed = count_qualifying_check_ins(
            check_ins, member.user_id, period_key, cadence.unit,
            target=target, comparison=challenge.progress_comparison,
        )
        satisfied = is_requirement_satisfied(completed, cadence.required_count)

    interval_ends_at = None
    if challenge.type == ChallengeType.PROGRESS and challenge.progression_duration:
        index = progress_interval_index(anchor_key, period_key, challenge.progression_duration)
        _, interval_ends_at = compute_progress_interval_bounds(
            zone, anchor_key, index, challenge.progression_duration, due_time
        )

    remaining = max(due - now, timedelta(0))
    return MemberStatusView(
        challenge_id=challenge.challenge_id,
        user_id=member.user_id,
        period_key=period_key,
        due_at_utc=due,
        due_label=format_due_in_viewer_zone(due, viewer_zone or zone),
        remaining=remaining,
        remaining_label=format_remaining(remaining),
        completed_count=completed,
        required_count=cadence.required_count,
        satisfied=satisfied,
        status=_status_for(challenge, member, period_key, anchor_key, due, satisfied, outcome, now),
        strikes=member.strikes,
        strikes_allowed=challenge.strikes_allowed,
        current_streak=member.current_streak,
        longest_streak=member.longest_streak,
        progress_target=target,
        progress_interval_ends_at=interval_ends_at,
    )


def _deadline_status(
    session: Session,
    challenge: Challenge,
    member: ChallengeMember,
    zone: str,
    period_key: str,
    now: datetime,
    viewer_zone: Optional[str],
) -> MemberStatusView:
    """Deadline challenges pass or fail on the whole window, not on a period."""
    deadline = compute_deadline_moment_utc(zone, challenge.deadline_date, challenge.due_time_local)
    result = evaluate_deadline_members(challenge, [member], fetch_ledger_window(session, challenge))[0]

    if member.state == MemberState.ELIMINATED:
        status = MemberStatus.ELIMINATED
    elif result.satisfied:
        status = MemberStatus.COMPLETED
    elif now >= deadline:
        status = MemberStatus.MISSED
    elif challenge.state == ChallengeState.ENDED:
        status = MemberStatus.ENDED
    else:
        status = MemberStatus.PENDING

    remaining = max(deadline - now, timedelta(0))
    return MemberStatusView(
        challenge_id=challenge.challenge_id,
        user_id=member.user_id,
        period_key=period_key,
        due_at_utc=deadline,
        due_label=format_due_in_viewer_zone(deadline, viewer_zone or zone),
        remaining=remaining,
        remaining_label=format_remaining(remaining),
        completed_count=result.completed_count,
        required_count=challenge.required_count,
        satisfied=result.satisfied,
        status=status,
        strikes=member.strikes,
        strikes_allowed=challenge.strikes_allowed,
        current_streak=member.current_streak,
        longest_streak=member.longest_streak,
        progress_target=challenge.deadline_target_value,
        progress=result.progress,
    )


def get_member_status(
    session: Session,
    challenge_id: int,
    user_id: str,
    now: Optional[datetime] = None,
    period_key: Optional[str] = None,
    viewer_zone: Optional[str] = None,
) -> Optional[MemberStatusView]:
    """Status of one member in a period (the current one by default).

    None when the challenge or the member does not exist.
    """
    challenge = session.get(Challenge, challenge_id)
    if challenge is None:
        return None
    member = session.get(ChallengeMember, (challenge_id, user_id))
    if member is None:
        return None
    return build_member_status(session, challenge, member, now, period_key, viewer_zone)


def list_member_statuses(
    session: Session,
    challenge: Challenge,
    now: Optional[datetime] = None,
    viewer_zone: Optional[str] = None,
) -> List[MemberStatusView]:
    members = session.exec(
        select(ChallengeMember)
        .where(ChallengeMember.challenge_id == challenge.challenge_id)
        .order_by(ChallengeMember.joined_at)
    ).all()
    return [build_member_status(session, challenge, member, now, viewer_zone=viewer_zone) for member in members]
