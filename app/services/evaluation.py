"""Evaluation state machine.

Closes periods whose due instant has passed and applies the consequences to
each member exactly once.

Closure decisions live in the append-only `period_outcome` table, unique per
(challenge, member, period). A member's strikes, streaks and state are always
re-derived by folding their outcomes in period order, so two writers racing
to close the same period either insert the same row (one of them fails on the
unique constraint and retries) or see the other's row and skip it. Once an
outcome exists it is final: late check-ins never change it.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..config import CHECK_IN_LOOKBACK_DAYS, MAX_CLOSURE_RETRIES
from ..models.challenge import Challenge, ChallengeState, ChallengeType
from ..models.challenge_event import ChallengeEvent, ChallengeEventType
from ..models.challenge_member import ChallengeMember, MemberState
from ..models.check_in import CheckIn, CheckInStatus
from ..models.period_outcome import PeriodOutcome
from .ledger import (
    completed_counts_by_user,
    deadline_progress,
    fetch_ledger_window,
    is_requirement_satisfied,
    meets_target,
)
from .period_clock import (
    compute_deadline_moment_utc,
    compute_period_due_moment_utc,
    ensure_utc,
    get_current_period_key,
    has_period_due_passed,
    is_deadline_passed,
    iter_period_keys,
    next_period_key,
    progress_interval_index,
)
from .timezone import resolve_admin_timezone

logger = logging.getLogger(__name__)


class SweepStatus(str, Enum):
    EVALUATED = "evaluated"
    NOTHING_DUE = "nothing_due"
    ENDED = "ended"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class MemberStanding:
    state: MemberState = MemberState.ACTIVE
    strikes: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_period_key: Optional[str] = None
    eliminated_in: Optional[str] = None


def apply_outcome(
    standing: MemberStanding,
    period_key: str,
    satisfied: bool,
    *,
    counts_strikes: bool,
    strikes_allowed: int = 0,
) -> MemberStanding:
    if standing.state == MemberState.ELIMINATED:
        return standing

    if satisfied:
        streak = standing.current_streak + 1
        return replace(
            standing,
            current_streak=streak,
            longest_streak=max(standing.longest_streak, streak),
            last_period_key=period_key,
        )

    strikes = standing.strikes + 1 if counts_strikes else standing.strikes
    if counts_strikes and strikes > strikes_allowed:
        return replace(
            standing,
            state=MemberState.ELIMINATED,
            strikes=strikes,
            current_streak=0,
            last_period_key=period_key,
            eliminated_in=period_key,
        )
    return replace(standing, strikes=strikes, current_streak=0, last_period_key=period_key)


def fold_outcomes(
    outcomes: Iterable[PeriodOutcome],
    *,
    counts_strikes: bool,
    strikes_allowed: int = 0,
) -> MemberStanding:
    standing = MemberStanding()
    for outcome in sorted(outcomes, key=lambda o: o.period_key):
        standing = apply_outcome(
            standing,
            outcome.period_key,
            outcome.satisfied,
            counts_strikes=counts_strikes,
            strikes_allowed=strikes_allowed,
        )
    return standing


class MemberOutcome(BaseModel):
    user_id: str
    period_key: str
    satisfied: bool
    completed_count: int
    required_count: int
    strikes: int
    current_streak: int
    state: MemberState

class DeadlineResult(BaseModel):
    user_id: str
    progress: float
    completed_count: int
    satisfied: bool

class SweepResult(BaseModel):
    challenge_id: int
    status: SweepStatus
    closed_periods: List[str] = []
    outcomes: List[MemberOutcome] = []
    eliminated: List[str] = []
    challenge_ended: bool = False
    winner_id: Optional[str] = None
    deadline_results: List[DeadlineResult] = []


# Rule helpers

def counts_strikes(challenge: Challenge) -> bool:
    return challenge.type == ChallengeType.ELIMINATION


def first_period_key(challenge: Challenge, zone: str) -> str:
    cadence = challenge.cadence
    return get_current_period_key(
        zone, cadence.unit, challenge.due_time_local, cadence.week_starts_on, ensure_utc(challenge.created_at)
    )


def progress_target(challenge: Challenge, anchor_key: str, period_key: str) -> Optional[float]:
    if challenge.type != ChallengeType.PROGRESS or challenge.progress_starts_at is None:
        return None
    index = progress_interval_index(anchor_key, period_key, challenge.progression_duration)
    return challenge.progress_starts_at + index * (challenge.progress_increase_by or 0)


def closable_period_keys(
    challenge: Challenge,
    zone: str,
    now: datetime,
    lookback_days: int = CHECK_IN_LOOKBACK_DAYS,
) -> List[str]:
    """Periods whose due instant (plus grace) has passed, oldest first.

    Starts at the challenge's first period, or at the edge of the ledger
    look-back window when that is later.
    """
    cadence = challenge.cadence
    due_time = challenge.due_time_local
    start = first_period_key(challenge, zone)
    floor = get_current_period_key(zone, cadence.unit, due_time, cadence.week_starts_on, now - timedelta(days=lookback_days))
    if floor > start:
        start = floor

    deadline = None
    if challenge.type == ChallengeType.DEADLINE:
        deadline = compute_deadline_moment_utc(zone, challenge.deadline_date, due_time)

    keys = []
    for key in iter_period_keys(start, cadence.unit):
        if not has_period_due_passed(zone, key, due_time, cadence.unit, now, challenge.late_grace_minutes):
            break
        if deadline is not None and compute_period_due_moment_utc(zone, key, due_time, cadence.unit) > deadline:
            break
        keys.append(key)
    return keys


# Persistence helpers

def _emit_event(
    session: Session,
    challenge: Challenge,
    event_type: ChallengeEventType,
    dedupe_key: str,
    message: str,
    user_id: str = "",
) -> bool:
    existing = session.exec(
        select(ChallengeEvent.event_id).where(
            ChallengeEvent.challenge_id == challenge.challenge_id,
            ChallengeEvent.user_id == user_id,
            ChallengeEvent.event_type == event_type,
            ChallengeEvent.dedupe_key == dedupe_key,
        )
    ).first()
    if existing is not None:
        return False
    session.add(ChallengeEvent(
        challenge_id=challenge.challenge_id,
        user_id=user_id,
        event_type=event_type,
        dedupe_key=dedupe_key,
        message=message,
    ))
    return True


def _end_challenge(session: Session, challenge: Challenge, now: datetime, winner_id: Optional[str] = None) -> bool:
    """Flip the challenge to ended; True only for the writer that flipped it."""
    values = {"state": ChallengeState.ENDED, "ended_at": now}
    if winner_id is not None:
        values["winner_id"] = winner_id
    result = session.exec(
        update(Challenge)
        .where(Challenge.challenge_id == challenge.challenge_id)
        .where(Challenge.state == ChallengeState.ACTIVE)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def _write_standing(member: ChallengeMember, standing: MemberStanding, now: datetime) -> None:
    member.strikes = standing.strikes
    member.current_streak = standing.current_streak
    member.longest_streak = standing.longest_streak
    member.last_evaluated_period_key = standing.last_period_key
    if standing.state == MemberState.ELIMINATED and member.state != MemberState.ELIMINATED:
        member.state = MemberState.ELIMINATED
        member.eliminated_at = now


def _load_outcomes(session: Session, challenge_id: int) -> Dict[str, List[PeriodOutcome]]:
    outcomes = session.exec(
        select(PeriodOutcome)
        .where(PeriodOutcome.challenge_id == challenge_id)
        .order_by(PeriodOutcome.period_key)
    ).all()
    by_user: Dict[str, List[PeriodOutcome]] = {}
    for outcome in outcomes:
        by_user.setdefault(outcome.user_id, []).append(outcome)
    return by_user


# Closure

def _close_period(
    session: Session,
    challenge: Challenge,
    zone: str,
    period_key: str,
    anchor_key: str,
    members: List[ChallengeMember],
    check_ins: List[CheckIn],
    outcomes_by_user: Dict[str, List[PeriodOutcome]],
    now: datetime,
    result: SweepResult,
) -> None:
    cadence = challenge.cadence
    due = compute_period_due_moment_utc(zone, period_key, challenge.due_time_local, cadence.unit)
    target = progress_target(challenge, anchor_key, period_key)
    counts = completed_counts_by_user(
        check_ins, period_key, cadence.unit, target=target, comparison=challenge.progress_comparison
    )
    strikes_on = counts_strikes(challenge)
    newly_eliminated = []
    applied = False

    for member in members:
        if member.state == MemberState.ELIMINATED:
            continue
        if ensure_utc(member.joined_at) >= due:
            continue
        history = outcomes_by_user.setdefault(member.user_id, [])
        if any(outcome.period_key == period_key for outcome in history):
            continue

        standing = fold_outcomes(history, counts_strikes=strikes_on, strikes_allowed=challenge.strikes_allowed)
        if standing.state == MemberState.ELIMINATED:
            continue

        completed = counts.get(member.user_id, 0)
        satisfied = is_requirement_satisfied(completed, cadence.required_count)
        outcome = PeriodOutcome(
            challenge_id=challenge.challenge_id,
            user_id=member.user_id,
            period_key=period_key,
            period_unit=cadence.unit,
            satisfied=satisfied,
            completed_count=completed,
            required_count=cadence.required_count,
            evaluated_at=now,
        )
        session.add(outcome)
        history.append(outcome)
        applied = True

        standing = apply_outcome(
            standing, period_key, satisfied, counts_strikes=strikes_on, strikes_allowed=challenge.strikes_allowed
        )
        _write_standing(member, standing, now)
        session.add(member)

        result.outcomes.append(MemberOutcome(
            user_id=member.user_id,
            period_key=period_key,
            satisfied=satisfied,
            completed_count=completed,
            required_count=cadence.required_count,
            strikes=standing.strikes,
            current_streak=standing.current_streak,
            state=standing.state,
        ))

        if satisfied or not strikes_on:
            continue
        if standing.state == MemberState.ELIMINATED:
            newly_eliminated.append(member.user_id)
            _emit_event(
                session, challenge, ChallengeEventType.ELIMINATED, period_key,
                f"Missed the check-in for '{challenge.title}' and has been eliminated.",
                user_id=member.user_id,
            )
        else:
            remaining = challenge.strikes_allowed - standing.strikes
            _emit_event(
                session, challenge, ChallengeEventType.STRIKE, period_key,
                f"Missed the check-in for '{challenge.title}'. Strike {standing.strikes}/{challenge.strikes_allowed + 1}, "
                + ("next miss means elimination." if remaining == 0 else f"{remaining} remaining."),
                user_id=member.user_id,
            )

    if not applied:
        return
    result.closed_periods.append(period_key)
    result.eliminated.extend(newly_eliminated)

    if challenge.type == ChallengeType.PROGRESS and challenge.progression_duration:
        upcoming = next_period_key(period_key, cadence.unit)
        index = progress_interval_index(anchor_key, upcoming, challenge.progression_duration)
        if index > progress_interval_index(anchor_key, period_key, challenge.progression_duration):
            next_target = progress_target(challenge, anchor_key, upcoming)
            message = f"'{challenge.title}' has increased."
            if next_target is not None:
                message = f"'{challenge.title}' has increased. New target: {next_target:g}."
            _emit_event(session, challenge, ChallengeEventType.PROGRESS_INCREASED, f"interval-{index}", message)

    if newly_eliminated:
        _decide_winner(session, challenge, members, now, result)


def _decide_winner(
    session: Session,
    challenge: Challenge,
    members: List[ChallengeMember],
    now: datetime,
    result: SweepResult,
) -> None:
    remaining = [member for member in members if member.state == MemberState.ACTIVE]
    if len(remaining) > 1:
        return

    winner_id = remaining[0].user_id if remaining else None
    if not _end_challenge(session, challenge, now, winner_id=winner_id):
        return
    result.challenge_ended = True
    result.winner_id = winner_id

    if winner_id is not None:
        _emit_event(
            session, challenge, ChallengeEventType.WINNER, "winner",
            f"Last remaining member of '{challenge.title}'. They win!",
            user_id=winner_id,
        )
        logger.info("Winner determined for challenge %s: %s", challenge.challenge_id, winner_id)
    else:
        _emit_event(
            session, challenge, ChallengeEventType.CHALLENGE_ENDED, "all_eliminated",
            f"All members have been eliminated from '{challenge.title}'. The challenge has ended.",
        )
        logger.info("Challenge %s ended with every member eliminated", challenge.challenge_id)


def evaluate_deadline_members(
    challenge: Challenge,
    members: List[ChallengeMember],
    check_ins: List[CheckIn],
) -> List[DeadlineResult]:
    results = []
    for member in members:
        completed = sum(
            1 for check_in in check_ins
            if check_in.user_id == member.user_id and check_in.status == CheckInStatus.COMPLETED
        )
        progress = deadline_progress(check_ins, member.user_id, challenge.deadline_progress_mode)
        if challenge.deadline_target_value is not None:
            satisfied = meets_target(progress, challenge.deadline_target_value, challenge.deadline_comparison)
        else:
            satisfied = is_requirement_satisfied(completed, challenge.required_count)
        results.append(DeadlineResult(
            user_id=member.user_id, progress=progress, completed_count=completed, satisfied=satisfied
        ))
    return results


def _close_deadline(
    session: Session,
    challenge: Challenge,
    zone: str,
    members: List[ChallengeMember],
    now: datetime,
    result: SweepResult,
) -> None:
    if not is_deadline_passed(zone, challenge.deadline_date, challenge.due_time_local, now):
        return

    result.deadline_results = evaluate_deadline_members(challenge, members, fetch_ledger_window(session, challenge))
    if not _end_challenge(session, challenge, now):
        return
    result.challenge_ended = True
    _emit_event(
        session, challenge, ChallengeEventType.DEADLINE_PASSED, "deadline",
        f"The deadline for '{challenge.title}' has passed. The challenge has ended!",
    )
    logger.info("Deadline challenge %s ended", challenge.challenge_id)


def _sweep_once(session: Session, challenge_id: int, now: datetime) -> SweepResult:
    challenge = session.get(Challenge, challenge_id)
    if challenge is None:
        return SweepResult(challenge_id=challenge_id, status=SweepStatus.NOT_FOUND)
    if challenge.state == ChallengeState.ENDED:
        return SweepResult(
            challenge_id=challenge_id, status=SweepStatus.ENDED, challenge_ended=True, winner_id=challenge.winner_id
        )

    zone = resolve_admin_timezone(challenge)
    result = SweepResult(challenge_id=challenge_id, status=SweepStatus.NOTHING_DUE)
    members = session.exec(
        select(ChallengeMember).where(ChallengeMember.challenge_id == challenge_id)
    ).all()

    keys = closable_period_keys(challenge, zone, now)
    if keys and members:
        check_ins = fetch_ledger_window(session, challenge, keys[0])
        outcomes_by_user = _load_outcomes(session, challenge_id)
        anchor_key = first_period_key(challenge, zone)
        for key in keys:
            _close_period(
                session, challenge, zone, key, anchor_key, members, check_ins, outcomes_by_user, now, result
            )
            if result.challenge_ended:
                break

    if challenge.type == ChallengeType.DEADLINE and not result.challenge_ended:
        _close_deadline(session, challenge, zone, members, now, result)

    session.commit()

    if result.closed_periods or result.challenge_ended:
        result.status = SweepStatus.EVALUATED
        logger.info(
            "Challenge %s closed %d period(s), %d eliminated",
            challenge_id, len(result.closed_periods), len(result.eliminated),
        )
    return result


def sweep_challenge(session: Session, challenge_id: int, now: Optional[datetime] = None) -> SweepResult:
    """Close every due period of a challenge and apply the consequences once.

    Safe to call from any number of devices or jobs at the same time.
    """
    now = ensure_utc(now)
    for attempt in range(1, MAX_CLOSURE_RETRIES + 1):
        try:
            return _sweep_once(session, challenge_id, now)
        except IntegrityError:
            session.rollback()
            logger.info("Concurrent closure on challenge %s (attempt %d), retrying", challenge_id, attempt)
    logger.error("Giving up closing challenge %s after %d attempts", challenge_id, MAX_CLOSURE_RETRIES)
    return SweepResult(challenge_id=challenge_id, status=SweepStatus.CONFLICT)


def sweep_active_challenges(session: Session, now: Optional[datetime] = None) -> List[SweepResult]:
    now = ensure_utc(now)
    challenge_ids = session.exec(
        select(Challenge.challenge_id).where(Challenge.state == ChallengeState.ACTIVE)
    ).all()
    logger.info("Sweeping %d active challenges", len(challenge_ids))
    return [sweep_challenge(session, challenge_id, now) for challenge_id in challenge_ids]
