"""Submission ledger queries.

Check-ins are bucketed purely by the period key stamped on them at write
time. Raw timestamps are never used to decide which period a row counts for.
"""
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, select

from ..models.challenge import CadenceUnit, Challenge, ChallengeType, Comparison, DeadlineProgressMode
from ..models.check_in import CheckIn, CheckInStatus
from .period_clock import ensure_utc, get_submission_period
from .timezone import resolve_admin_timezone


def meets_target(value: Optional[float], target: float, comparison: Comparison = Comparison.GTE) -> bool:
    if value is None:
        return False
    if comparison == Comparison.LTE:
        return value <= target
    return value >= target


def _period_key_of(check_in: CheckIn, cadence_unit: CadenceUnit) -> Optional[str]:
    return check_in.week_key if cadence_unit == CadenceUnit.WEEKLY else check_in.day_key


def count_qualifying_check_ins(
    check_ins: Iterable[CheckIn],
    user_id: str,
    period_key: str,
    cadence_unit: CadenceUnit,
    *,
    target: Optional[float] = None,
    comparison: Comparison = Comparison.GTE,
) -> int:
    """Number of completed check-ins `user_id` has in `period_key`.

    Several completed rows in one period all count. With a `target`, a row
    only qualifies when its value meets it.
    """
    count = 0
    for check_in in check_ins:
        if check_in.user_id != user_id or check_in.status != CheckInStatus.COMPLETED:
            continue
        if _period_key_of(check_in, cadence_unit) != period_key:
            continue
        if target is not None and not meets_target(check_in.value, target, comparison):
            continue
        count += 1
    return count


def is_requirement_satisfied(count: int, required_count: Optional[int] = 1) -> bool:
    return count >= (required_count or 1)


def completed_counts_by_user(
    check_ins: Iterable[CheckIn],
    period_key: str,
    cadence_unit: CadenceUnit,
    *,
    target: Optional[float] = None,
    comparison: Comparison = Comparison.GTE,
) -> Dict[str, int]:
    counts: Counter = Counter()
    for check_in in check_ins:
        if check_in.status != CheckInStatus.COMPLETED:
            continue
        if _period_key_of(check_in, cadence_unit) != period_key:
            continue
        if target is not None and not meets_target(check_in.value, target, comparison):
            continue
        counts[check_in.user_id] += 1
    return dict(counts)


def deadline_progress(
    check_ins: Iterable[CheckIn],
    user_id: str,
    mode: DeadlineProgressMode = DeadlineProgressMode.ACCUMULATE,
) -> float:
    """Progress toward a deadline target over the whole challenge window.

    accumulate sums values (a completed row without a value counts as 1);
    latest takes the value of the most recent completed row.
    """
    completed = [
        check_in for check_in in check_ins
        if check_in.user_id == user_id and check_in.status == CheckInStatus.COMPLETED
    ]
    if not completed:
        return 0.0
    if mode == DeadlineProgressMode.LATEST:
        latest = max(completed, key=lambda check_in: ensure_utc(check_in.created_at))
        return float(latest.value if latest.value is not None else 1)
    return float(sum(check_in.value if check_in.value is not None else 1 for check_in in completed))


def fetch_ledger_window(session: Session, challenge: Challenge, since_key: Optional[str] = None) -> List[CheckIn]:
    """Check-ins of a challenge whose period key is at or after `since_key`.

    Keys are ISO dates, so string comparison is chronological. Deadline
    challenges are judged on their whole window and ignore `since_key`.
    """
    statement = select(CheckIn).where(CheckIn.challenge_id == challenge.challenge_id)
    if since_key and challenge.type != ChallengeType.DEADLINE:
        if challenge.cadence_unit == CadenceUnit.WEEKLY:
            statement = statement.where(CheckIn.week_key >= since_key)
        else:
            statement = statement.where(CheckIn.day_key >= since_key)
    return session.exec(statement).all()


def build_check_in(
    challenge: Challenge,
    user_id: str,
    now: Optional[datetime] = None,
    status: CheckInStatus = CheckInStatus.COMPLETED,
    value: Optional[float] = None,
) -> CheckIn:
    """New check-in stamped with the period that is current at `now`."""
    now = ensure_utc(now)
    cadence = challenge.cadence
    period = get_submission_period(
        resolve_admin_timezone(challenge),
        cadence.unit,
        challenge.due_time_local,
        cadence.week_starts_on,
        now,
    )
    return CheckIn(
        challenge_id=challenge.challenge_id,
        user_id=user_id,
        period_unit=period.unit,
        day_key=period.day_key,
        week_key=period.week_key,
        status=status,
        value=value,
        created_at=now,
    )
