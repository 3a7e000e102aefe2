from datetime import datetime, timezone

from app.models.challenge import CadenceUnit, Challenge, Comparison, DeadlineProgressMode
from app.models.check_in import CheckIn, CheckInStatus
from app.services.ledger import (
    build_check_in,
    completed_counts_by_user,
    count_qualifying_check_ins,
    deadline_progress,
    fetch_ledger_window,
    is_requirement_satisfied,
    meets_target,
)


def daily(user_id, day_key, status=CheckInStatus.COMPLETED, value=None, created_at=None):
    return CheckIn(
        challenge_id=1,
        user_id=user_id,
        day_key=day_key,
        status=status,
        value=value,
        created_at=created_at or datetime(2025, 6, 1, tzinfo=timezone.utc),
    )


def test_counts_only_completed_rows_of_the_member_in_the_period():
    check_ins = [
        daily("alice", "2025-06-10"),
        daily("alice", "2025-06-10"),
        daily("alice", "2025-06-10", status=CheckInStatus.PENDING),
        daily("alice", "2025-06-11"),
        daily("bob", "2025-06-10"),
    ]
    assert count_qualifying_check_ins(check_ins, "alice", "2025-06-10", CadenceUnit.DAILY) == 2
    assert count_qualifying_check_ins(check_ins, "bob", "2025-06-11", CadenceUnit.DAILY) == 0
    assert completed_counts_by_user(check_ins, "2025-06-10", CadenceUnit.DAILY) == {"alice": 2, "bob": 1}


def test_weekly_rows_bucket_by_week_key():
    check_ins = [
        CheckIn(challenge_id=1, user_id="alice", period_unit=CadenceUnit.WEEKLY,
                day_key="2025-06-03", week_key="2025-06-02"),
        CheckIn(challenge_id=1, user_id="alice", period_unit=CadenceUnit.WEEKLY,
                day_key="2025-06-09", week_key="2025-06-09"),
    ]
    assert count_qualifying_check_ins(check_ins, "alice", "2025-06-02", CadenceUnit.WEEKLY) == 1
    assert count_qualifying_check_ins(check_ins, "alice", "2025-06-03", CadenceUnit.WEEKLY) == 0


def test_target_filters_values():
    check_ins = [daily("alice", "2025-06-10", value=12), daily("alice", "2025-06-10", value=8),
                 daily("alice", "2025-06-10")]
    assert count_qualifying_check_ins(check_ins, "alice", "2025-06-10", CadenceUnit.DAILY, target=10) == 1
    assert count_qualifying_check_ins(
        check_ins, "alice", "2025-06-10", CadenceUnit.DAILY, target=10, comparison=Comparison.LTE
    ) == 1


def test_requirement_and_targets():
    assert is_requirement_satisfied(3, 3)
    assert not is_requirement_satisfied(2, 3)
    assert is_requirement_satisfied(1, None)
    assert meets_target(5, 5)
    assert not meets_target(None, 5)
    assert meets_target(4, 5, Comparison.LTE)


def test_deadline_progress_modes():
    check_ins = [
        daily("alice", "2025-06-01", value=4, created_at=datetime(2025, 6, 1, tzinfo=timezone.utc)),
        daily("alice", "2025-06-03", value=7, created_at=datetime(2025, 6, 3, tzinfo=timezone.utc)),
        daily("alice", "2025-06-02", created_at=datetime(2025, 6, 2, tzinfo=timezone.utc)),
        daily("alice", "2025-06-04", value=100, status=CheckInStatus.FAILED),
    ]
    assert deadline_progress(check_ins, "alice") == 12
    assert deadline_progress(check_ins, "alice", DeadlineProgressMode.LATEST) == 7
    assert deadline_progress(check_ins, "bob") == 0


def test_build_check_in_stamps_the_current_period():
    challenge = Challenge(
        challenge_id=7, title="t", due_time_local="21:00", timezone="America/New_York",
        cadence_unit=CadenceUnit.WEEKLY, week_starts_on=1,
    )
    # 21:30 EDT on Tuesday, after that day's due time
    check_in = build_check_in(challenge, "alice", datetime(2025, 6, 4, 1, 30, tzinfo=timezone.utc), value=3)
    assert check_in.challenge_id == 7
    assert check_in.day_key == "2025-06-04"
    assert check_in.week_key == "2025-06-02"
    assert check_in.period_unit == CadenceUnit.WEEKLY
    assert check_in.status == CheckInStatus.COMPLETED
    assert check_in.value == 3


def test_fetch_ledger_window_filters_by_period_key(session, make_challenge, add_check_in):
    challenge = make_challenge(
        timezone="UTC", due_time_local="23:59", created_at=datetime(2025, 6, 1, tzinfo=timezone.utc)
    )
    for day in (1, 2, 3):
        add_check_in(challenge, "alice", datetime(2025, 6, day, 12, tzinfo=timezone.utc))

    window = fetch_ledger_window(session, challenge, "2025-06-02")
    assert sorted(check_in.day_key for check_in in window) == ["2025-06-02", "2025-06-03"]
    assert len(fetch_ledger_window(session, challenge)) == 3
