from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from app.models.challenge import CadenceUnit, ChallengeState, ChallengeType, TimezoneMode
from app.models.challenge_member import ChallengeMember, MemberState
from app.services.evaluation import sweep_challenge
from app.services.member_status import MemberStatus, can_check_in, get_member_status

NY = "America/New_York"


def ny(*args):
    return datetime(*args, tzinfo=ZoneInfo(NY))


def make_daily(make_challenge, **fields):
    return make_challenge(
        members=("alice", "bob"),
        due_time_local="21:00",
        timezone_mode=TimezoneMode.GROUP_LOCAL,
        timezone=NY,
        created_at=ny(2025, 6, 10, 10, 0),
        **fields,
    )


def test_pending_then_completed(session, make_challenge, add_check_in):
    challenge = make_daily(make_challenge)
    now = ny(2025, 6, 10, 19, 15)

    status = get_member_status(session, challenge.challenge_id, "alice", now)
    assert status.period_key == "2025-06-10"
    assert status.status == MemberStatus.PENDING
    assert status.remaining == timedelta(hours=1, minutes=45)
    assert status.remaining_label == "1h 45m"
    assert status.due_label == "9:00 PM"
    assert status.completed_count == 0
    assert status.required_count == 1

    add_check_in(challenge, "alice", now)
    status = get_member_status(session, challenge.challenge_id, "alice", now)
    assert status.status == MemberStatus.COMPLETED
    assert status.satisfied


def test_closed_period_reports_the_recorded_outcome(session, make_challenge):
    challenge = make_daily(make_challenge, strikes_allowed=2)
    sweep_challenge(session, challenge.challenge_id, ny(2025, 6, 10, 21, 5))

    status = get_member_status(session, challenge.challenge_id, "bob", ny(2025, 6, 10, 21, 5), "2025-06-10")
    assert status.status == MemberStatus.MISSED
    assert status.strikes == 1
    assert status.remaining == timedelta(0)

    current = get_member_status(session, challenge.challenge_id, "bob", ny(2025, 6, 10, 21, 5))
    assert current.period_key == "2025-06-11"
    assert current.status == MemberStatus.PENDING


def test_eliminated_and_not_started(session, make_challenge):
    challenge = make_daily(make_challenge, strikes_allowed=0)
    session.add(ChallengeMember(
        challenge_id=challenge.challenge_id, user_id="carol", joined_at=ny(2025, 6, 10, 21, 30).astimezone(timezone.utc)
    ))
    session.commit()
    sweep_challenge(session, challenge.challenge_id, ny(2025, 6, 10, 21, 45))

    alice = get_member_status(session, challenge.challenge_id, "alice", ny(2025, 6, 10, 22, 0))
    assert alice.status == MemberStatus.ELIMINATED

    carol = get_member_status(session, challenge.challenge_id, "carol", ny(2025, 6, 10, 22, 0), "2025-06-10")
    assert carol.status == MemberStatus.NOT_STARTED


def test_missing_lookups_return_none(session, make_challenge):
    challenge = make_daily(make_challenge)
    assert get_member_status(session, 12345, "alice") is None
    assert get_member_status(session, challenge.challenge_id, "zed") is None


def test_check_in_gate(session, make_challenge):
    challenge = make_daily(make_challenge)
    alice = session.get(ChallengeMember, (challenge.challenge_id, "alice"))
    assert can_check_in(challenge, alice, ny(2025, 6, 10, 12, 0)) == (True, None)
    assert can_check_in(challenge, None)[0] is False

    alice.state = MemberState.ELIMINATED
    assert can_check_in(challenge, alice)[0] is False

    alice.state = MemberState.ACTIVE
    challenge.state = ChallengeState.ENDED
    assert can_check_in(challenge, alice) == (False, "Challenge has ended")


def test_check_in_gate_after_deadline(session, make_challenge):
    challenge = make_challenge(
        type=ChallengeType.DEADLINE,
        timezone="UTC",
        deadline_date=datetime(2025, 6, 1).date(),
        created_at=datetime(2025, 5, 1, tzinfo=timezone.utc),
    )
    alice = session.get(ChallengeMember, (challenge.challenge_id, "alice"))
    assert can_check_in(challenge, alice, datetime(2025, 6, 1, 23, 0, tzinfo=timezone.utc))[0]
    allowed, reason = can_check_in(challenge, alice, datetime(2025, 6, 2, tzinfo=timezone.utc))
    assert not allowed
    assert reason == "The deadline has passed"


def test_weekly_check_in_after_the_week_closed(session, make_challenge):
    challenge = make_challenge(
        cadence_unit=CadenceUnit.WEEKLY,
        week_starts_on=1,
        timezone="UTC",
        due_time_local="23:00",
        created_at=datetime(2025, 6, 9, 8, tzinfo=timezone.utc),
    )
    alice = session.get(ChallengeMember, (challenge.challenge_id, "alice"))
    # Sunday 23:30 still carries the week of Monday 9 June, which closed at 23:00
    allowed, reason = can_check_in(challenge, alice, datetime(2025, 6, 15, 23, 30, tzinfo=timezone.utc))
    assert not allowed
    assert reason == "This period has already closed"
    assert can_check_in(challenge, alice, datetime(2025, 6, 15, 22, 59, tzinfo=timezone.utc)) == (True, None)
    assert can_check_in(challenge, alice, datetime(2025, 6, 16, 0, 1, tzinfo=timezone.utc)) == (True, None)

    challenge.late_grace_minutes = 45
    assert can_check_in(challenge, alice, datetime(2025, 6, 15, 23, 30, tzinfo=timezone.utc)) == (True, None)


def make_deadline(make_challenge):
    return make_challenge(
        members=("alice", "bob"),
        type=ChallengeType.DEADLINE,
        timezone_mode=TimezoneMode.FIXED_ZONE,
        timezone="UTC",
        due_time_local="23:59",
        deadline_date=datetime(2025, 6, 1).date(),
        deadline_target_value=10,
        created_at=datetime(2025, 5, 25, 9, tzinfo=timezone.utc),
    )


def test_deadline_status_counts_the_whole_window(session, make_challenge, add_check_in):
    challenge = make_deadline(make_challenge)
    add_check_in(challenge, "alice", datetime(2025, 5, 26, 10, tzinfo=timezone.utc), value=6)

    status = get_member_status(session, challenge.challenge_id, "alice", datetime(2025, 5, 30, 12, tzinfo=timezone.utc))
    assert status.status == MemberStatus.PENDING
    assert status.completed_count == 1
    assert status.progress == 6
    assert status.progress_target == 10
    assert status.due_at_utc == datetime(2025, 6, 1, 23, 59, tzinfo=timezone.utc)
    assert status.remaining_label == "59h 59m"


def test_deadline_result_is_shown_after_the_end(session, make_challenge, add_check_in):
    challenge = make_deadline(make_challenge)
    add_check_in(challenge, "alice", datetime(2025, 5, 26, 10, tzinfo=timezone.utc), value=6)
    add_check_in(challenge, "alice", datetime(2025, 5, 29, 10, tzinfo=timezone.utc), value=7)
    add_check_in(challenge, "bob", datetime(2025, 5, 27, 10, tzinfo=timezone.utc), value=4)

    result = sweep_challenge(session, challenge.challenge_id, datetime(2025, 6, 2, tzinfo=timezone.utc))
    assert result.challenge_ended
    session.refresh(challenge)
    assert challenge.state == ChallengeState.ENDED

    after = datetime(2025, 6, 2, 1, tzinfo=timezone.utc)
    alice = get_member_status(session, challenge.challenge_id, "alice", after)
    assert alice.satisfied
    assert alice.completed_count == 2
    assert alice.progress == 13
    assert alice.status == MemberStatus.COMPLETED
    assert alice.remaining == timedelta(0)

    bob = get_member_status(session, challenge.challenge_id, "bob", after)
    assert not bob.satisfied
    assert bob.progress == 4
    assert bob.status == MemberStatus.MISSED


def test_progress_status_reports_when_the_target_steps_up(session, make_challenge):
    challenge = make_challenge(
        type=ChallengeType.PROGRESS,
        timezone="UTC",
        due_time_local="21:00",
        progression_duration=7,
        progress_starts_at=10,
        progress_increase_by=5,
        created_at=datetime(2025, 6, 1, 8, tzinfo=timezone.utc),
    )

    status = get_member_status(session, challenge.challenge_id, "alice", datetime(2025, 6, 10, 12, tzinfo=timezone.utc))
    assert status.progress_target == 15
    assert status.progress_interval_ends_at == datetime(2025, 6, 14, 21, tzinfo=timezone.utc)

    daily = make_daily(make_challenge)
    assert get_member_status(session, daily.challenge_id, "alice", ny(2025, 6, 10, 12, 0)).progress_interval_ends_at is None
