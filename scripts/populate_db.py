import sys
import os

# Add the project root directory to Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from datetime import datetime, timedelta, timezone
import random

from sqlmodel import Session

from app.database import create_db_and_tables, engine
from app.models.challenge import CadenceUnit, Challenge, ChallengeType, TimezoneMode
from app.models.challenge_member import ChallengeMember
from app.services.evaluation import sweep_challenge
from app.services.ledger import build_check_in

logging.basicConfig(level=logging.INFO)

# Test data
test_users = ["john_doe", "jane_smith", "bob_wilson", "alice_jones", "charlie_brown"]

test_challenges = [
    {"title": "Morning run", "type": ChallengeType.ELIMINATION, "due_time_local": "09:00",
     "timezone_mode": TimezoneMode.GROUP_LOCAL, "timezone": "America/New_York", "strikes_allowed": 1},
    {"title": "Gym 3x a week", "type": ChallengeType.ELIMINATION, "cadence_unit": CadenceUnit.WEEKLY,
     "required_count": 3, "week_starts_on": 1, "timezone_mode": TimezoneMode.FIXED_ZONE, "timezone": "Europe/Berlin",
     "strikes_allowed": 2},
    {"title": "Read 10 books", "type": ChallengeType.DEADLINE, "timezone_mode": TimezoneMode.FIXED_ZONE,
     "timezone": "UTC", "deadline_target_value": 10},
    {"title": "Push-ups ladder", "type": ChallengeType.PROGRESS, "due_time_local": "21:00",
     "timezone": "Asia/Tokyo", "progression_duration": 7, "progress_starts_at": 10, "progress_increase_by": 5},
]

def create_challenges(session: Session, now: datetime):
    challenges = []
    created_at = now - timedelta(days=14)
    for challenge_data in test_challenges:
        challenge = Challenge(created_at=created_at, **challenge_data)
        if challenge.type == ChallengeType.DEADLINE:
            challenge.deadline_date = (now + timedelta(days=30)).date()
        session.add(challenge)
        session.flush()
        for username in test_users:
            session.add(ChallengeMember(challenge_id=challenge.challenge_id, user_id=username, joined_at=created_at))
        challenges.append(challenge)
    session.commit()
    print(f"Created {len(challenges)} challenges with {len(test_users)} members each")
    return challenges

def create_check_ins(session: Session, challenges, now: datetime):
    count = 0
    for challenge in challenges:
        for days_ago in range(14, 0, -1):
            moment = now - timedelta(days=days_ago, hours=random.randint(0, 6))
            for username in test_users:
                # Most members keep up, some slip
                if random.random() < 0.8:
                    value = random.randint(5, 30) if challenge.type != ChallengeType.ELIMINATION else None
                    session.add(build_check_in(challenge, username, moment, value=value))
                    count += 1
    session.commit()
    print(f"Created {count} check-ins")

def main():
    create_db_and_tables()
    now = datetime.now(timezone.utc)
    with Session(engine) as session:
        challenges = create_challenges(session, now)
        create_check_ins(session, challenges, now)
        for challenge in challenges:
            result = sweep_challenge(session, challenge.challenge_id, now)
            print(f"{challenge.title}: {result.status.value}, eliminated {result.eliminated}")

if __name__ == "__main__":
    main()
