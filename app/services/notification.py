import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, exceptions, messaging
from sqlmodel import Session, select

from ..config import FIREBASE_CREDENTIALS_JSON
from ..models.challenge import Challenge
from ..models.challenge_event import ChallengeEvent, ChallengeEventType
from ..models.challenge_member import ChallengeMember
from ..models.device import Device

logger = logging.getLogger(__name__)

EVENT_TITLES: Dict[ChallengeEventType, str] = {
    ChallengeEventType.STRIKE: "Strike!",
    ChallengeEventType.ELIMINATED: "Eliminated",
    ChallengeEventType.WINNER: "Winner!",
    ChallengeEventType.CHALLENGE_ENDED: "Challenge Ended",
    ChallengeEventType.DEADLINE_PASSED: "Deadline Passed",
    ChallengeEventType.PROGRESS_INCREASED: "Challenge Increased",
}

class NotificationService:
    def __init__(self):
        # Initialize Firebase Admin SDK if not already initialized
        try:
            firebase_admin.get_app()
        except ValueError:
            firebase_admin.initialize_app(credentials.Certificate(FIREBASE_CREDENTIALS_JSON))

    async def send_notification(
        self,
        fcm_token: str,
        title: str,
        body: str,
        data: Optional[dict] = None
    ) -> bool:
        try:
            message = messaging.Message(
                notification=messaging.Notification(
                    title=title,
                    body=body,
                ),
                data=data or {},
                token=fcm_token,
            )

            messaging.send(message)
            return True
        except (exceptions.FirebaseError, ValueError) as e:
            logger.warning("Error sending notification: %s", e)
            return False

    async def send_notification_to_user(
        self,
        db: Session,
        user_id: str,
        title: str,
        body: str,
        data: Optional[dict] = None
    ) -> List[bool]:
        devices = db.exec(
            select(Device)
            .where(Device.user_id == user_id)
            .where(Device.fcm_token.is_not(None))
        ).all()

        results = []
        for device in devices:
            success = await self.send_notification(
                fcm_token=device.fcm_token,
                title=title,
                body=body,
                data=data
            )
            results.append(success)

        return results

    def _recipients(self, db: Session, event: ChallengeEvent) -> List[str]:
        if event.user_id and event.event_type in (ChallengeEventType.STRIKE, ChallengeEventType.PROGRESS_INCREASED):
            return [event.user_id]
        # Eliminations, winners and endings are shown to the whole group
        return db.exec(
            select(ChallengeMember.user_id).where(ChallengeMember.challenge_id == event.challenge_id)
        ).all()

    async def deliver_pending_events(self, db: Session, limit: int = 100) -> int:
        """Push undelivered challenge events to members' devices.

        An event is stamped delivered once every recipient has been tried;
        individual device failures are logged and not retried.
        """
        events = db.exec(
            select(ChallengeEvent)
            .where(ChallengeEvent.delivered_at.is_(None))
            .order_by(ChallengeEvent.event_id)
            .limit(limit)
        ).all()

        for event in events:
            challenge = db.get(Challenge, event.challenge_id)
            data = {
                "type": event.event_type.value,
                "challenge_id": str(event.challenge_id),
                "user_id": event.user_id,
                "title": challenge.title if challenge else "",
            }
            sent = 0
            for user_id in self._recipients(db, event):
                results = await self.send_notification_to_user(
                    db=db,
                    user_id=user_id,
                    title=EVENT_TITLES.get(event.event_type, "Challenge Update"),
                    body=event.message,
                    data=data
                )
                sent += sum(results)
            logger.info("Delivered %s event %s to %d device(s)", event.event_type.value, event.event_id, sent)

            event.delivered_at = datetime.now(timezone.utc)
            db.add(event)

        db.commit()
        return len(events)
