import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlmodel import Session

from ..config import SWEEP_INTERVAL_MINUTES
from ..database import engine
from ..services.evaluation import SweepStatus, sweep_active_challenges
from ..services.notification import NotificationService

logger = logging.getLogger(__name__)

async def run_challenge_sweep(session: Session, now: Optional[datetime] = None, notify: bool = True) -> dict:
    """Close every due period of every active challenge, then push the resulting events"""
    results = sweep_active_challenges(session, now)
    summary = {status.value: 0 for status in SweepStatus}
    for result in results:
        summary[result.status.value] += 1

    if notify:
        summary["delivered_events"] = await NotificationService().deliver_pending_events(session)

    logger.info("Challenge sweep finished: %s", summary)
    return summary

async def sweep_forever(interval_minutes: int = SWEEP_INTERVAL_MINUTES):
    while True:
        try:
            with Session(engine) as session:
                await run_challenge_sweep(session)
        except Exception:
            # Keep the loop alive; the next tick retries everything still due
            logger.exception("Challenge sweep failed")
        await asyncio.sleep(interval_minutes * 60)
