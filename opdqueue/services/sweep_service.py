import asyncio
from datetime import timedelta
from typing import Optional

from opdqueue.core.config import settings
from opdqueue.core.lanes import DoctorLanes
from opdqueue.core.logger import get_logger
from opdqueue.core.sinks import NotificationKind, NotificationSink
from opdqueue.core.states import PENDING_STATUSES
from opdqueue.core.utils import Clock, utcnow
from opdqueue.repositories.token_repository import TokenRepository
from opdqueue.schemas.queue import SweepResult
from opdqueue.services.eta_service import EtaService

logger = get_logger("sweeps")


class SweepService:
    """
    Periodic reminder and ETA refresh passes.

    Both are safe to run while live requests mutate the same tokens: a
    reminder is only sent by the sweep that flips ``reminder_sent``, and
    queue recomputes run inside the doctor's lane.
    """

    def __init__(
        self,
        repo: TokenRepository,
        eta: EtaService,
        lanes: DoctorLanes,
        notifier: Optional[NotificationSink] = None,
        clock: Clock = utcnow,
    ):
        self.repo = repo
        self.eta = eta
        self.lanes = lanes
        self.notifier = notifier
        self.clock = clock

    async def run_reminder_sweep(self, lead_minutes: Optional[int] = None) -> SweepResult:
        lead_minutes = lead_minutes if lead_minutes is not None else settings.REMINDER_LEAD_MINUTES
        now = self.clock()
        due = await self.repo.find_tokens_due_for_reminder(
            (now, now + timedelta(minutes=lead_minutes)), PENDING_STATUSES
        )

        sent = 0
        for token in due:
            if not await self.repo.claim_reminder(token.id):
                continue
            sent += 1
            if self.notifier is None:
                continue
            try:
                await self.notifier.notify(
                    NotificationKind.REMINDER, token, {"minutes_until": lead_minutes}
                )
            except Exception:
                logger.exception(f"Reminder for {token.token_number} could not be queued")

        if sent:
            logger.info(f"Reminder sweep claimed {sent} of {len(due)} due tokens")
        return SweepResult(reminders_sent=sent)

    async def run_recompute_sweep(self) -> SweepResult:
        today = self.clock().date()
        doctor_ids = await self.repo.find_doctors_with_pending_tokens(today, PENDING_STATUSES)

        result = SweepResult()
        for doctor_id in doctor_ids:
            async with self.lanes.lane(doctor_id):
                recomputed = await self.eta.recalculate_queue(doctor_id, today)
            result.queues_recomputed += 1
            result.tokens_recomputed += len(recomputed)
            result.recomputed.extend(recomputed)

        logger.info(
            f"Recompute sweep refreshed {result.tokens_recomputed} tokens across {result.queues_recomputed} doctors"
        )
        return result


async def run_sweeper(interval: int, build_service):
    """
    Run both sweeps every ``interval`` seconds until cancelled.

    ``build_service`` is an async context manager factory yielding the
    service that runs the sweeps, bound to a fresh session.
    """
    logger.info(f"Background sweeper started, interval {interval}s")
    while True:
        try:
            async with build_service() as sweeps:
                await sweeps.run_reminder_sweep()
                await sweeps.run_recompute_sweep()
        except Exception:
            logger.exception("Sweep pass failed")
        await asyncio.sleep(interval)
