from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from fulfillment.services.payment_claims_s import escalate_stale_claims
from fulfillment.services.reservations_s import expire_reservations

SWEEP_JOB_ID = "reservation_expiry_sweep"

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Background job that turns overdue holds back into available stock."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        interval_seconds: int,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than 0")
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": interval_seconds,
            },
            timezone="UTC",
        )

    def run_once(self, now: datetime | None = None) -> dict:
        swept_at = now or datetime.utcnow()
        db = self.session_factory()
        try:
            expired = expire_reservations(now=swept_at, db=db)
            escalated = escalate_stale_claims(now=swept_at, db=db)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("event=expiry_sweep_failed")
            raise
        finally:
            db.close()

        if expired or escalated:
            logger.info(
                "event=expiry_sweep_completed expired_reservations=%s escalated_claims=%s",
                expired,
                escalated,
            )
        return {"expired_reservations": expired, "escalated_claims": escalated}

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEP_JOB_ID,
            name="Reservation expiry sweep",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "event=expiry_sweeper_started interval_seconds=%s",
            self.interval_seconds,
        )

    def shutdown(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("event=expiry_sweeper_stopped")
