"""Reset per-alert daily trigger counters at UTC midnight."""

from __future__ import annotations

import logging

from locus.domain.proximity import container
from locus.domain.proximity.alerts import AlertService
from locus.infra.scheduler import AlertResetScheduler

logger = logging.getLogger(__name__)

JOB_ID = "proximity-alerts-daily-reset"


async def run(service: AlertService | None = None) -> int:
    """Zero `triggers_today` on every alert; returns how many alerts were reset."""

    service = service or container.get_alert_service()
    try:
        return await service.reset_daily_counters()
    except Exception:
        logger.exception("proximity alert counter reset failed")
        raise


def register(scheduler: AlertResetScheduler) -> None:
    scheduler.schedule_daily_utc(JOB_ID, run, hour=0, minute=0)
