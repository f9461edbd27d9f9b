"""POST /v1/scheduler/run: trigger one lesson batch.

Meant for an external cron (or an operator) when the worker process is
not running.  The batch runs inline, so expect this to take roughly
``send_delay x lessons / concurrency`` seconds.
"""

from __future__ import annotations

import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from app.api.dependencies import ServicesDep, ledger_unavailable
from app.core.errors import LedgerError

router = APIRouter(prefix="/v1/scheduler", tags=["scheduler"])


class SchedulerReportOut(BaseModel):
    run_id: str
    run_at: datetime.datetime
    hour: int
    expired: int
    users_selected: int
    delivered: int
    finished: int
    failed: int
    reminders: int


@router.post("/run", response_model=SchedulerReportOut)
async def run_scheduler(services: ServicesDep) -> SchedulerReportOut:
    try:
        report = await services.scheduler.run()
    except LedgerError as e:
        raise ledger_unavailable(e) from None
    return SchedulerReportOut(
        run_id=report.run_id,
        run_at=report.run_at,
        hour=report.hour,
        expired=report.expired,
        users_selected=report.users_selected,
        delivered=report.delivered,
        finished=report.finished,
        failed=report.failed,
        reminders=report.reminders,
    )
