"""Scheduler status and manual trigger API endpoints.

Provides endpoints for:
- Checking scheduled jobs, their next run times and the latest recorded runs
- Running the sweep, sync or cleanup trigger on demand
- Syncing a single account's prior-day costs
"""

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from spendwatch.api.dependencies import get_cost_scheduler, get_registry
from spendwatch.api.scheduler import RunResult
from spendwatch.api.security import RequireAuth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


class RunResponse(BaseModel):
    """Result of a manually triggered run."""

    job: str
    status: str
    processed: int
    failed: int
    skipped: int
    details: dict[str, Any]


def _run_response(result: RunResult) -> RunResponse:
    return RunResponse(
        job=result.job,
        status=result.status,
        processed=result.processed,
        failed=result.failed,
        skipped=result.skipped,
        details=result.details,
    )


@router.get("/status")
def scheduler_status(request: Request, _auth: RequireAuth) -> dict[str, Any]:
    """Scheduled jobs, last runs and consecutive failure counts."""
    return get_cost_scheduler(request).status()


@router.post("/run/{job}", response_model=RunResponse)
def run_job(job: str, request: Request, _auth: RequireAuth) -> RunResponse:
    """Run the sweep, sync or cleanup trigger immediately."""
    logger.info("Manual %s run requested", job)
    return _run_response(get_cost_scheduler(request).run_job_now(job))


@router.post("/sync/{account_id}", response_model=RunResponse)
def sync_account(
    account_id: str,
    request: Request,
    _auth: RequireAuth,
    day: date | None = Query(
        default=None, description="Sync the day before this date (default: today)"
    ),
) -> RunResponse:
    """Pull the prior day's costs for one account."""
    if get_registry(request).get_account(account_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown account: {account_id}")
    logger.info("Manual sync requested for account %s", account_id)
    result = get_cost_scheduler(request).run_daily_sync(day=day, account_id=account_id)
    return _run_response(result)
