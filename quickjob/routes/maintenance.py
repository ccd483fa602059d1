"""Maintenance routes for QuickJob.

Expires open jobs that are about to start without a single applicant.
Meant to be called periodically (e.g. via cron) by an admin token.
"""

from datetime import datetime, timedelta

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..auth import AdminUser
from ..clock import CurrentClock
from ..database import JOB_APPLICATIONS_TABLE, JOBS_TABLE, Database
from ..lifecycle import is_expirable
from ..logging_config import get_logger
from ..rate_limit import limiter
from .jobs import atomic_update_job_status

logger = get_logger("quickjob.maintenance")
router = APIRouter(prefix="/admin/maintenance", tags=["admin", "maintenance"])

DEFAULT_EXPIRY_WINDOW_MINUTES = 30


# =============================================================================
# Request/Response Models
# =============================================================================


class ExpireJobsRequest(BaseModel):
    """Request to expire unclaimed jobs."""

    window_minutes: int = Field(
        default=DEFAULT_EXPIRY_WINDOW_MINUTES,
        ge=1,
        le=24 * 60,
        description="Expire open jobs without applicants starting within this many minutes",
    )
    dry_run: bool = Field(
        default=False, description="If true, report what would be done without making changes"
    )


class ExpiryAction(BaseModel):
    job_id: int
    action: str  # "expired", "would_expire", "skipped"
    start_time: datetime | None = None


class ExpireJobsResponse(BaseModel):
    dry_run: bool
    window_minutes: int
    actions: list[ExpiryAction]
    total_expired: int
    checked_at: datetime


# =============================================================================
# Database Operations
# =============================================================================


async def get_open_jobs_starting_before(db, cutoff: datetime) -> list[dict]:
    """Open jobs whose start time is before ``cutoff`` (includes past starts)."""
    result = (
        db.table(JOBS_TABLE)
        .select("*")
        .eq("status", "open")
        .lte("start_time", cutoff.isoformat())
        .execute()
    )
    return result.data or []


async def count_applications(db, job_ids: list[int]) -> dict:
    if not job_ids:
        return {}
    result = db.table(JOB_APPLICATIONS_TABLE).select("job_id").in_("job_id", job_ids).execute()
    counts: dict = {}
    for row in result.data or []:
        counts[row["job_id"]] = counts.get(row["job_id"], 0) + 1
    return counts


# =============================================================================
# Routes
# =============================================================================


@router.post("/expire-jobs", response_model=ExpireJobsResponse)
@limiter.limit("10/minute")
async def expire_jobs(
    request: Request,
    body: ExpireJobsRequest,
    admin: AdminUser,
    db: Database,
    clock: CurrentClock,
):
    """
    Mark open jobs as 'expired' when they start soon and nobody applied.

    Each job is moved with a compare-and-set on 'open', so a job that
    received an acceptance in the meantime is left alone.
    """
    now = clock.now()
    logger.info(f"POST /admin/maintenance/expire-jobs | admin={admin.user_id} | dry_run={body.dry_run}")

    candidates = await get_open_jobs_starting_before(db, now + timedelta(minutes=body.window_minutes))
    counts = await count_applications(db, [j["id"] for j in candidates])

    actions = []
    for job in candidates:
        if not is_expirable(job, counts.get(job["id"], 0), now, body.window_minutes):
            continue
        if body.dry_run:
            actions.append(ExpiryAction(job_id=job["id"], action="would_expire", start_time=job.get("start_time")))
            continue
        updated, error = await atomic_update_job_status(
            db, job["id"], "open", "expired", actor_id="system:expiry", updated_at=now.isoformat()
        )
        actions.append(
            ExpiryAction(
                job_id=job["id"],
                action="expired" if updated else "skipped",
                start_time=job.get("start_time"),
            )
        )

    total = sum(1 for a in actions if a.action == "expired")
    logger.info(f"Expiry sweep done | candidates={len(candidates)} | expired={total}")
    return ExpireJobsResponse(
        dry_run=body.dry_run,
        window_minutes=body.window_minutes,
        actions=actions,
        total_expired=total,
        checked_at=now,
    )
