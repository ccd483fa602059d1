"""Student routes for QuickJob.

Applying for jobs, following one's applications and the student dashboard.
"""

from typing import Literal

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..auth import CurrentUser, StudentUser, ensure_self_or_admin
from ..clock import CurrentClock
from ..database import JOB_APPLICATIONS_TABLE, JOBS_TABLE, Database, fetch_by_ids, is_unique_violation
from ..lifecycle import bucket_student_jobs, normalize_withdrawal_status, withdrawal_update
from ..logging_config import get_logger
from ..rate_limit import limiter
from .jobs import (
    atomic_update_application_status,
    get_application,
    get_job,
    load_categories,
    raise_for_update_error,
    to_job_response,
)

logger = get_logger("quickjob.students")
router = APIRouter(prefix="/students", tags=["students"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ApplyRequest(BaseModel):
    """Request to apply for a job."""

    job_id: int
    cover_letter: str | None = Field(None, max_length=5000)


class ApplicationStatusUpdate(BaseModel):
    """Students can only withdraw. ``cancelled`` is accepted as an alias."""

    status: Literal["withdrawn", "cancelled"]


# =============================================================================
# Database Operations
# =============================================================================


async def create_application(db, student_id: int, job_id: int, cover_letter: str | None, now) -> dict | None:
    """Insert a pending application. Duplicates hit the (student_id, job_id) unique index."""
    data = {
        "student_id": student_id,
        "job_id": job_id,
        "status": "pending",
        "cover_letter": cover_letter,
        "applied_at": now.isoformat(),
        "updated_at": now.isoformat(),
    }
    result = db.table(JOB_APPLICATIONS_TABLE).insert(data).execute()
    return result.data[0] if result.data else None


async def get_student_applications(db, student_id: int, statuses: list[str] | None = None) -> list[dict]:
    """A student's applications, newest first."""
    query = db.table(JOB_APPLICATIONS_TABLE).select("*").eq("student_id", student_id)
    if statuses:
        query = query.in_("status", statuses)
    result = query.order("applied_at", desc=True).execute()
    return result.data or []


async def attach_jobs(db, applications: list[dict]) -> list[dict]:
    """Embed the canonical job view into each application under ``job``."""
    jobs = await fetch_by_ids(db, JOBS_TABLE, (a["job_id"] for a in applications))
    categories = await load_categories(db, list(jobs.values()))
    entries = []
    for app in applications:
        job = jobs.get(app["job_id"])
        entries.append(
            {
                **app,
                "job": to_job_response(job, categories).model_dump(mode="json") if job else None,
            }
        )
    return entries


# =============================================================================
# Routes
# =============================================================================


@router.post("/{student_id}/apply", status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def apply_for_job(
    request: Request,
    student_id: int,
    body: ApplyRequest,
    auth: StudentUser,
    db: Database,
    clock: CurrentClock,
):
    """
    Apply for an open job.

    A student can apply to a job only once; a second attempt returns 409.
    """
    logger.info(f"POST /students/{student_id}/apply | job={body.job_id}")
    ensure_self_or_admin(auth, student_id, detail="Cannot apply on behalf of another student")

    job = await get_job(db, body.job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job["status"] != "open":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Job is not open for applications",
        )

    try:
        created = await create_application(db, student_id, body.job_id, body.cover_letter, clock.now())
    except Exception as e:
        if is_unique_violation(e):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Already applied to this job",
            )
        raise

    if not created:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create application",
        )

    logger.info(f"Application created | id={created['id']} | student={student_id} | job={body.job_id}")
    return created


@router.get("/{student_id}/applications")
@limiter.limit("60/minute")
async def list_applications(request: Request, student_id: int, auth: CurrentUser, db: Database):
    """A student's applications with the job embedded."""
    ensure_self_or_admin(auth, student_id, detail="Cannot view another student's applications")

    apps = await get_student_applications(db, student_id)
    entries = await attach_jobs(db, apps)
    if not entries:
        return {"applications": [], "count": 0, "message": "No applications yet"}
    return {"applications": entries, "count": len(entries)}


@router.patch("/{student_id}/applications/{application_id}")
@limiter.limit("30/minute")
async def withdraw_application(
    request: Request,
    student_id: int,
    application_id: int,
    body: ApplicationStatusUpdate,
    auth: StudentUser,
    db: Database,
    clock: CurrentClock,
):
    """
    Withdraw a pending application.

    Both 'withdrawn' and 'cancelled' are accepted and stored as 'withdrawn'
    with ``withdrawn_by = 'student'``.
    """
    logger.info(f"PATCH /students/{student_id}/applications/{application_id} | status={body.status}")
    ensure_self_or_admin(auth, student_id, detail="Cannot change another student's application")
    target = normalize_withdrawal_status(body.status)

    app = await get_application(db, application_id)
    if not app:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Application not found")
    if str(app["student_id"]) != str(student_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your application")
    if app["status"] != "pending":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only pending applications can be withdrawn",
        )

    update = withdrawal_update("student")
    updated, error = await atomic_update_application_status(
        db,
        application_id,
        "pending",
        target,
        withdrawn_by=update["withdrawn_by"],
        updated_at=clock.now().isoformat(),
    )
    if error:
        raise_for_update_error(error, "Application")
    return updated


@router.get("/{student_id}/dashboard")
@limiter.limit("60/minute")
async def student_dashboard(
    request: Request,
    student_id: int,
    auth: CurrentUser,
    db: Database,
    clock: CurrentClock,
):
    """Applications grouped into today, upcoming, pending and archive."""
    ensure_self_or_admin(auth, student_id, detail="Cannot view another student's dashboard")

    apps = await get_student_applications(db, student_id)
    entries = await attach_jobs(db, apps)
    buckets = bucket_student_jobs(entries, clock.now())

    return {
        "student_id": student_id,
        "counts": {name: len(items) for name, items in buckets.items()},
        **buckets,
    }
