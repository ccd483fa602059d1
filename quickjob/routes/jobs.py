"""Job routes for QuickJob.

Endpoints for posting, browsing and running jobs, and for the client side of
the application workflow (reviewing and deciding on applicants).
"""

from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, model_validator

from ..auth import AuthContext, ClientUser, CurrentUser, StudentUser, ensure_self_or_admin
from ..clock import CurrentClock
from ..config import Settings, get_settings
from ..database import (
    JOB_APPLICATIONS_TABLE,
    JOB_CATEGORIES_TABLE,
    JOBS_TABLE,
    PAYMENTS_TABLE,
    STUDENT_PROFILES_TABLE,
    USERS_TABLE,
    Database,
    fetch_by_ids,
)
from ..lifecycle import (
    can_transition,
    compose_area_text,
    job_amount_cents,
    start_time_too_soon,
    validate_pricing,
    withdrawal_update,
)
from ..logging_config import get_logger, log_transition
from ..rate_limit import CREATE_JOB_LIMIT, PUBLIC_LIMIT, limiter

logger = get_logger("quickjob.jobs")
router = APIRouter(prefix="/jobs", tags=["jobs"])

# Client apps match this message verbatim; keep the wording.
JOB_NOT_COMPLETED = "Job moet 'completed' status hebben"


# =============================================================================
# Request/Response Models
# =============================================================================

JobStatus = Literal[
    "draft", "open", "planned", "locked", "in_progress", "completed", "paid", "cancelled", "expired"
]
PricingMode = Literal["hourly", "fixed"]


class JobCreate(BaseModel):
    """Request to post a job."""

    client_id: int
    category_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    area_text: str | None = None
    street: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None
    hourly_or_fixed: PricingMode = "hourly"
    hourly_rate: float | None = Field(None, ge=0)
    fixed_price: float | None = Field(None, ge=0)
    start_time: datetime
    end_time: datetime | None = None
    image_url: str | None = None

    @model_validator(mode="after")
    def check_pricing_and_times(self) -> "JobCreate":
        validate_pricing(self.hourly_or_fixed, self.hourly_rate, self.fixed_price)
        if self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class JobDraftCreate(BaseModel):
    """Request to save a draft. Only the owner, category and title are required."""

    client_id: int
    category_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    area_text: str | None = None
    street: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None
    hourly_or_fixed: PricingMode | None = None
    hourly_rate: float | None = Field(None, ge=0)
    fixed_price: float | None = Field(None, ge=0)
    start_time: datetime | None = None
    end_time: datetime | None = None
    image_url: str | None = None


class JobCategoryResponse(BaseModel):
    """Category embedded in a job."""

    id: int
    key: str | None = None
    name_nl: str | None = None
    name_fr: str | None = None
    name_en: str | None = None


class AddressResponse(BaseModel):
    street: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None


class JobResponse(BaseModel):
    """Canonical job view."""

    id: int
    client_id: int
    category_id: int | None = None
    category: JobCategoryResponse | None = None
    title: str
    description: str | None = None
    area_text: str | None = None
    address: AddressResponse
    hourly_or_fixed: PricingMode | None = None
    hourly_rate: float | None = None
    fixed_price: float | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    status: JobStatus
    image_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JobEnvelope(BaseModel):
    message: str
    job: JobResponse


class JobListResponse(BaseModel):
    """List of jobs. ``message`` is set when the list is empty."""

    jobs: list[JobResponse]
    count: int
    message: str | None = None


class ClientJobResponse(JobResponse):
    """Job as seen by its owner, with applicant counts."""

    pending_applicants: int = 0
    accepted_applicants: int = 0
    applicant_count: int = 0


class ClientJobListResponse(BaseModel):
    jobs: list[ClientJobResponse]
    count: int
    message: str | None = None


class ApplicantResponse(BaseModel):
    """An application with the student's contact and profile."""

    id: int
    job_id: int
    student_id: int
    status: str
    cover_letter: str | None = None
    applied_at: datetime | None = None
    student: dict | None = None


class ApplicantListResponse(BaseModel):
    job_id: int
    applicants: list[ApplicantResponse]
    count: int


class ApplicantDecision(BaseModel):
    """Client decision on a pending application."""

    status: Literal["accepted", "rejected"]


class ApplicantDecisionResponse(BaseModel):
    message: str
    application: dict
    job: JobResponse | None = None
    rejected_count: int = 0


class JobStatusUpdate(BaseModel):
    status: JobStatus


class PaymentInfoResponse(BaseModel):
    """What a completed job costs and whether it has been paid."""

    job_id: int
    status: JobStatus
    client_id: int
    student_id: int | None = None
    amount: int
    currency: str
    hourly_or_fixed: PricingMode | None = None
    payment_status: str
    payment_intent_id: str | None = None


# =============================================================================
# Database Operations
# =============================================================================


async def create_job(db, data: dict) -> dict | None:
    """Insert a job row."""
    result = db.table(JOBS_TABLE).insert(data).execute()
    return result.data[0] if result.data else None


async def get_job(db, job_id: int) -> dict | None:
    """Get a job by ID."""
    result = db.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
    return result.data[0] if result.data else None


async def list_available_jobs(db, status_filter: str, after: datetime, limit: int) -> list[dict]:
    """Jobs in ``status_filter`` starting after ``after``, soonest first."""
    result = (
        db.table(JOBS_TABLE)
        .select("*")
        .eq("status", status_filter)
        .gt("start_time", after.isoformat())
        .order("start_time")
        .limit(limit)
        .execute()
    )
    return result.data or []


def _ilike_term(text: str) -> str:
    # Commas and parentheses are PostgREST filter syntax
    cleaned = "".join(ch for ch in text if ch not in ",()").strip()
    return f"%{cleaned}%"


async def search_jobs(
    db,
    q: str | None = None,
    location: str | None = None,
    category: int | None = None,
    limit: int = 50,
) -> list[dict]:
    """Search open jobs by text, location and category."""
    query = db.table(JOBS_TABLE).select("*").eq("status", "open")
    if q:
        term = _ilike_term(q)
        query = query.or_(f"title.ilike.{term},description.ilike.{term}")
    if location:
        term = _ilike_term(location)
        query = query.or_(f"city.ilike.{term},area_text.ilike.{term}")
    if category is not None:
        query = query.eq("category_id", category)
    result = query.order("start_time").limit(limit).execute()
    return result.data or []


async def list_client_jobs(db, client_id: int, status_filter: str | None = None) -> list[dict]:
    """All jobs of a client, newest first."""
    query = db.table(JOBS_TABLE).select("*").eq("client_id", client_id)
    if status_filter:
        query = query.eq("status", status_filter)
    result = query.order("created_at", desc=True).execute()
    return result.data or []


async def atomic_update_job_status(
    db,
    job_id: int,
    expected_status: str,
    new_status: str,
    actor_id=None,
    **updates,
) -> tuple[dict | None, str | None]:
    """Atomically update job status with optimistic locking.

    Uses UPDATE ... WHERE status = expected_status so two racing requests
    cannot both win.

    Returns:
        Tuple of (updated_job, error).
        - If successful: (job_dict, None)
        - If job not found: (None, "not_found")
        - If status mismatch (race condition): (None, "conflict")
    """
    update_data = {"status": new_status, **updates}
    result = (
        db.table(JOBS_TABLE)
        .update(update_data)
        .eq("id", job_id)
        .eq("status", expected_status)
        .execute()
    )

    if result.data:
        log_transition("job", job_id, expected_status, new_status, actor=actor_id)
        return result.data[0], None

    job = await get_job(db, job_id)
    if not job:
        return None, "not_found"

    logger.warning(
        f"Race condition detected on job {job_id}: "
        f"expected status '{expected_status}', found '{job['status']}'"
    )
    return None, "conflict"


async def get_application(db, application_id: int) -> dict | None:
    """Get an application by ID."""
    result = db.table(JOB_APPLICATIONS_TABLE).select("*").eq("id", application_id).execute()
    return result.data[0] if result.data else None


async def get_applications_for_job(db, job_id: int, statuses: list[str] | None = None) -> list[dict]:
    """Applications of a job, newest first."""
    query = db.table(JOB_APPLICATIONS_TABLE).select("*").eq("job_id", job_id)
    if statuses:
        query = query.in_("status", statuses)
    result = query.order("applied_at", desc=True).execute()
    return result.data or []


async def get_applications_for_jobs(db, job_ids: list[int]) -> list[dict]:
    """Applications for many jobs in one query."""
    if not job_ids:
        return []
    result = db.table(JOB_APPLICATIONS_TABLE).select("id, job_id, status").in_("job_id", job_ids).execute()
    return result.data or []


async def atomic_update_application_status(
    db,
    application_id: int,
    expected_status: str,
    new_status: str,
    **updates,
) -> tuple[dict | None, str | None]:
    """Atomically update application status with optimistic locking.

    Returns:
        Tuple of (updated_application, error).
        - If successful: (app_dict, None)
        - If not found: (None, "not_found")
        - If status mismatch: (None, "conflict")
    """
    result = (
        db.table(JOB_APPLICATIONS_TABLE)
        .update({"status": new_status, **updates})
        .eq("id", application_id)
        .eq("status", expected_status)
        .execute()
    )

    if result.data:
        log_transition("application", application_id, expected_status, new_status)
        return result.data[0], None

    app = await get_application(db, application_id)
    if not app:
        return None, "not_found"

    logger.warning(
        f"Race condition detected on application {application_id}: "
        f"expected status '{expected_status}', found '{app['status']}'"
    )
    return None, "conflict"


async def reject_pending_siblings(db, job_id: int, accepted_id: int, now: datetime) -> int:
    """Reject every other pending application of a job. Returns how many."""
    result = (
        db.table(JOB_APPLICATIONS_TABLE)
        .update({"status": "rejected", "updated_at": now.isoformat()})
        .eq("job_id", job_id)
        .eq("status", "pending")
        .neq("id", accepted_id)
        .execute()
    )
    return len(result.data or [])


async def withdraw_pending_applications(db, job_id: int, now: datetime) -> int:
    """Withdraw all pending applications of a job on the client's behalf."""
    result = (
        db.table(JOB_APPLICATIONS_TABLE)
        .update({**withdrawal_update("client"), "updated_at": now.isoformat()})
        .eq("job_id", job_id)
        .eq("status", "pending")
        .execute()
    )
    return len(result.data or [])


async def delete_job_with_applications(db, job_id: int) -> None:
    """Delete a job's applications, then the job."""
    db.table(JOB_APPLICATIONS_TABLE).delete().eq("job_id", job_id).execute()
    db.table(JOBS_TABLE).delete().eq("id", job_id).execute()


async def get_payment_for_job(db, job_id: int) -> dict | None:
    """Most recent payment row recorded for a job."""
    result = (
        db.table(PAYMENTS_TABLE)
        .select("*")
        .eq("job_id", job_id)
        .order("updated_at", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


# =============================================================================
# Helper Functions
# =============================================================================


async def load_categories(db, jobs: list[dict]) -> dict:
    """Fetch the categories referenced by ``jobs`` in one query."""
    return await fetch_by_ids(db, JOB_CATEGORIES_TABLE, (j.get("category_id") for j in jobs))


def to_job_response(job: dict, categories: dict | None = None) -> JobResponse:
    """Convert DB job dict to the canonical view."""
    category = (categories or {}).get(job.get("category_id"))
    return JobResponse(
        id=job["id"],
        client_id=job["client_id"],
        category_id=job.get("category_id"),
        category=JobCategoryResponse(**{k: category.get(k) for k in JobCategoryResponse.model_fields})
        if category
        else None,
        title=job["title"],
        description=job.get("description"),
        area_text=job.get("area_text"),
        address=AddressResponse(
            street=job.get("street"),
            house_number=job.get("house_number"),
            postal_code=job.get("postal_code"),
            city=job.get("city"),
        ),
        hourly_or_fixed=job.get("hourly_or_fixed"),
        hourly_rate=job.get("hourly_rate"),
        fixed_price=job.get("fixed_price"),
        start_time=job.get("start_time"),
        end_time=job.get("end_time"),
        status=job["status"],
        image_url=job.get("image_url"),
        created_at=job.get("created_at"),
        updated_at=job.get("updated_at"),
    )


async def to_job_responses(db, jobs: list[dict]) -> list[JobResponse]:
    categories = await load_categories(db, jobs)
    return [to_job_response(j, categories) for j in jobs]


def build_job_row(payload: JobCreate | JobDraftCreate, job_status: str, now: datetime) -> dict:
    """Turn a create/draft request into a ``jobs`` row."""
    data = payload.model_dump(exclude_none=True)
    for field in ("start_time", "end_time"):
        if field in data:
            data[field] = data[field].isoformat()
    if not data.get("area_text"):
        area_text = compose_area_text(payload.street, payload.house_number, payload.postal_code, payload.city)
        if area_text:
            data["area_text"] = area_text
    data["status"] = job_status
    data["created_at"] = now.isoformat()
    data["updated_at"] = now.isoformat()
    return data


def ensure_job_owner(auth: AuthContext, job: dict) -> None:
    ensure_self_or_admin(auth, job["client_id"], detail="You do not own this job")


async def require_job(db, job_id: int) -> dict:
    job = await get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


def raise_for_update_error(error: str, what: str = "Job") -> None:
    if error == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"{what} was modified by another request. Please refresh and try again.",
    )


async def get_accepted_application(db, job_id: int) -> dict | None:
    accepted = await get_applications_for_job(db, job_id, statuses=["accepted"])
    return accepted[0] if accepted else None


# Targets each party may set through the generic status route
CLIENT_STATUS_TARGETS = {"open", "locked", "cancelled", "completed"}
STUDENT_STATUS_TARGETS = {"in_progress", "completed"}


async def change_job_status(db, auth: AuthContext, job: dict, target: str, now: datetime) -> dict:
    """Apply a status change requested by a client, student or admin."""
    current = job["status"]
    if target == "paid":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Jobs are marked paid by payment confirmation only",
        )
    if not can_transition(current, target):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot change job status from '{current}' to '{target}'",
        )

    if not auth.is_admin:
        if auth.role == "client":
            ensure_job_owner(auth, job)
            if target not in CLIENT_STATUS_TARGETS:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Clients cannot set status '{target}'",
                )
        elif auth.role == "student":
            accepted = await get_accepted_application(db, job["id"])
            if not accepted or str(accepted["student_id"]) != str(auth.user_id):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Only the accepted student can update this job",
                )
            if target not in STUDENT_STATUS_TARGETS:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Students cannot set status '{target}'",
                )
        else:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    if current == "draft" and target == "open":
        # Publishing a draft applies the same checks as posting a job
        try:
            validate_pricing(job.get("hourly_or_fixed") or "hourly", job.get("hourly_rate"), job.get("fixed_price"))
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        if not job.get("start_time") or start_time_too_soon(job["start_time"], now):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Start time must be at least 2 hours in the future",
            )

    updated, error = await atomic_update_job_status(
        db, job["id"], current, target, actor_id=auth.user_id, updated_at=now.isoformat()
    )
    if error:
        raise_for_update_error(error)

    if target == "cancelled":
        withdrawn = await withdraw_pending_applications(db, job["id"], now)
        logger.info(f"Job {job['id']} cancelled | withdrawn_applications={withdrawn}")

    return updated


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=JobEnvelope, status_code=status.HTTP_201_CREATED)
@limiter.limit(CREATE_JOB_LIMIT)
async def create_job_listing(
    request: Request,
    job: JobCreate,
    auth: ClientUser,
    db: Database,
    clock: CurrentClock,
):
    """
    Post a job.

    The job is published immediately with status 'open'. Its start time must
    be at least two hours away.
    """
    logger.info(f"POST /jobs | client={job.client_id} | title={job.title[:50]}")
    ensure_self_or_admin(auth, job.client_id, detail="Cannot post jobs for another client")

    now = clock.now()
    if start_time_too_soon(job.start_time, now):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Start time must be at least 2 hours in the future",
        )

    created = await create_job(db, build_job_row(job, "open", now))
    if not created:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create job",
        )

    logger.info(f"Job created | id={created['id']} | client={job.client_id}")
    categories = await load_categories(db, [created])
    return JobEnvelope(message="Job created", job=to_job_response(created, categories))


@router.post("/draft", response_model=JobEnvelope, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def save_job_draft(
    request: Request,
    job: JobDraftCreate,
    auth: ClientUser,
    db: Database,
    clock: CurrentClock,
):
    """Save a job as draft. Pricing and start time may still be missing."""
    logger.info(f"POST /jobs/draft | client={job.client_id}")
    ensure_self_or_admin(auth, job.client_id, detail="Cannot post jobs for another client")

    created = await create_job(db, build_job_row(job, "draft", clock.now()))
    if not created:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save draft",
        )

    categories = await load_categories(db, [created])
    return JobEnvelope(message="Draft saved", job=to_job_response(created, categories))


@router.get("/available", response_model=JobListResponse)
@limiter.limit(PUBLIC_LIMIT)
async def list_available(
    request: Request,
    db: Database,
    clock: CurrentClock,
    status_filter: JobStatus = Query("open", alias="status"),
    limit: int = Query(50, ge=1, le=100),
    student_id: int | None = Query(None, alias="studentId"),
):
    """
    List upcoming jobs, soonest first.

    With ``studentId``, jobs the student already applied to (pending or
    accepted) are left out.
    """
    logger.info(f"GET /jobs/available | status={status_filter} | student={student_id}")

    excluded: set = set()
    if student_id is not None:
        from .students import get_student_applications

        apps = await get_student_applications(db, student_id, statuses=["pending", "accepted"])
        excluded = {a["job_id"] for a in apps}

    jobs = await list_available_jobs(db, status_filter, clock.now(), limit + len(excluded))
    jobs = [j for j in jobs if j["id"] not in excluded][:limit]

    return JobListResponse(
        jobs=await to_job_responses(db, jobs),
        count=len(jobs),
        message=None if jobs else "No jobs available",
    )


@router.get("/search", response_model=JobListResponse)
@limiter.limit(PUBLIC_LIMIT)
async def search_jobs_endpoint(
    request: Request,
    db: Database,
    q: str | None = Query(None, max_length=100),
    location: str | None = Query(None, max_length=100),
    category: int | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
):
    """Search open jobs by title/description text, location and category."""
    logger.info(f"GET /jobs/search | q={q} | location={location} | category={category}")

    jobs = await search_jobs(db, q=q, location=location, category=category, limit=limit)
    return JobListResponse(
        jobs=await to_job_responses(db, jobs),
        count=len(jobs),
        message=None if jobs else "No jobs found",
    )


@router.get("/client/{client_id}", response_model=ClientJobListResponse)
@limiter.limit("60/minute")
async def list_jobs_for_client(
    request: Request,
    client_id: int,
    auth: CurrentUser,
    db: Database,
    status_filter: JobStatus | None = Query(None, alias="status"),
):
    """List a client's jobs with pending/accepted applicant counts."""
    logger.info(f"GET /jobs/client/{client_id} | status={status_filter}")
    ensure_self_or_admin(auth, client_id, detail="Cannot view another client's jobs")

    jobs = await list_client_jobs(db, client_id, status_filter)
    apps = await get_applications_for_jobs(db, [j["id"] for j in jobs])
    categories = await load_categories(db, jobs)

    counts: dict = {}
    for app in apps:
        per_job = counts.setdefault(app["job_id"], {"pending": 0, "accepted": 0, "total": 0})
        per_job["total"] += 1
        if app["status"] in ("pending", "accepted"):
            per_job[app["status"]] += 1

    views = []
    for job in jobs:
        per_job = counts.get(job["id"], {"pending": 0, "accepted": 0, "total": 0})
        views.append(
            ClientJobResponse(
                **to_job_response(job, categories).model_dump(),
                pending_applicants=per_job["pending"],
                accepted_applicants=per_job["accepted"],
                applicant_count=per_job["total"],
            )
        )

    return ClientJobListResponse(
        jobs=views,
        count=len(views),
        message=None if views else "No jobs found for this client",
    )


@router.get("/{job_id}", response_model=JobResponse)
@limiter.limit(PUBLIC_LIMIT)
async def get_job_details(request: Request, job_id: int, db: Database):
    """Get a single job."""
    job = await require_job(db, job_id)
    categories = await load_categories(db, [job])
    return to_job_response(job, categories)


@router.delete("/{job_id}")
@limiter.limit("20/minute")
async def delete_job(request: Request, job_id: int, auth: ClientUser, db: Database):
    """
    Delete a job and its applications.

    A job with an accepted applicant cannot be deleted; cancel it instead.
    """
    logger.info(f"DELETE /jobs/{job_id} | user={auth.user_id}")
    job = await require_job(db, job_id)
    ensure_job_owner(auth, job)

    if await get_accepted_application(db, job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job has an accepted applicant and cannot be deleted",
        )

    await delete_job_with_applications(db, job_id)
    logger.info(f"Job deleted | id={job_id}")
    return {"message": "Job deleted", "job_id": job_id}


@router.get("/{job_id}/applicants", response_model=ApplicantListResponse)
@limiter.limit("60/minute")
async def list_applicants(request: Request, job_id: int, auth: ClientUser, db: Database):
    """List pending and accepted applicants of a job with their student details."""
    job = await require_job(db, job_id)
    ensure_job_owner(auth, job)

    apps = await get_applications_for_job(db, job_id, statuses=["pending", "accepted"])
    student_ids = [a["student_id"] for a in apps]
    users = await fetch_by_ids(db, USERS_TABLE, student_ids, "id, email, phone")
    profiles = await fetch_by_ids(db, STUDENT_PROFILES_TABLE, student_ids)

    applicants = []
    for app in apps:
        user = users.get(app["student_id"])
        student = None
        if user:
            profile = profiles.get(app["student_id"]) or {}
            student = {
                **user,
                "verification_status": profile.get("verification_status"),
                "school_name": profile.get("school_name"),
                "field_of_study": profile.get("field_of_study"),
                "avatar_url": profile.get("avatar_url"),
            }
        applicants.append(
            ApplicantResponse(
                id=app["id"],
                job_id=app["job_id"],
                student_id=app["student_id"],
                status=app["status"],
                cover_letter=app.get("cover_letter"),
                applied_at=app.get("applied_at"),
                student=student,
            )
        )

    return ApplicantListResponse(job_id=job_id, applicants=applicants, count=len(applicants))


@router.patch("/{job_id}/applicants/{application_id}", response_model=ApplicantDecisionResponse)
@limiter.limit("30/minute")
async def decide_applicant(
    request: Request,
    job_id: int,
    application_id: int,
    decision: ApplicantDecision,
    auth: ClientUser,
    db: Database,
    clock: CurrentClock,
):
    """
    Accept or reject a pending application.

    Accepting moves the job from 'open' to 'planned' and rejects every
    other pending application of the job. Only one applicant can ever be
    accepted per job.
    """
    logger.info(f"PATCH /jobs/{job_id}/applicants/{application_id} | status={decision.status}")
    job = await require_job(db, job_id)
    ensure_job_owner(auth, job)

    app = await get_application(db, application_id)
    if not app or app["job_id"] != job_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Application not found")
    if app["status"] != "pending":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Only pending applications can be updated (current: '{app['status']}')",
        )

    now = clock.now()
    if decision.status == "rejected":
        updated, error = await atomic_update_application_status(
            db, application_id, "pending", "rejected", updated_at=now.isoformat()
        )
        if error:
            raise_for_update_error(error, "Application")
        return ApplicantDecisionResponse(message="Application rejected", application=updated)

    if await get_accepted_application(db, job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Another applicant has already been accepted for this job",
        )
    if job["status"] != "open":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Job is not open for applicants (status '{job['status']}')",
        )

    # Claim the job first so a concurrent accept on another application loses
    updated_job, error = await atomic_update_job_status(
        db, job_id, "open", "planned", actor_id=auth.user_id, updated_at=now.isoformat()
    )
    if error:
        raise_for_update_error(error)

    updated_app, error = await atomic_update_application_status(
        db, application_id, "pending", "accepted", updated_at=now.isoformat()
    )
    if error:
        # Give the job back so the client can try another applicant
        await atomic_update_job_status(db, job_id, "planned", "open", actor_id="system:rollback")
        raise_for_update_error(error, "Application")

    rejected = await reject_pending_siblings(db, job_id, application_id, now)
    logger.info(f"Applicant accepted | job={job_id} | application={application_id} | rejected={rejected}")

    categories = await load_categories(db, [updated_job])
    return ApplicantDecisionResponse(
        message="Application accepted",
        application=updated_app,
        job=to_job_response(updated_job, categories),
        rejected_count=rejected,
    )


@router.patch("/{job_id}/status", response_model=JobEnvelope)
@limiter.limit("30/minute")
async def update_job_status(
    request: Request,
    job_id: int,
    body: JobStatusUpdate,
    auth: CurrentUser,
    db: Database,
    clock: CurrentClock,
):
    """
    Change a job's status.

    - The owning client may publish a draft, lock, cancel or complete a job.
    - The accepted student may start and complete it.
    - 'paid' is only ever set by payment confirmation.
    """
    logger.info(f"PATCH /jobs/{job_id}/status | user={auth.user_id} | status={body.status}")
    job = await require_job(db, job_id)
    updated = await change_job_status(db, auth, job, body.status, clock.now())
    categories = await load_categories(db, [updated])
    return JobEnvelope(message=f"Job status set to '{body.status}'", job=to_job_response(updated, categories))


@router.post("/{job_id}/mark-in-progress", response_model=JobEnvelope)
@limiter.limit("30/minute")
async def mark_in_progress(
    request: Request,
    job_id: int,
    auth: StudentUser,
    db: Database,
    clock: CurrentClock,
):
    """Accepted student starts working on the job."""
    job = await require_job(db, job_id)
    updated = await change_job_status(db, auth, job, "in_progress", clock.now())
    categories = await load_categories(db, [updated])
    return JobEnvelope(message="Job started", job=to_job_response(updated, categories))


@router.post("/{job_id}/mark-completed", response_model=JobEnvelope)
@limiter.limit("30/minute")
async def mark_completed(
    request: Request,
    job_id: int,
    auth: StudentUser,
    db: Database,
    clock: CurrentClock,
):
    """Accepted student marks the job as done."""
    job = await require_job(db, job_id)
    updated = await change_job_status(db, auth, job, "completed", clock.now())
    categories = await load_categories(db, [updated])
    return JobEnvelope(message="Job completed", job=to_job_response(updated, categories))


@router.get("/{job_id}/payment-info", response_model=PaymentInfoResponse)
@limiter.limit("60/minute")
async def get_payment_info(
    request: Request,
    job_id: int,
    auth: CurrentUser,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Amount due for a completed job and the state of its payment."""
    job = await require_job(db, job_id)
    accepted = await get_accepted_application(db, job_id)
    student_id = accepted["student_id"] if accepted else None

    is_owner = str(job["client_id"]) == str(auth.user_id)
    is_worker = student_id is not None and str(student_id) == str(auth.user_id)
    if not (auth.is_admin or is_owner or is_worker):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    if job["status"] not in ("completed", "paid"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JOB_NOT_COMPLETED,
        )

    payment = await get_payment_for_job(db, job_id)
    return PaymentInfoResponse(
        job_id=job_id,
        status=job["status"],
        client_id=job["client_id"],
        student_id=student_id,
        amount=job_amount_cents(job),
        currency=settings.stripe_default_currency,
        hourly_or_fixed=job.get("hourly_or_fixed"),
        payment_status=payment["status"] if payment else "not_started",
        payment_intent_id=payment["payment_intent_id"] if payment else None,
    )
