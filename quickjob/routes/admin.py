"""Admin routes: student verification and read-only oversight.

These routes require the admin role. Admins change job statuses through
``PATCH /jobs/{job_id}/status``, which enforces the transition table.
"""

from typing import Literal

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from ..auth import AdminUser
from ..clock import CurrentClock
from ..database import (
    CLIENT_PROFILES_TABLE,
    JOB_APPLICATIONS_TABLE,
    JOBS_TABLE,
    STUDENT_PROFILES_TABLE,
    USERS_TABLE,
    Database,
    fetch_by_ids,
)
from ..logging_config import get_logger, log_transition
from .jobs import JobResponse, get_application, load_categories, require_job, to_job_response

logger = get_logger("quickjob.admin")

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# Models
# =============================================================================

VerificationStatus = Literal["pending", "verified", "rejected"]

USER_COLUMNS = "id, email, phone, created_at"


class StudentSummary(BaseModel):
    """Student profile joined with the user's contact data."""

    id: int
    email: str | None = None
    phone: str | None = None
    created_at: str | None = None
    verification_status: VerificationStatus
    school_name: str | None = None
    field_of_study: str | None = None
    academic_year: str | int | None = None
    avatar_url: str | None = None


class StudentListResponse(BaseModel):
    count: int
    students: list[StudentSummary]


class VerifyRequest(BaseModel):
    status: VerificationStatus


class VerifyResponse(BaseModel):
    message: str
    student: StudentSummary


USER_DETAIL_COLUMNS = "id, email, role, phone, preferred_language, created_at"
CONTACT_COLUMNS = "id, email, phone"


class AdminUserView(BaseModel):
    """User row without credentials."""

    id: int
    email: str | None = None
    role: str | None = None
    phone: str | None = None
    preferred_language: str | None = None
    created_at: str | None = None


class UserListResponse(BaseModel):
    total: int
    users: list[AdminUserView]


class UserDetailResponse(BaseModel):
    user: AdminUserView
    profile: dict | None = None


class ContactSummary(BaseModel):
    id: int
    email: str | None = None
    phone: str | None = None


class AdminJobView(JobResponse):
    """Job with the posting client's contact data."""

    client: ContactSummary | None = None


class AdminJobListResponse(BaseModel):
    total: int
    jobs: list[AdminJobView]


class AdminJobDetailResponse(BaseModel):
    job: AdminJobView


class ApplicationJobSummary(BaseModel):
    id: int
    title: str | None = None
    client_id: int | None = None
    status: str | None = None


class AdminApplicationView(BaseModel):
    id: int
    job_id: int
    student_id: int
    status: str
    withdrawn_by: str | None = None
    applied_at: str | None = None
    student: ContactSummary | None = None
    job: ApplicationJobSummary | None = None


class AdminApplicationListResponse(BaseModel):
    total: int
    applications: list[AdminApplicationView]


class AdminApplicationDetailResponse(BaseModel):
    application: AdminApplicationView


# =============================================================================
# Database Operations
# =============================================================================


async def list_students_by_status(db, verification_status: str, limit: int | None = None) -> list[StudentSummary]:
    """Student profiles with the given verification status, newest accounts first."""
    result = (
        db.table(STUDENT_PROFILES_TABLE)
        .select("*")
        .eq("verification_status", verification_status)
        .execute()
    )
    profiles = result.data or []
    users = await fetch_by_ids(db, USERS_TABLE, (p["id"] for p in profiles), USER_COLUMNS)

    students = [to_student_summary(p, users.get(p["id"])) for p in profiles]
    students.sort(key=lambda s: s.created_at or "", reverse=True)
    return students[:limit] if limit else students


async def get_student_profile(db, student_id: int) -> dict | None:
    result = db.table(STUDENT_PROFILES_TABLE).select("*").eq("id", student_id).execute()
    return result.data[0] if result.data else None


async def list_users(db, role: str | None = None) -> list[dict]:
    query = db.table(USERS_TABLE).select(USER_DETAIL_COLUMNS)
    if role:
        query = query.eq("role", role)
    result = query.order("created_at", desc=True).execute()
    return result.data or []


async def get_user_detail(db, user_id: int) -> dict | None:
    result = db.table(USERS_TABLE).select(USER_DETAIL_COLUMNS).eq("id", user_id).execute()
    return result.data[0] if result.data else None


async def get_role_profile(db, user: dict) -> dict | None:
    """Student or client profile of a user; admins have none."""
    table = {"student": STUDENT_PROFILES_TABLE, "client": CLIENT_PROFILES_TABLE}.get(user.get("role"))
    if table is None:
        return None
    result = db.table(table).select("*").eq("id", user["id"]).execute()
    return result.data[0] if result.data else None


async def list_all_jobs(db, status_filter: str | None = None) -> list[dict]:
    query = db.table(JOBS_TABLE).select("*")
    if status_filter:
        query = query.eq("status", status_filter)
    result = query.order("created_at", desc=True).execute()
    return result.data or []


async def list_all_applications(db, status_filter: str | None = None) -> list[dict]:
    query = db.table(JOB_APPLICATIONS_TABLE).select("*")
    if status_filter:
        query = query.eq("status", status_filter)
    result = query.order("applied_at", desc=True).execute()
    return result.data or []


# =============================================================================
# Helper Functions
# =============================================================================


def to_student_summary(profile: dict, user: dict | None) -> StudentSummary:
    user = user or {}
    created_at = user.get("created_at")
    return StudentSummary(
        id=profile["id"],
        email=user.get("email"),
        phone=user.get("phone"),
        created_at=str(created_at) if created_at is not None else None,
        verification_status=profile.get("verification_status") or "pending",
        school_name=profile.get("school_name"),
        field_of_study=profile.get("field_of_study"),
        academic_year=profile.get("academic_year"),
        avatar_url=profile.get("avatar_url"),
    )


def _as_text(value) -> str | None:
    return str(value) if value is not None else None


def to_admin_user(user: dict) -> AdminUserView:
    return AdminUserView(
        id=user["id"],
        email=user.get("email"),
        role=user.get("role"),
        phone=user.get("phone"),
        preferred_language=user.get("preferred_language"),
        created_at=_as_text(user.get("created_at")),
    )


def to_contact(user: dict | None) -> ContactSummary | None:
    if not user:
        return None
    return ContactSummary(id=user["id"], email=user.get("email"), phone=user.get("phone"))


async def to_admin_jobs(db, jobs: list[dict]) -> list[AdminJobView]:
    """Job views with category and client contact, two batched lookups."""
    categories = await load_categories(db, jobs)
    clients = await fetch_by_ids(db, USERS_TABLE, (j.get("client_id") for j in jobs), CONTACT_COLUMNS)
    return [
        AdminJobView(
            **to_job_response(job, categories).model_dump(),
            client=to_contact(clients.get(job.get("client_id"))),
        )
        for job in jobs
    ]


async def to_admin_applications(db, applications: list[dict]) -> list[AdminApplicationView]:
    """Application views with student contact and job summary, two batched lookups."""
    students = await fetch_by_ids(db, USERS_TABLE, (a.get("student_id") for a in applications), CONTACT_COLUMNS)
    jobs = await fetch_by_ids(
        db, JOBS_TABLE, (a.get("job_id") for a in applications), "id, title, client_id, status"
    )
    views = []
    for app in applications:
        job = jobs.get(app.get("job_id"))
        views.append(
            AdminApplicationView(
                id=app["id"],
                job_id=app["job_id"],
                student_id=app["student_id"],
                status=app["status"],
                withdrawn_by=app.get("withdrawn_by"),
                applied_at=_as_text(app.get("applied_at")),
                student=to_contact(students.get(app.get("student_id"))),
                job=ApplicationJobSummary(**job) if job else None,
            )
        )
    return views


# =============================================================================
# Routes
# =============================================================================


@router.get("/students/pending", response_model=StudentListResponse)
async def list_pending_students(admin: AdminUser, db: Database):
    """Students waiting for verification."""
    logger.info(f"GET /admin/students/pending | admin={admin.user_id}")
    students = await list_students_by_status(db, "pending")
    return StudentListResponse(count=len(students), students=students)


@router.get("/students/verified", response_model=StudentListResponse)
async def list_verified_students(
    admin: AdminUser,
    db: Database,
    limit: int = Query(50, ge=1, le=500),
):
    """Most recently registered verified students."""
    logger.info(f"GET /admin/students/verified | admin={admin.user_id}")
    students = await list_students_by_status(db, "verified", limit=limit)
    return StudentListResponse(count=len(students), students=students)


@router.patch("/students/{student_id}/verify", response_model=VerifyResponse)
async def verify_student(
    student_id: int,
    body: VerifyRequest,
    admin: AdminUser,
    db: Database,
    clock: CurrentClock,
):
    """
    Set a student's verification status.

    Existing applications of the student are left as they are.
    """
    profile = await get_student_profile(db, student_id)
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found")

    result = (
        db.table(STUDENT_PROFILES_TABLE)
        .update({"verification_status": body.status, "updated_at": clock.now().isoformat()})
        .eq("id", student_id)
        .execute()
    )
    updated = result.data[0] if result.data else {**profile, "verification_status": body.status}
    log_transition(
        "student", student_id, profile.get("verification_status"), body.status, actor=admin.user_id
    )

    users = await fetch_by_ids(db, USERS_TABLE, [student_id], USER_COLUMNS)
    return VerifyResponse(
        message=f"Student {body.status}",
        student=to_student_summary(updated, users.get(student_id)),
    )


# =============================================================================
# Oversight
# =============================================================================


@router.get("/users", response_model=UserListResponse)
async def list_all_users(
    admin: AdminUser,
    db: Database,
    role: Literal["student", "client", "admin"] | None = None,
):
    """All users, newest first. Password hashes are never selected."""
    logger.info(f"GET /admin/users | admin={admin.user_id} | role={role}")
    users = [to_admin_user(u) for u in await list_users(db, role)]
    return UserListResponse(total=len(users), users=users)


@router.get("/users/{user_id}", response_model=UserDetailResponse)
async def get_user_for_admin(user_id: int, admin: AdminUser, db: Database):
    """One user with their student or client profile."""
    user = await get_user_detail(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    profile = await get_role_profile(db, user)
    return UserDetailResponse(user=to_admin_user(user), profile=profile)


@router.get("/jobs", response_model=AdminJobListResponse)
async def list_jobs_for_admin(
    admin: AdminUser,
    db: Database,
    status_filter: str | None = Query(None, alias="status"),
):
    """All jobs in any status, newest first."""
    logger.info(f"GET /admin/jobs | admin={admin.user_id} | status={status_filter}")
    jobs = await to_admin_jobs(db, await list_all_jobs(db, status_filter))
    return AdminJobListResponse(total=len(jobs), jobs=jobs)


@router.get("/jobs/{job_id}", response_model=AdminJobDetailResponse)
async def get_job_for_admin(job_id: int, admin: AdminUser, db: Database):
    job = await require_job(db, job_id)
    views = await to_admin_jobs(db, [job])
    return AdminJobDetailResponse(job=views[0])


@router.get("/applications", response_model=AdminApplicationListResponse)
async def list_applications_for_admin(
    admin: AdminUser,
    db: Database,
    status_filter: str | None = Query(None, alias="status"),
):
    """All applications, most recently applied first."""
    logger.info(f"GET /admin/applications | admin={admin.user_id} | status={status_filter}")
    applications = await to_admin_applications(db, await list_all_applications(db, status_filter))
    return AdminApplicationListResponse(total=len(applications), applications=applications)


@router.get("/applications/{application_id}", response_model=AdminApplicationDetailResponse)
async def get_application_for_admin(application_id: int, admin: AdminUser, db: Database):
    application = await get_application(db, application_id)
    if not application:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Application not found")
    views = await to_admin_applications(db, [application])
    return AdminApplicationDetailResponse(application=views[0])
