"""Incident register routes.

Anyone signed in can report an incident; admins triage them. Incidents
only store foreign ids. Responses embed the referenced job, student,
client and application, fetched with one query per table.
"""

from typing import Literal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from ..auth import AdminUser, CurrentUser
from ..clock import CurrentClock
from ..database import INCIDENTS_TABLE, JOB_APPLICATIONS_TABLE, JOBS_TABLE, USERS_TABLE, Database, fetch_by_ids
from ..logging_config import get_logger
from ..rate_limit import limiter

logger = get_logger("quickjob.incidents")
router = APIRouter(prefix="/incidents", tags=["incidents"])


# =============================================================================
# Request/Response Models
# =============================================================================

IncidentStatus = Literal["open", "in_review", "resolved", "dismissed"]
IncidentSeverity = Literal["low", "medium", "high"]

JOB_COLUMNS = "id, title, area_text, start_time, status"
USER_COLUMNS = "id, email, phone, role"
APPLICATION_COLUMNS = "id, job_id, student_id, status"


def to_nullable_int(value):
    """Accept ints, numeric strings, empty strings and null for a reference id."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("must be an integer id")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError("must be an integer id")


class IncidentCreate(BaseModel):
    """Request to report an incident."""

    summary: str = Field(..., max_length=500)
    description: str | None = None
    job_id: int | None = None
    student_id: int | None = None
    client_id: int | None = None
    application_id: int | None = None
    severity: IncidentSeverity = "medium"
    status: IncidentStatus = "open"

    @field_validator("summary")
    @classmethod
    def summary_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("summary is required")
        return v

    @field_validator("job_id", "student_id", "client_id", "application_id", mode="before")
    @classmethod
    def nullable_ids(cls, v):
        return to_nullable_int(v)


class IncidentUpdate(BaseModel):
    """Partial update by an admin."""

    status: IncidentStatus | None = None
    severity: IncidentSeverity | None = None
    description: str | None = None
    admin_notes: str | None = None


# =============================================================================
# Database Operations
# =============================================================================


async def insert_incident(db, data: dict) -> dict | None:
    result = db.table(INCIDENTS_TABLE).insert(data).execute()
    return result.data[0] if result.data else None


async def get_incident(db, incident_id: int) -> dict | None:
    result = db.table(INCIDENTS_TABLE).select("*").eq("id", incident_id).execute()
    return result.data[0] if result.data else None


async def list_incidents(db, status_filter: str | None = None) -> list[dict]:
    """Incidents, newest first."""
    query = db.table(INCIDENTS_TABLE).select("*")
    if status_filter:
        query = query.eq("status", status_filter)
    result = query.order("created_at", desc=True).execute()
    return result.data or []


async def update_incident(db, incident_id: int, updates: dict) -> dict | None:
    result = db.table(INCIDENTS_TABLE).update(updates).eq("id", incident_id).execute()
    return result.data[0] if result.data else None


async def hydrate_incidents(db, incidents: list[dict]) -> list[dict]:
    """Embed ``job``, ``student``, ``client`` and ``application`` into each incident.

    Each referenced table is queried once with the distinct ids of the batch.
    Missing ids or rows hydrate to ``None``.
    """
    if not incidents:
        return []

    jobs = await fetch_by_ids(db, JOBS_TABLE, (i.get("job_id") for i in incidents), JOB_COLUMNS)
    users = await fetch_by_ids(
        db,
        USERS_TABLE,
        [i.get("student_id") for i in incidents] + [i.get("client_id") for i in incidents],
        USER_COLUMNS,
    )
    applications = await fetch_by_ids(
        db, JOB_APPLICATIONS_TABLE, (i.get("application_id") for i in incidents), APPLICATION_COLUMNS
    )

    return [
        {
            **incident,
            "job": jobs.get(incident.get("job_id")),
            "student": users.get(incident.get("student_id")),
            "client": users.get(incident.get("client_id")),
            "application": applications.get(incident.get("application_id")),
        }
        for incident in incidents
    ]


# =============================================================================
# Routes
# =============================================================================


@router.get("")
@limiter.limit("60/minute")
async def list_incidents_endpoint(
    request: Request,
    admin: AdminUser,
    db: Database,
    status_filter: IncidentStatus | None = Query(None, alias="status"),
):
    """List incidents, newest first, optionally by status."""
    logger.info(f"GET /incidents | admin={admin.user_id} | status={status_filter}")

    incidents = await hydrate_incidents(db, await list_incidents(db, status_filter))
    if not incidents:
        return {"incidents": [], "message": "No incidents found"}
    return {"incidents": incidents, "count": len(incidents)}


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_incident(
    request: Request,
    body: IncidentCreate,
    auth: CurrentUser,
    db: Database,
    clock: CurrentClock,
):
    """Report an incident. Severity defaults to 'medium' and status to 'open'."""
    logger.info(f"POST /incidents | user={auth.user_id} | severity={body.severity} | job={body.job_id}")

    now = clock.now().isoformat()
    data = {
        **body.model_dump(),
        "created_at": now,
        "updated_at": now,
    }
    created = await insert_incident(db, data)
    if not created:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create incident",
        )

    logger.info(f"Incident created | id={created['id']}")
    return (await hydrate_incidents(db, [created]))[0]


@router.get("/{incident_id}")
@limiter.limit("60/minute")
async def get_incident_endpoint(request: Request, incident_id: int, admin: AdminUser, db: Database):
    """Get one incident."""
    incident = await get_incident(db, incident_id)
    if not incident:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Incident not found")
    return (await hydrate_incidents(db, [incident]))[0]


@router.patch("/{incident_id}")
@limiter.limit("30/minute")
async def patch_incident(
    request: Request,
    incident_id: int,
    body: IncidentUpdate,
    admin: AdminUser,
    db: Database,
    clock: CurrentClock,
):
    """Update status, severity, description or admin notes of an incident."""
    updates = body.model_dump(exclude_unset=True)
    logger.info(f"PATCH /incidents/{incident_id} | admin={admin.user_id} | fields={sorted(updates)}")

    for field in ("status", "severity"):
        if field in updates and updates[field] is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} cannot be null")

    updates["updated_at"] = clock.now().isoformat()
    updated = await update_incident(db, incident_id, updates)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Incident not found")
    return (await hydrate_incidents(db, [updated]))[0]
