"""Job and application lifecycle rules.

Pure functions only: no database access and no wall clock. Route handlers
pass in rows and the current instant and persist whatever these return.
"""

from datetime import datetime, timezone
from typing import Iterable

from dateutil import parser as date_parser

# =============================================================================
# Statuses
# =============================================================================

JOB_STATUSES = (
    "draft",
    "open",
    "planned",
    "locked",
    "in_progress",
    "completed",
    "paid",
    "cancelled",
    "expired",
)
APPLICATION_STATUSES = ("pending", "accepted", "rejected", "withdrawn")
PRICING_MODES = ("hourly", "fixed")

# Statuses a client still "has work going" in (planned bucket)
ACTIVE_JOB_STATUSES = {"open", "planned", "locked", "in_progress"}

# Valid job state transitions. completed -> paid is reserved for payment webhooks.
JOB_TRANSITIONS = {
    "draft": {"open", "cancelled"},
    "open": {"planned", "locked", "in_progress", "cancelled", "expired"},
    "planned": {"locked", "in_progress", "cancelled"},
    "locked": {"in_progress", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": {"paid"},
}

# Application statuses a student may send to withdraw; both mean the same thing.
WITHDRAWAL_ALIASES = {"withdrawn", "cancelled"}
WITHDRAWN = "withdrawn"

# Hours billed for an hourly job whose end time is unknown
DEFAULT_BILLED_HOURS = 2

# Minimum lead time between posting a job and its start
MIN_START_LEAD_HOURS = 2


def can_transition(from_status: str, to_status: str) -> bool:
    """Check if a job status transition is valid."""
    return to_status in JOB_TRANSITIONS.get(from_status, set())


def normalize_withdrawal_status(value: str) -> str:
    """Map the student-facing withdrawal names onto the stored status.

    Raises ValueError for anything that is not a withdrawal.
    """
    if value not in WITHDRAWAL_ALIASES:
        raise ValueError("Only status 'withdrawn' (or 'cancelled') is allowed")
    return WITHDRAWN


def withdrawal_update(by: str) -> dict:
    """Fields written when an application is withdrawn by ``by`` (student|client)."""
    if by not in ("student", "client"):
        raise ValueError(f"Unknown withdrawal origin: {by}")
    return {"status": WITHDRAWN, "withdrawn_by": by}


# =============================================================================
# Pricing
# =============================================================================


def validate_pricing(
    hourly_or_fixed: str | None,
    hourly_rate: float | None,
    fixed_price: float | None,
    draft: bool = False,
) -> None:
    """Validate job pricing fields, raising ValueError on the first problem."""
    if hourly_or_fixed is not None and hourly_or_fixed not in PRICING_MODES:
        raise ValueError("hourly_or_fixed must be 'hourly' or 'fixed'")
    if hourly_rate is not None and hourly_rate < 0:
        raise ValueError("hourly_rate must not be negative")
    if fixed_price is not None and fixed_price < 0:
        raise ValueError("fixed_price must not be negative")
    if draft:
        return
    if hourly_or_fixed == "fixed" and fixed_price is None:
        raise ValueError("Fixed price required for fixed jobs")


def job_amount_cents(job: dict) -> int:
    """Amount owed for a job in minor currency units."""
    if job.get("hourly_or_fixed") == "fixed":
        return int(round(float(job.get("fixed_price") or 0) * 100))

    rate = float(job.get("hourly_rate") or 0)
    hours = float(DEFAULT_BILLED_HOURS)
    start = parse_timestamp(job.get("start_time"))
    end = parse_timestamp(job.get("end_time"))
    if start and end and end > start:
        hours = (end - start).total_seconds() / 3600
    return int(round(rate * 100 * hours))


# =============================================================================
# Time Helpers
# =============================================================================


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO timestamp (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = date_parser.isoparse(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def start_time_too_soon(start_time: datetime, now: datetime) -> bool:
    """True when a job would start within the minimum lead time."""
    return (parse_timestamp(start_time) - now).total_seconds() < MIN_START_LEAD_HOURS * 3600


def compose_area_text(
    street: str | None = None,
    house_number: str | None = None,
    postal_code: str | None = None,
    city: str | None = None,
) -> str | None:
    """Build a one-line address like ``Kerkstraat 12, 9000 Gent``."""
    first = " ".join(p for p in (street, house_number) if p)
    second = " ".join(p for p in (postal_code, city) if p)
    text = ", ".join(p for p in (first, second) if p)
    return text or None


# =============================================================================
# Bucketing
# =============================================================================


def bucket_client_jobs(jobs: Iterable[dict], now: datetime) -> dict[str, list[dict]]:
    """Split a client's jobs into the overview buckets.

    Buckets overlap: a job starting later today can be in both
    ``today`` and ``open``.
    """
    today = now.date()
    buckets = {"open": [], "planned": [], "completed": [], "today": []}

    for job in jobs:
        job_status = job.get("status")
        start = parse_timestamp(job.get("start_time"))
        start_date = start.date() if start else None

        if job_status == "completed":
            buckets["completed"].append(job)
        if start_date == today:
            buckets["today"].append(job)
        if job_status == "open" and start is not None and start >= now:
            buckets["open"].append(job)
        if start_date is not None and start_date > today and job_status in ACTIVE_JOB_STATUSES:
            buckets["planned"].append(job)

    return buckets


def bucket_student_jobs(entries: Iterable[dict], now: datetime) -> dict[str, list[dict]]:
    """Split a student's applications into dashboard buckets.

    Each entry is an application row with the job embedded under ``job``.
    Every entry lands in exactly one bucket.
    """
    today = now.date()
    buckets = {"today": [], "upcoming": [], "pending": [], "archive": []}

    for entry in entries:
        app_status = entry.get("status")
        job = entry.get("job") or {}
        job_status = job.get("status")
        start = parse_timestamp(job.get("start_time"))

        if app_status in ("rejected", WITHDRAWN) or job_status in ("completed", "paid", "cancelled", "expired"):
            buckets["archive"].append(entry)
        elif app_status == "pending":
            buckets["pending"].append(entry)
        elif app_status == "accepted" and start is not None and start.date() == today:
            buckets["today"].append(entry)
        elif app_status == "accepted" and start is not None and start.date() > today:
            buckets["upcoming"].append(entry)
        else:
            # accepted job whose start date already passed without completion
            buckets["archive"].append(entry)

    return buckets


def is_expirable(job: dict, application_count: int, now: datetime, window_minutes: int = 30) -> bool:
    """An open job with no applicants that starts within ``window_minutes`` expires."""
    if job.get("status") != "open" or application_count > 0:
        return False
    start = parse_timestamp(job.get("start_time"))
    if start is None:
        return False
    return (start - now).total_seconds() <= window_minutes * 60
