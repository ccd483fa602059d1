"""Client routes for QuickJob."""

from fastapi import APIRouter, Query, Request

from ..auth import CurrentUser, ensure_self_or_admin
from ..clock import CurrentClock
from ..database import Database
from ..lifecycle import bucket_client_jobs
from ..logging_config import get_logger
from ..rate_limit import limiter
from .jobs import list_client_jobs, load_categories, to_job_response

logger = get_logger("quickjob.clients")
router = APIRouter(prefix="/clients", tags=["clients"])


@router.get("/overview")
@limiter.limit("60/minute")
async def client_overview(
    request: Request,
    auth: CurrentUser,
    db: Database,
    clock: CurrentClock,
    client_id: int = Query(..., alias="clientId"),
):
    """
    Overview of a client's jobs.

    Buckets:
    - completed: status 'completed'
    - today: starts today, any status
    - open: status 'open' and not yet started
    - planned: starts after today and still active

    A job can show up in more than one bucket.
    """
    logger.info(f"GET /clients/overview | client={client_id}")
    ensure_self_or_admin(auth, client_id, detail="Cannot view another client's overview")

    jobs = await list_client_jobs(db, client_id)
    buckets = bucket_client_jobs(jobs, clock.now())
    categories = await load_categories(db, jobs)

    views = {
        name: [to_job_response(job, categories) for job in items]
        for name, items in buckets.items()
    }
    return {
        "client_id": client_id,
        "counts": {name: len(items) for name, items in views.items()},
        **views,
    }
