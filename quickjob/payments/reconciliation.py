"""Apply verified Stripe webhook events to local state.

Delivery is at-least-once and unordered, so every write here is
conditional:

- a payment row is only overwritten by an event whose ``created`` is not
  older than the one already stored (``event_created``),
- a ``succeeded`` payment is never downgraded by a failure event,
- the job moves ``completed -> paid`` with a compare-and-set, so replays
  are no-ops.
"""

from datetime import datetime, timezone

from ..database import JOBS_TABLE, PAYMENTS_TABLE, STRIPE_ACCOUNTS_TABLE, is_unique_violation
from ..logging_config import get_logger, log_payment_event, log_transition
from .gateway import AccountState

logger = get_logger("quickjob.payments.reconciliation")

PAYMENT_EVENT_STATUS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
}
ACCOUNT_UPDATED = "account.updated"


def _coerce_id(value):
    """Metadata values come back as strings; row ids are integers."""
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return value or None


def payment_row_from_intent(intent, new_status: str, event_id: str | None, created: int) -> dict:
    """Build the ``payments`` row for an intent snapshot."""
    metadata = intent.get("metadata") or {}
    last_error = intent.get("last_payment_error") or {}
    return {
        "payment_intent_id": intent["id"],
        "job_id": _coerce_id(metadata.get("job_id")),
        "student_id": _coerce_id(metadata.get("student_id")),
        "client_id": _coerce_id(metadata.get("client_id")),
        "amount": intent.get("amount"),
        "currency": intent.get("currency"),
        "application_fee_amount": intent.get("application_fee_amount"),
        "status": new_status,
        "failure_message": last_error.get("message") if new_status == "failed" else None,
        "event_created": created,
        "last_event_id": event_id,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }


async def _conditional_update(db, row: dict) -> list[dict]:
    query = (
        db.table(PAYMENTS_TABLE)
        .update(row)
        .eq("payment_intent_id", row["payment_intent_id"])
        .lte("event_created", row["event_created"])
    )
    if row["status"] != "succeeded":
        query = query.neq("status", "succeeded")
    result = query.execute()
    return result.data or []


async def upsert_payment(db, row: dict) -> str:
    """Write a payment row if the event is not stale.

    Returns ``"updated"``, ``"inserted"`` or ``"stale"``.
    """
    if await _conditional_update(db, row):
        return "updated"

    existing = db.table(PAYMENTS_TABLE).select("id").eq(
        "payment_intent_id", row["payment_intent_id"]
    ).execute()
    if existing.data:
        return "stale"

    try:
        db.table(PAYMENTS_TABLE).insert(row).execute()
        return "inserted"
    except Exception as e:
        if not is_unique_violation(e):
            raise
        # A concurrent delivery inserted first; fall back to the conditional update
        return "updated" if await _conditional_update(db, row) else "stale"


async def mark_job_paid(db, job_id) -> str:
    """Move a job ``completed -> paid``.

    Returns ``"paid"``, ``"already_paid"``, ``"not_found"`` or ``"skipped"``.
    """
    result = (
        db.table(JOBS_TABLE)
        .update({"status": "paid", "updated_at": datetime.now(timezone.utc).isoformat()})
        .eq("id", job_id)
        .eq("status", "completed")
        .execute()
    )
    if result.data:
        log_transition("job", job_id, "completed", "paid", actor="stripe")
        return "paid"

    current = db.table(JOBS_TABLE).select("id, status").eq("id", job_id).execute()
    if not current.data:
        return "not_found"
    if current.data[0]["status"] == "paid":
        return "already_paid"
    logger.warning(
        f"Payment succeeded for job {job_id} in status '{current.data[0]['status']}'; not marking paid"
    )
    return "skipped"


async def apply_payment_intent_event(db, event) -> dict:
    """Reconcile a ``payment_intent.*`` event."""
    event_type = event["type"]
    new_status = PAYMENT_EVENT_STATUS[event_type]
    intent = event["data"]["object"]
    row = payment_row_from_intent(intent, new_status, event.get("id"), int(event.get("created") or 0))

    payment_outcome = await upsert_payment(db, row)
    outcome = {"payment": payment_outcome, "job": None}

    # Failed payments never touch the job: it stays completed and can be retried
    if new_status == "succeeded":
        job_id = row["job_id"]
        if job_id is None:
            outcome["job"] = "no_job"
        else:
            outcome["job"] = await mark_job_paid(db, job_id)
            if outcome["job"] == "not_found":
                logger.warning(f"Webhook references unknown job {job_id}; payment recorded, job skipped")

    log_payment_event(event_type, intent["id"], payment_outcome, job=outcome["job"], event=event.get("id"))
    return outcome


async def apply_account_event(db, event) -> dict:
    """Refresh stored onboarding flags from an ``account.updated`` event."""
    state = AccountState.from_account(event["data"]["object"])
    row = state.to_row()
    row["updated_at"] = datetime.now(timezone.utc).isoformat()
    result = (
        db.table(STRIPE_ACCOUNTS_TABLE)
        .update(row)
        .eq("stripe_account_id", state.account_id)
        .execute()
    )
    synced = bool(result.data)
    if not synced:
        logger.info(f"account.updated for unknown account {state.account_id}; ignored")
    return {"account": "synced" if synced else "unknown"}


async def apply_event(db, event) -> dict:
    """Dispatch a verified event. Unhandled types are acknowledged and ignored."""
    event_type = event["type"]
    if event_type in PAYMENT_EVENT_STATUS:
        return await apply_payment_intent_event(db, event)
    if event_type == ACCOUNT_UPDATED:
        return await apply_account_event(db, event)
    logger.debug(f"Ignoring Stripe event type {event_type}")
    return {"ignored": event_type}
