"""Payment routes for QuickJob.

Stripe Connect onboarding for students, payment intents for clients, and
the webhook that records payment outcomes. A job only becomes 'paid'
through the webhook.
"""

import stripe
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..auth import ClientUser, CurrentUser, ensure_self_or_admin
from ..database import PAYMENTS_TABLE, STRIPE_ACCOUNTS_TABLE, Database, get_user
from ..logging_config import get_logger, log_payment_event
from ..payments import AccountState, PaymentGateway, PaymentGatewayError, apply_event, platform_fee
from ..rate_limit import limiter
from .jobs import JOB_NOT_COMPLETED, get_accepted_application, get_job

logger = get_logger("quickjob.payments")
router = APIRouter(prefix="/payments", tags=["payments"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ConnectAccountRequest(BaseModel):
    student_id: int


class ConnectAccountResponse(BaseModel):
    stripe_account_id: str
    onboarding_url: str
    expires_at: int | None = None
    existing: bool
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False


class PaymentIntentRequest(BaseModel):
    """Direct payment to a student. ``amount`` is in minor units (cents)."""

    student_id: int
    amount: int = Field(..., gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    job_id: int | None = None
    client_id: int | None = None


class RequestPaymentRequest(BaseModel):
    """Payment for a completed job."""

    job_id: int
    client_id: int
    student_id: int
    amount: int = Field(..., gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: str | None = None
    amount: int
    currency: str
    application_fee_amount: int
    destination: str


# =============================================================================
# Database Operations
# =============================================================================


async def get_stripe_account(db, student_id: int) -> dict | None:
    """Stored connected account of a student."""
    result = db.table(STRIPE_ACCOUNTS_TABLE).select("*").eq("student_id", student_id).execute()
    return result.data[0] if result.data else None


async def upsert_stripe_account(db, student_id: int, state: AccountState) -> dict | None:
    """Create or refresh the account row (one per student)."""
    data = {"student_id": student_id, **state.to_row()}
    result = db.table(STRIPE_ACCOUNTS_TABLE).upsert(data, on_conflict="student_id").execute()
    return result.data[0] if result.data else None


async def get_payment(db, payment_intent_id: str) -> dict | None:
    """Payment row recorded by the webhook."""
    result = db.table(PAYMENTS_TABLE).select("*").eq("payment_intent_id", payment_intent_id).execute()
    return result.data[0] if result.data else None


# =============================================================================
# Helper Functions
# =============================================================================


async def create_intent_for_student(
    gateway,
    account: dict,
    amount: int,
    currency: str | None,
    metadata: dict,
) -> PaymentIntentResponse:
    """Create a destination charge to the student's connected account."""
    currency = (currency or gateway.default_currency).lower()
    fee = platform_fee(amount, gateway.fee_percent)
    intent = await gateway.create_payment_intent(
        amount=amount,
        currency=currency,
        destination=account["stripe_account_id"],
        application_fee_amount=fee,
        metadata=metadata,
    )
    log_payment_event(
        "intent.created",
        intent["id"],
        "created",
        job=metadata.get("job_id"),
        amount=amount,
        fee=fee,
    )
    return PaymentIntentResponse(
        payment_intent_id=intent["id"],
        client_secret=intent.get("client_secret"),
        amount=amount,
        currency=currency,
        application_fee_amount=fee,
        destination=account["stripe_account_id"],
    )


# =============================================================================
# Routes
# =============================================================================


@router.post("/connect-account", response_model=ConnectAccountResponse)
@limiter.limit("10/minute")
async def connect_account(
    request: Request,
    body: ConnectAccountRequest,
    auth: CurrentUser,
    db: Database,
    gateway: PaymentGateway,
):
    """
    Start or resume Stripe onboarding for a student.

    Reuses the student's existing connected account when there is one and
    returns a fresh onboarding link either way.
    """
    student_id = body.student_id
    logger.info(f"POST /payments/connect-account | student={student_id}")
    ensure_self_or_admin(auth, student_id, detail="Cannot onboard another student")

    stored = await get_stripe_account(db, student_id)
    existing = bool(stored and stored.get("stripe_account_id"))

    if existing:
        account = await gateway.retrieve_account(stored["stripe_account_id"])
    else:
        user = await get_user(db, student_id)
        if not user:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found")
        if user.get("role") != "student":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Only students can receive payouts",
            )
        account = await gateway.create_express_account(student_id, email=user.get("email"))

    state = AccountState.from_account(account)
    await upsert_stripe_account(db, student_id, state)
    link = await gateway.create_onboarding_link(state.account_id)

    return ConnectAccountResponse(
        stripe_account_id=state.account_id,
        onboarding_url=link["url"],
        expires_at=link.get("expires_at"),
        existing=existing,
        details_submitted=state.details_submitted,
        charges_enabled=state.charges_enabled,
        payouts_enabled=state.payouts_enabled,
    )


@router.get("/connect-account/{student_id}")
@limiter.limit("60/minute")
async def get_connect_account(request: Request, student_id: int, auth: CurrentUser, db: Database):
    """Stored onboarding state of a student's connected account."""
    ensure_self_or_admin(auth, student_id, detail="Cannot view another student's account")
    stored = await get_stripe_account(db, student_id)
    if not stored:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stripe account not found")
    return stored


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
@limiter.limit("20/minute")
async def create_payment_intent(
    request: Request,
    body: PaymentIntentRequest,
    auth: ClientUser,
    db: Database,
    gateway: PaymentGateway,
):
    """
    Create a payment intent paying a student directly.

    No payment row is written here; the webhook records the outcome.
    """
    client_id = body.client_id if body.client_id is not None else auth.user_id
    logger.info(f"POST /payments/create-payment-intent | student={body.student_id} | amount={body.amount}")
    ensure_self_or_admin(auth, client_id, detail="Cannot pay on behalf of another client")

    account = await get_stripe_account(db, body.student_id)
    if not account or not account.get("stripe_account_id"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Student has no Stripe account yet",
        )

    return await create_intent_for_student(
        gateway,
        account,
        body.amount,
        body.currency,
        metadata={
            "student_id": body.student_id,
            "client_id": client_id,
            "job_id": body.job_id,
            "payment_type": "direct",
        },
    )


@router.post("/request-payment", response_model=PaymentIntentResponse)
@limiter.limit("20/minute")
async def request_payment(
    request: Request,
    body: RequestPaymentRequest,
    auth: ClientUser,
    db: Database,
    gateway: PaymentGateway,
):
    """
    Create the payment for a completed job.

    The caller must own the job, the job must be completed, the student must
    be the accepted applicant and must have finished Stripe onboarding.
    """
    logger.info(f"POST /payments/request-payment | job={body.job_id} | client={body.client_id}")
    ensure_self_or_admin(auth, body.client_id, detail="Cannot request payment for another client")

    job = await get_job(db, body.job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if str(job["client_id"]) != str(body.client_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Job does not belong to this client")
    if job["status"] != "completed":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JOB_NOT_COMPLETED,
        )

    accepted = await get_accepted_application(db, body.job_id)
    if not accepted or str(accepted["student_id"]) != str(body.student_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Student was not accepted for this job",
        )

    account = await get_stripe_account(db, body.student_id)
    if not account or not account.get("details_submitted"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Student has not finished Stripe onboarding",
        )

    return await create_intent_for_student(
        gateway,
        account,
        body.amount,
        body.currency,
        metadata={
            "student_id": body.student_id,
            "client_id": body.client_id,
            "job_id": body.job_id,
            "payment_type": "job_completion",
        },
    )


@router.get("/payment/{payment_intent_id}")
@limiter.limit("60/minute")
async def get_payment_status(request: Request, payment_intent_id: str, auth: CurrentUser, db: Database):
    """Payment as last recorded by the webhook."""
    payment = await get_payment(db, payment_intent_id)
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    parties = {str(payment.get("client_id")), str(payment.get("student_id"))}
    if not auth.is_admin and str(auth.user_id) not in parties:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return payment


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Database, gateway: PaymentGateway):
    """
    Receive Stripe events.

    The raw body is verified against the ``stripe-signature`` header before
    anything is read from it.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = gateway.construct_event(payload, signature)
    except PaymentGatewayError as e:
        logger.error(f"Webhook rejected: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    logger.info(f"POST /payments/webhook | type={event['type']} | id={event.get('id')}")
    outcome = await apply_event(db, event)
    logger.debug(f"Webhook {event.get('id')} applied | {outcome}")
    return {"received": True}
