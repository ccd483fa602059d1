"""Stripe Connect gateway.

Wraps the handful of Stripe calls the marketplace makes. One instance is
built at application start (see ``quickjob.main``) and handed to route
handlers through the :data:`PaymentGateway` dependency, so tests can swap
in a fake without touching the ``stripe`` module globals.
"""

import asyncio
from dataclasses import dataclass
from typing import Annotated

import stripe
from fastapi import Depends, HTTPException, Request, status

from ..config import Settings
from ..logging_config import get_logger

logger = get_logger("quickjob.payments.gateway")


class PaymentGatewayError(Exception):
    """Raised when the gateway is misconfigured or Stripe rejects a call."""
    pass


@dataclass
class AccountState:
    """Onboarding flags of a connected account."""

    account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False

    @classmethod
    def from_account(cls, account) -> "AccountState":
        account = as_plain(account)
        return cls(
            account_id=account["id"],
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            details_submitted=bool(account.get("details_submitted")),
        )

    def to_row(self) -> dict:
        return {
            "stripe_account_id": self.account_id,
            "charges_enabled": self.charges_enabled,
            "payouts_enabled": self.payouts_enabled,
            "details_submitted": self.details_submitted,
        }


def as_plain(obj) -> dict:
    """Copy a Stripe SDK object into plain dicts and lists.

    Current SDK objects are not dict subclasses, so nothing past the gateway
    may call ``.get`` on them.
    """
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


def platform_fee(amount: int, fee_percent: float) -> int:
    """Platform fee in minor units, rounded half up."""
    if fee_percent <= 0:
        return 0
    return int(amount * fee_percent / 100 + 0.5)


class StripeGateway:
    """Stripe Connect calls used by the payment routes.

    The stripe SDK is synchronous, so every network call runs in a worker
    thread to keep the event loop free.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str | None = None,
        api_version: str | None = None,
        default_currency: str = "eur",
        fee_percent: float = 0.0,
        connect_country: str = "BE",
        return_url: str = "https://example.com/stripe/return",
        refresh_url: str = "https://example.com/stripe/refresh",
    ):
        if not secret_key:
            raise PaymentGatewayError("Stripe secret key is missing")
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._api_version = api_version
        self.default_currency = default_currency
        self.fee_percent = fee_percent
        self.connect_country = connect_country
        self.return_url = return_url
        self.refresh_url = refresh_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            default_currency=settings.stripe_default_currency,
            fee_percent=settings.stripe_fee_percent,
            connect_country=settings.stripe_connect_country,
            return_url=settings.stripe_connect_return_url,
            refresh_url=settings.stripe_connect_refresh_url,
        )

    def _auth(self) -> dict:
        params = {"api_key": self._secret_key}
        if self._api_version:
            params["stripe_version"] = self._api_version
        return params

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def create_express_account(self, student_id, email: str | None = None):
        """Create an Express connected account for a student."""

        def _create():
            params = {
                "type": "express",
                "country": self.connect_country,
                "capabilities": {"transfers": {"requested": True}},
                "metadata": {"student_id": str(student_id)},
            }
            if email:
                params["email"] = email
            return stripe.Account.create(**params, **self._auth())

        account = as_plain(await asyncio.to_thread(_create))
        logger.info("Created Stripe account %s for student %s", account["id"], student_id)
        return account

    async def retrieve_account(self, account_id: str):
        account = await asyncio.to_thread(lambda: stripe.Account.retrieve(account_id, **self._auth()))
        return as_plain(account)

    async def create_onboarding_link(self, account_id: str):
        """Create a one-time onboarding link for a connected account."""

        def _create():
            return stripe.AccountLink.create(
                account=account_id,
                refresh_url=self.refresh_url,
                return_url=self.return_url,
                type="account_onboarding",
                **self._auth(),
            )

        return as_plain(await asyncio.to_thread(_create))

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        destination: str,
        application_fee_amount: int = 0,
        metadata: dict | None = None,
    ):
        """Create a destination-charge payment intent."""

        def _create():
            params = {
                "amount": amount,
                "currency": currency,
                "automatic_payment_methods": {"enabled": True},
                "transfer_data": {"destination": destination},
                "metadata": {k: str(v) for k, v in (metadata or {}).items() if v is not None},
            }
            if application_fee_amount > 0:
                params["application_fee_amount"] = application_fee_amount
            return stripe.PaymentIntent.create(**params, **self._auth())

        intent = as_plain(await asyncio.to_thread(_create))
        logger.info(
            "Created payment intent %s | amount=%s %s | destination=%s",
            intent["id"], amount, currency, destination,
        )
        return intent

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str | None):
        """Verify the ``stripe-signature`` header and parse the event.

        The event comes back as plain dicts. Raises
        ``stripe.SignatureVerificationError`` on a bad signature and
        ``ValueError`` on an unparseable payload.
        """
        if not self._webhook_secret:
            raise PaymentGatewayError("Stripe webhook secret is missing")
        if not signature:
            raise stripe.SignatureVerificationError("Missing stripe-signature header", signature)
        event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        return as_plain(event)


def get_payment_gateway(request: Request) -> StripeGateway:
    """FastAPI dependency for the gateway built at startup."""
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments are not configured",
        )
    return gateway


PaymentGateway = Annotated[StripeGateway, Depends(get_payment_gateway)]
