"""Stripe Connect payments for QuickJob."""

from .gateway import (
    AccountState,
    PaymentGateway,
    PaymentGatewayError,
    StripeGateway,
    get_payment_gateway,
    platform_fee,
)
from .reconciliation import apply_event

__all__ = [
    "AccountState",
    "PaymentGateway",
    "PaymentGatewayError",
    "StripeGateway",
    "apply_event",
    "get_payment_gateway",
    "platform_fee",
]
