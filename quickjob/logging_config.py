"""Logging setup for the QuickJob backend.

All loggers live under the ``quickjob`` namespace so a single call to
:func:`setup_logging` configures the whole service. Lifecycle and payment
helpers emit ``key=value`` lines that are easy to grep in hosted logs.
"""

import logging
import sys

ROOT_LOGGER_NAME = "quickjob"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO", stream=None) -> logging.Logger:
    """Configure the ``quickjob`` logger with a single stream handler.

    Calling this more than once replaces the level but never stacks handlers.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(getattr(h, "_quickjob_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._quickjob_handler = True
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger inside the ``quickjob`` namespace."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


_auth_logger = get_logger("quickjob.auth")
_lifecycle_logger = get_logger("quickjob.lifecycle")
_payments_logger = get_logger("quickjob.payments")


def log_auth_event(event: str, subject: str, success: bool, reason: str | None = None) -> None:
    """Log a register/login attempt. Never pass passwords or tokens here."""
    if success:
        _auth_logger.info(f"AUTH | {event} | {subject} | ok")
    else:
        _auth_logger.warning(f"AUTH | {event} | {subject} | FAILED | {reason}")


def log_transition(
    entity: str,
    entity_id: str,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    success: bool = True,
    reason: str | None = None,
) -> None:
    """Log a status change of a job or application."""
    line = (
        f"TRANSITION | {entity}={entity_id} | {from_status} -> {to_status} "
        f"| actor={actor or 'system'}"
    )
    if success:
        _lifecycle_logger.info(line)
    else:
        _lifecycle_logger.warning(f"{line} | FAILED | {reason}")


def log_payment_event(
    event_type: str,
    payment_intent_id: str | None,
    outcome: str,
    **fields,
) -> None:
    """Log the outcome of a payment operation or webhook event."""
    extra = "".join(f" | {k}={v}" for k, v in fields.items() if v is not None)
    _payments_logger.info(f"PAYMENT | {event_type} | intent={payment_intent_id} | {outcome}{extra}")
