"""Structured logging utilities with correlation ID support.

Provides:
- Correlation ID context management for request tracing
- Structured logging formatter for consistent log output
- Helper functions for payment, webhook and security logging

Usage:
    from orgpay.utils.logging import get_logger, set_correlation_id

    # In middleware/request handler:
    set_correlation_id(request.headers.get("X-Correlation-ID"))

    # In service code:
    logger = get_logger(__name__)
    logger.info("Claimed attempt", extra={"attempt_id": "pa_123"})
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

# Context variable for correlation ID - thread-safe and async-safe
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation ID for the current request context.

    Args:
        correlation_id: Optional existing correlation ID. If None, generates new one.

    Returns:
        The correlation ID that was set
    """
    cid = correlation_id or generate_correlation_id()
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation ID context."""
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Logging filter that adds correlation_id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter for structured log output with correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "no-correlation-id"

        base = super().format(record)

        # Prefix for easy grep/filtering
        return f"[{record.correlation_id}] {base}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with correlation ID support.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())

    return logger


def configure_logging(level: int = logging.INFO) -> None:
    """Install the structured formatter on the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler.formatter, StructuredFormatter):
            return
    handler = logging.StreamHandler()
    handler.setFormatter(
        StructuredFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)


def mask_email(email: str | None) -> str | None:
    """Mask an email address for logs: 'jane.doe@example.org' -> 'j***@example.org'."""
    if not email:
        return email
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def log_payment_operation(
    logger: logging.Logger,
    operation: str,
    *,
    attempt_id: str | None = None,
    organization_id: str | None = None,
    idempotency_key: str | None = None,
    amount_cents: int | None = None,
    status: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a payment operation with structured context.

    Args:
        logger: Logger instance
        operation: Operation name (e.g., "claim_attempt", "create_checkout_session")
        attempt_id: PaymentAttempt ID if available
        organization_id: Tenant ID if available
        idempotency_key: Client idempotency key if available
        amount_cents: Amount in cents if relevant
        status: Attempt status
        error: Error message if operation failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"operation": operation}

    if attempt_id:
        context["attempt_id"] = attempt_id
    if organization_id:
        context["organization_id"] = organization_id
    if idempotency_key:
        context["idempotency_key"] = idempotency_key
    if amount_cents is not None:
        context["amount_cents"] = amount_cents
    if status:
        context["status"] = status
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Payment operation: {operation}"]
    for key, value in context.items():
        if key != "operation":
            msg_parts.append(f"{key}={value}")

    message = " | ".join(msg_parts)

    if error:
        logger.error(message, extra=context)
    else:
        logger.info(message, extra=context)


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    organization_id: str | None = None,
    attempt_id: str | None = None,
    result: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a webhook event with structured context.

    Args:
        logger: Logger instance
        event_type: Stripe event type (e.g., "checkout.session.completed")
        event_id: Stripe event ID
        organization_id: Resolved tenant if available
        attempt_id: Associated PaymentAttempt ID if available
        result: Processing result (success, duplicate, skipped, rejected, error)
        error: Error message if processing failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {
        "event_type": event_type,
        "event_id": event_id,
    }

    if organization_id:
        context["organization_id"] = organization_id
    if attempt_id:
        context["attempt_id"] = attempt_id
    if result:
        context["result"] = result
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Webhook event: {event_type} ({event_id})"]
    if result:
        msg_parts.append(f"result={result}")
    if organization_id:
        msg_parts.append(f"organization={organization_id}")
    if error:
        msg_parts.append(f"error={error}")

    message = " | ".join(msg_parts)

    if result == "error":
        logger.error(message, extra=context)
    elif result in ("duplicate", "skipped", "rejected"):
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)


def log_security_event(
    logger: logging.Logger,
    reason: str,
    *,
    event_id: str | None = None,
    organization_id: str | None = None,
    expected_account: str | None = None,
    actual_account: str | None = None,
    **extra: Any,
) -> None:
    """Log a tenant-isolation violation. Always emitted at ERROR level.

    Args:
        logger: Logger instance
        reason: Short machine-friendly reason (e.g., "connected_account_mismatch")
        event_id: Stripe event ID that triggered the check
        organization_id: Tenant the event claimed to belong to
        expected_account: Account or customer on record for the tenant
        actual_account: Account or customer carried by the event
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"security_event": reason}
    if event_id:
        context["event_id"] = event_id
    if organization_id:
        context["organization_id"] = organization_id
    context["expected_account"] = expected_account or "none"
    context["actual_account"] = actual_account or "none"
    context.update(extra)

    msg_parts = [f"SECURITY: {reason}"]
    for key, value in context.items():
        if key != "security_event":
            msg_parts.append(f"{key}={value}")

    logger.error(" | ".join(msg_parts), extra=context)
