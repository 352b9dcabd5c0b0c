"""Request fingerprinting, platform fee and amount/currency normalization.

All functions are pure. The fingerprint decides whether two requests that
share an idempotency key are "the same" logical request, so its field set
and order are frozen; changing either requires bumping FINGERPRINT_VERSION.
"""

import hashlib
import json
import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ..config import (
    DEFAULT_CURRENCY,
    MAX_AMOUNT_CENTS,
    MIN_AMOUNT_CENTS,
    PLATFORM_FEE_BPS,
    SUPPORTED_CURRENCIES,
)
from ..models.enums import FlowType
from ..models.errors import PaymentValidationError

FINGERPRINT_VERSION = 1

IDEMPOTENCY_KEY_MAX_LENGTH = 255
_IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._:\-]+$")


class FingerprintFields(BaseModel):
    """The logically significant fields of a payment request."""

    model_config = ConfigDict(strict=True, frozen=True)

    organization_id: str
    amount_cents: int
    currency: str
    flow_type: FlowType
    donor_email: Optional[str] = None
    donor_name: Optional[str] = None
    target_entity_id: Optional[str] = None
    purpose: Optional[str] = None
    platform_fee_cents: int = 0


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def hash_fingerprint(fields: FingerprintFields) -> str:
    """SHA-256 hex digest of the canonical field tuple.

    Emails are compared case-insensitively; surrounding whitespace and empty
    strings are treated as absent.
    """
    email = _clean(fields.donor_email)
    canonical = [
        fields.organization_id,
        fields.amount_cents,
        fields.currency,
        fields.flow_type.value,
        email.lower() if email else None,
        _clean(fields.donor_name),
        _clean(fields.target_entity_id),
        _clean(fields.purpose),
        fields.platform_fee_cents,
    ]
    encoded = json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def calculate_platform_fee(amount_cents: int) -> int:
    """Platform fee in minor units: 3% of the amount, rounded half up."""
    if amount_cents < 0:
        raise PaymentValidationError("Amount must not be negative")
    return (amount_cents * PLATFORM_FEE_BPS + 5_000) // 10_000


def normalize_currency(value: Optional[str]) -> str:
    """Lower-case and validate a currency code; absent means USD.

    Raises:
        PaymentValidationError: If the currency is not supported.
    """
    currency = (value or "").strip().lower() or DEFAULT_CURRENCY
    if currency not in SUPPORTED_CURRENCIES:
        raise PaymentValidationError(
            f"Unsupported currency: {currency}",
            details={"currency": currency},
        )
    return currency


def validate_amount_cents(amount_cents: int) -> int:
    """Enforce the donation amount limits.

    Raises:
        PaymentValidationError: If the amount is out of range.
    """
    if amount_cents < MIN_AMOUNT_CENTS:
        raise PaymentValidationError(
            "Minimum donation amount is $1.00",
            details={"amount_cents": str(amount_cents)},
        )
    if amount_cents > MAX_AMOUNT_CENTS:
        raise PaymentValidationError(
            "Maximum donation amount is $100,000.00",
            details={"amount_cents": str(amount_cents)},
        )
    return amount_cents


def amount_to_cents(amount: Decimal | int | float | str) -> int:
    """Convert an amount in major units (e.g. 50.00) to validated minor units.

    Raises:
        PaymentValidationError: If the amount is not a number, has fractional
            cents, or is out of range.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise PaymentValidationError("Amount must be a number") from e
    if not value.is_finite():
        raise PaymentValidationError("Amount must be a number")
    cents = value * 100
    if cents != cents.to_integral_value():
        raise PaymentValidationError("Amount cannot have fractional cents")
    return validate_amount_cents(int(cents))


def normalize_idempotency_key(key: Optional[str]) -> Optional[str]:
    """Strip and validate a client-supplied idempotency key.

    Returns None for an absent or blank key.

    Raises:
        PaymentValidationError: If the key is too long or has invalid characters.
    """
    if key is None:
        return None
    key = key.strip()
    if not key:
        return None
    if len(key) > IDEMPOTENCY_KEY_MAX_LENGTH:
        raise PaymentValidationError(
            f"Idempotency key must be at most {IDEMPOTENCY_KEY_MAX_LENGTH} characters"
        )
    if not _IDEMPOTENCY_KEY_PATTERN.match(key):
        raise PaymentValidationError(
            "Idempotency key may only contain letters, digits, '.', '_', ':' and '-'"
        )
    return key
