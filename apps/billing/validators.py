"""
Billing validators for woofpay.

Model-level checks raise django's ValidationError so `full_clean()` reports
them per field. Checks on data bound for the gateway raise the engine's own
ValidationError so services can return them as `Err`.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from django.core.exceptions import ValidationError as DjangoValidationError
from django.utils.translation import gettext_lazy as _

from apps.common.types import Amount
from apps.common.validators import log_security_event

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "log_security_event",
    "validate_financial_amount",
    "validate_gateway_notes",
    "validate_order_metadata",
]

# ===============================================================================
# LIMITS
# ===============================================================================

# ₹10 crore per row; anything larger is a unit mix-up (rupees stored as paise twice)
MAX_FINANCIAL_AMOUNT_CENTS = 10_000_000_000
MIN_FINANCIAL_AMOUNT_CENTS = -MAX_FINANCIAL_AMOUNT_CENTS

MAX_METADATA_BYTES = 4096
MAX_METADATA_DEPTH = 3

# Razorpay rejects orders with more notes or longer values than this
MAX_GATEWAY_NOTES = 15
MAX_GATEWAY_NOTE_LENGTH = 256

# Payment instrument data is never stored or forwarded; only gateway tokens are
CARD_DATA_KEYS = frozenset({"card_number", "cvv", "cvc", "pan", "expiry", "upi_pin", "otp", "account_number"})


# ===============================================================================
# MODEL VALIDATORS
# ===============================================================================


def validate_financial_amount(amount_cents: Amount | None, field_name: str = "Amount") -> None:
    """🔒 Reject minor-unit amounts outside the sane range"""
    if amount_cents is None:
        return
    if not MIN_FINANCIAL_AMOUNT_CENTS <= amount_cents <= MAX_FINANCIAL_AMOUNT_CENTS:
        raise DjangoValidationError(
            _("%(field_name)s out of range: %(amount)s paise") % {"field_name": field_name, "amount": amount_cents}
        )


def validate_order_metadata(data: Any, field_name: str = "Metadata") -> None:
    """🔒 Bound the size and shape of free-form metadata and keep card data out of it"""
    if not data:
        return

    try:
        encoded = json.dumps(data).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise DjangoValidationError(
            _("%(field_name)s is not JSON serializable: %(error)s") % {"field_name": field_name, "error": e}
        ) from e

    if len(encoded) > MAX_METADATA_BYTES:
        raise DjangoValidationError(
            _("%(field_name)s exceeds %(limit)s bytes") % {"field_name": field_name, "limit": MAX_METADATA_BYTES}
        )

    if _depth(data) > MAX_METADATA_DEPTH:
        raise DjangoValidationError(
            _("%(field_name)s nests deeper than %(limit)s levels")
            % {"field_name": field_name, "limit": MAX_METADATA_DEPTH}
        )

    leaked = sorted(_card_data_keys(data))
    if leaked:
        log_security_event(
            event_type="card_data_in_metadata",
            details={"field": field_name, "keys": leaked},
        )
        raise DjangoValidationError(
            _("%(field_name)s must not contain payment instrument data (%(keys)s)")
            % {"field_name": field_name, "keys": ", ".join(leaked)}
        )


# ===============================================================================
# GATEWAY PAYLOAD VALIDATORS
# ===============================================================================


def validate_gateway_notes(notes: dict[str, Any]) -> dict[str, str]:
    """
    Check order notes against the gateway's limits and stringify the values.

    Raises:
        ValidationError: INVALID_NOTES when the notes cannot be sent as-is
    """
    if len(notes) > MAX_GATEWAY_NOTES:
        raise ValidationError(f"At most {MAX_GATEWAY_NOTES} notes can be attached to an order", code="INVALID_NOTES")

    cleaned: dict[str, str] = {}
    for key, value in notes.items():
        if str(key).lower() in CARD_DATA_KEYS:
            raise ValidationError(f"Note '{key}' is not allowed", code="INVALID_NOTES")
        text = "" if value is None else str(value)
        if len(text) > MAX_GATEWAY_NOTE_LENGTH:
            raise ValidationError(
                f"Note '{key}' is longer than {MAX_GATEWAY_NOTE_LENGTH} characters", code="INVALID_NOTES"
            )
        cleaned[str(key)] = text
    return cleaned


# ===============================================================================
# HELPERS
# ===============================================================================


def _depth(data: Any, level: int = 0) -> int:
    if isinstance(data, dict):
        return max((_depth(value, level + 1) for value in data.values()), default=level + 1)
    if isinstance(data, list):
        return max((_depth(item, level + 1) for item in data), default=level + 1)
    return level


def _card_data_keys(data: Any) -> set[str]:
    found: set[str] = set()
    if isinstance(data, dict):
        for key, value in data.items():
            if str(key).lower() in CARD_DATA_KEYS:
                found.add(str(key))
            found |= _card_data_keys(value)
    elif isinstance(data, list):
        for item in data:
            found |= _card_data_keys(item)
    return found
