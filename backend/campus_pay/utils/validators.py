"""
Validators — Rule-based checks for credential formats and amounts.
"""
import re
from decimal import Decimal, InvalidOperation


def validate_razorpay_key_id(key_id: str | None) -> bool:
    """Razorpay key ids look like rzp_test_XXXX or rzp_live_XXXX."""
    if not key_id:
        return False
    return bool(re.match(r"^rzp_(test|live)_[A-Za-z0-9]+$", key_id.strip()))


def validate_amount(amount) -> tuple[bool, str]:
    """Amount must be a positive number with at most two decimal places."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        return False, "Amount is not a number"
    if not value.is_finite():
        return False, "Amount is not a number"
    if value <= 0:
        return False, "Amount must be greater than zero"
    if value != value.quantize(Decimal("0.01")):
        return False, "Amount cannot have more than two decimal places"
    return True, "Valid"
