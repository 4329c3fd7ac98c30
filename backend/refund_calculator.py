"""
W-2 Refund Estimator - Refund Calculator
========================================
The deterministic refund formulas.

This runs the ACTUAL calculation locally in Python.
The vision model is NOT used for refund math.

Primary:  max(0, (federal + state) - federal * 12% - state * 4%)
Fallback: max(0, (federal + state) - federal * 10% - state * 5%)
"""

import math
import re
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Any, Tuple

from refund_constants import CURRENCY_PLACES, FALLBACK_RATES, PRIMARY_RATES
from refund_models import ConfidenceTag, RefundEstimate, ValidationError

_CENTS = Decimal(1).scaleb(-CURRENCY_PLACES)
_STRIP_CHARS = re.compile(r"[$,\s]")


def round_currency(amount: float) -> float:
    """Round half-up to whole cents."""
    with localcontext() as ctx:
        # wide enough for any finite float
        ctx.prec = 350
        return float(Decimal(repr(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def _apply_rates(federal: float, state: float, rates: Tuple[float, float]) -> float:
    federal_rate, state_rate = rates
    total_withheld = federal + state
    if not math.isfinite(total_withheld):
        raise ValidationError("Withholding amounts are too large")
    estimated_federal_liability = federal * federal_rate
    estimated_state_liability = state * state_rate
    return round_currency(
        max(0.0, total_withheld - estimated_federal_liability - estimated_state_liability)
    )


def calculate_refund(federal_withheld: float, state_withheld: float) -> float:
    """
    Estimate the refund from Box 2 and Box 17.

    Args:
        federal_withheld: Box 2, federal income tax withheld
        state_withheld: Box 17, state income tax withheld

    Returns:
        Estimated refund, never negative, rounded to 2 decimals
    """
    return _apply_rates(federal_withheld, state_withheld, PRIMARY_RATES)


def calculate_fallback_refund(federal_withheld: float, state_withheld: float) -> float:
    """Conservative estimate used when the extraction reply was unstructured."""
    return _apply_rates(federal_withheld, state_withheld, FALLBACK_RATES)


def validate_withholding(federal_withheld: Any, state_withheld: Any) -> Tuple[float, float]:
    """Both amounts must be finite, non-negative numbers."""
    for label, value in (("box2Federal", federal_withheld), ("box17State", state_withheld)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{label} must be a number")
        if not math.isfinite(value) or value < 0:
            raise ValidationError(f"{label} must be a finite, non-negative number")
    return float(federal_withheld), float(state_withheld)


def coerce_amount(value: Any) -> float:
    """
    Coerce a value read off a W-2 into a float.

    Numbers pass through untouched (so NaN or negatives still fail validation
    later). Strings are parsed after dropping "$", "," and whitespace.
    Anything unreadable becomes 0.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.match(r"^[+-]?(\d+(\.\d*)?|\.\d+)", _STRIP_CHARS.sub("", value))
        if match:
            return float(match.group(0))
    return 0.0


def build_estimate(
    federal_withheld: float,
    state_withheld: float,
    confidence: ConfidenceTag,
    fallback: bool = False,
) -> RefundEstimate:
    """Validate the inputs and produce an immutable RefundEstimate."""
    federal, state = validate_withholding(federal_withheld, state_withheld)
    formula = calculate_fallback_refund if fallback else calculate_refund
    return RefundEstimate(
        federal_withheld=federal,
        state_withheld=state,
        estimated_refund=formula(federal, state),
        confidence=confidence,
    )
