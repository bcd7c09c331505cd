"""
Decimal utilities for exact financial calculations.

Raw token amounts arrive as integer strings in smallest units. Rates and
fees are computed with ``decimal.Decimal`` so assets with very different
decimal scales (8-decimal WBTC against 6-decimal USDC) never pick up
floating point drift.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP, localcontext
from typing import Any, Iterable, Mapping, Optional, Union

from .errors import DecimalComputationError

PRECISION = 60
BPS = Decimal(10000)

_INTEGER_AMOUNT = re.compile(r"^\d+$")

Number = Union[str, int, float, Decimal]


def _check_decimals(decimals: Any, label: str) -> int:
    if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
        raise DecimalComputationError(f"{label} must be a non-negative integer, got {decimals!r}")
    return decimals


def _raw_amount(amount: Any, label: str) -> Decimal:
    if isinstance(amount, bool):
        raise DecimalComputationError(f"{label} must be an integer string")
    text = str(amount).strip() if amount is not None else ""
    if not _INTEGER_AMOUNT.match(text):
        raise DecimalComputationError(f"{label} must be a non-negative integer string, got {amount!r}")
    return Decimal(text)


def _to_decimal(value: Number, label: str) -> Decimal:
    try:
        # floats go through str() so 0.1 stays 0.1
        result = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise DecimalComputationError(f"{label} is not a number: {value!r}") from e
    if not result.is_finite():
        raise DecimalComputationError(f"{label} must be finite, got {value!r}")
    return result


def is_raw_amount(amount: Any) -> bool:
    """True when ``amount`` is a non-negative integer string"""
    return isinstance(amount, str) and bool(_INTEGER_AMOUNT.match(amount.strip()))


def normalize_amount(amount: Union[str, int], decimals: int) -> Decimal:
    """Smallest units -> human readable amount, losslessly"""
    raw = _raw_amount(amount, "amount")
    decimals = _check_decimals(decimals, "decimals")
    with localcontext() as ctx:
        ctx.prec = PRECISION
        return raw.scaleb(-decimals)


def denormalize_amount(amount: Number, decimals: int) -> str:
    """Human readable amount -> smallest units, truncated toward zero"""
    decimals = _check_decimals(decimals, "decimals")
    value = _to_decimal(amount, "amount")
    if value < 0:
        raise DecimalComputationError(f"amount must be non-negative, got {amount!r}")
    with localcontext() as ctx:
        ctx.prec = PRECISION
        scaled = value.scaleb(decimals)
        return str(scaled.quantize(Decimal(1), rounding=ROUND_DOWN))


def calculate_effective_rate(from_amount: str, to_amount: str,
                             from_decimals: int, to_decimals: int) -> Decimal:
    """
    Destination units received per source unit, normalized for decimals:
    ``(to_amount / 10**to_decimals) / (from_amount / 10**from_decimals)``.
    """
    from_value = normalize_amount(from_amount, from_decimals)
    to_value = normalize_amount(to_amount, to_decimals)
    if from_value.is_zero():
        raise DecimalComputationError("From amount cannot be zero")
    with localcontext() as ctx:
        ctx.prec = PRECISION
        return to_value / from_value


def sum_fees(fees: Iterable[Any]) -> Decimal:
    """
    Sum USD fee values exactly. Entries may be plain numbers or mappings
    with an ``amountUSD``/``amount_usd`` key; empty entries are skipped.
    """
    if fees is None or isinstance(fees, (str, bytes)):
        raise DecimalComputationError("Fees must be an iterable of fee entries")

    total = Decimal(0)
    with localcontext() as ctx:
        ctx.prec = PRECISION
        for fee in fees:
            value: Optional[Any] = fee
            if isinstance(fee, Mapping):
                value = fee.get("amountUSD", fee.get("amount_usd"))
            if value is None or value == "":
                continue
            total += _to_decimal(value, "fee amount")
    return total


def calculate_slippage_bps(expected_rate: Number, actual_rate: Number) -> Decimal:
    """``|expected - actual| / expected * 10000``; zero when nothing was expected"""
    expected = _to_decimal(expected_rate, "expected rate")
    actual = _to_decimal(actual_rate, "actual rate")
    if expected.is_zero():
        return Decimal(0)
    with localcontext() as ctx:
        ctx.prec = PRECISION
        return abs((expected - actual) / expected * BPS)


def calculate_price_impact_bps(baseline_rate: Number, rate: Number) -> int:
    """Signed degradation of ``rate`` against ``baseline_rate`` in whole bps"""
    baseline = _to_decimal(baseline_rate, "baseline rate")
    current = _to_decimal(rate, "rate")
    if baseline <= 0:
        raise DecimalComputationError("baseline rate must be positive")
    with localcontext() as ctx:
        ctx.prec = PRECISION
        impact = (baseline - current) / baseline * BPS
        return int(impact.to_integral_value(rounding=ROUND_HALF_UP))
