"""
Wage normalization.

A wage is entered as an amount in one unit (per hour, per day, or a fixed
total) and stored twice: as entered (``original_wage``) and as a canonical
8-hour-day figure (``daily_wage``). Every conversion between the two, and
every display string, goes through this module.
"""
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Union

from ..errors import InvalidAmount, InvalidUnit, ValidationError
from ..schemas.marketplace import PaymentType, WageUnit

HOURS_PER_DAY = 8

_UNIT_BY_PAYMENT_TYPE = {
    PaymentType.hourly: WageUnit.hour,
    PaymentType.daily: WageUnit.day,
    PaymentType.fixed: WageUnit.total,
}
_PAYMENT_TYPE_BY_UNIT = {unit: ptype for ptype, unit in _UNIT_BY_PAYMENT_TYPE.items()}


@dataclass(frozen=True)
class WageTerms:
    payment_type: PaymentType
    original_wage: float
    daily_wage: float
    wage_unit: WageUnit


def _coerce_unit(unit: Union[str, WageUnit]) -> WageUnit:
    try:
        return WageUnit(unit)
    except ValueError:
        raise InvalidUnit(f"Unrecognized wage unit: {unit!r}")


def _coerce_payment_type(payment_type: Union[str, PaymentType]) -> PaymentType:
    try:
        return PaymentType(payment_type)
    except ValueError:
        raise ValidationError(f"Unrecognized payment type: {payment_type!r}")


def _coerce_amount(amount) -> float:
    # bool is an int subclass; a True wage is a client bug, not 1 yuan
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        raise InvalidAmount()
    value = float(amount)
    if not math.isfinite(value) or value < 0:
        raise InvalidAmount()
    return value


def unit_for(payment_type: Union[str, PaymentType]) -> WageUnit:
    return _UNIT_BY_PAYMENT_TYPE[_coerce_payment_type(payment_type)]


def payment_type_for(unit: Union[str, WageUnit]) -> PaymentType:
    return _PAYMENT_TYPE_BY_UNIT[_coerce_unit(unit)]


def to_canonical_daily(amount, unit: Union[str, WageUnit]) -> float:
    """
    Convert an entered wage to its canonical daily figure.

    hour -> amount * 8, day -> amount, total -> amount (a fixed price is a
    single figure and is not spread over a duration).
    """
    wage_unit = _coerce_unit(unit)
    value = _coerce_amount(amount)
    if wage_unit is WageUnit.hour:
        return value * HOURS_PER_DAY
    return value


def _format_amount(amount: float) -> str:
    rounded = round(amount, 2)
    if float(rounded).is_integer():
        return str(int(rounded))
    return f"{rounded:.2f}".rstrip("0").rstrip(".")


def to_display(amount, unit: Union[str, WageUnit], payment_type: Union[str, PaymentType]) -> str:
    ptype = _coerce_payment_type(payment_type)
    wage_unit = _coerce_unit(unit)
    if _UNIT_BY_PAYMENT_TYPE[ptype] is not wage_unit:
        raise ValidationError(f"Unit {wage_unit.value!r} does not match payment type {ptype.value!r}")
    text = _format_amount(_coerce_amount(amount))
    if ptype is PaymentType.hourly:
        return f"{text}元/小时"
    if ptype is PaymentType.daily:
        return f"{text}元/天"
    return f"{text}元(总价)"


def hourly_rate(daily_wage, payment_type: Union[str, PaymentType], original_wage=None) -> Optional[float]:
    """
    Uniform hourly comparison figure.

    Hourly wages report the entered rate as-is. Fixed-price work has no
    defined duration, so there is no hourly rate and None is returned.
    """
    ptype = _coerce_payment_type(payment_type)
    if ptype is PaymentType.hourly:
        if original_wage is None:
            return _coerce_amount(daily_wage) / HOURS_PER_DAY
        return _coerce_amount(original_wage)
    if ptype is PaymentType.daily:
        return _coerce_amount(daily_wage) / HOURS_PER_DAY
    return None


def normalize(amount, payment_type: Union[str, PaymentType]) -> WageTerms:
    """Single write path for wage columns: entered amount -> all stored figures."""
    ptype = _coerce_payment_type(payment_type)
    wage_unit = _UNIT_BY_PAYMENT_TYPE[ptype]
    original = _coerce_amount(amount)
    return WageTerms(
        payment_type=ptype,
        original_wage=original,
        daily_wage=to_canonical_daily(original, wage_unit),
        wage_unit=wage_unit,
    )


def terms_of(record) -> WageTerms:
    """Read stored wage columns off a Project, Invitation or JobRecord."""
    daily = getattr(record, "daily_wage", None)
    if daily is None:
        daily = record.wage_amount
    return WageTerms(
        payment_type=PaymentType(record.payment_type),
        original_wage=float(record.original_wage),
        daily_wage=float(daily),
        wage_unit=WageUnit(record.wage_unit),
    )


def wage_view(terms: WageTerms) -> Dict:
    """Payload block for any wage leaving the service."""
    return {
        "amount": terms.original_wage,
        "unit": terms.wage_unit,
        "payment_type": terms.payment_type,
        "daily_wage": terms.daily_wage,
        "hourly_rate": hourly_rate(terms.daily_wage, terms.payment_type, terms.original_wage),
        "display_string": to_display(terms.original_wage, terms.wage_unit, terms.payment_type),
    }
