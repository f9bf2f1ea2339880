from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from fuelpos.errors import ValidationError

LITERS_QUANTUM = Decimal('0.001')
MONEY_QUANTUM = Decimal('0.01')
ZERO_LITERS = Decimal('0.000')


@dataclass(frozen=True)
class ReadingMathInput:
    beginning_reading: Decimal
    ending_reading: Decimal
    adjustment_liters: Decimal = ZERO_LITERS
    price_per_liter: Decimal = Decimal('0')


@dataclass(frozen=True)
class ReadingMathResult:
    gross_liters: Decimal
    liters_dispensed: Decimal
    price_per_liter: Decimal
    total_value: Decimal


def quantize_liters(value: Decimal) -> Decimal:
    return value.quantize(LITERS_QUANTUM, rounding=ROUND_HALF_UP)


def round_money(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def gross_liters(beginning_reading: Decimal, ending_reading: Decimal) -> Decimal:
    return quantize_liters(max(Decimal('0'), ending_reading - beginning_reading))


def net_liters(beginning_reading: Decimal, ending_reading: Decimal, adjustment_liters: Decimal) -> Decimal:
    gross = gross_liters(beginning_reading, ending_reading)
    return quantize_liters(max(Decimal('0'), gross - adjustment_liters))


def compute_reading_values(line: ReadingMathInput) -> ReadingMathResult:
    """Derive dispensed volume and value for one pump reading.

    Adjustment liters are taken off the gross meter difference and the result
    never drops below zero. The value is kept at full precision; callers round
    only for display.
    """
    if line.ending_reading < line.beginning_reading:
        raise ValidationError('Ending reading cannot be less than beginning reading', field='ending_reading')
    if line.adjustment_liters < 0:
        raise ValidationError('Adjustment liters cannot be negative', field='adjustment_liters')
    if line.price_per_liter < 0:
        raise ValidationError('Price per liter cannot be negative', field='price_per_liter')

    gross = gross_liters(line.beginning_reading, line.ending_reading)
    liters = net_liters(line.beginning_reading, line.ending_reading, line.adjustment_liters)
    return ReadingMathResult(
        gross_liters=gross,
        liters_dispensed=liters,
        price_per_liter=line.price_per_liter,
        total_value=liters * line.price_per_liter,
    )


def _to_decimal(raw: object, *, field: str, label: str) -> Decimal:
    if isinstance(raw, bool):
        raise ValidationError(f'Enter a valid {label}', field=field)
    if isinstance(raw, Decimal):
        value = raw
    else:
        text = str(raw).strip() if raw is not None else ''
        if text == '':
            raise ValidationError(f'{label.capitalize()} is required', field=field)
        try:
            value = Decimal(text)
        except InvalidOperation as exc:
            raise ValidationError(f'Enter a valid {label}', field=field) from exc
    if not value.is_finite():
        raise ValidationError(f'Enter a valid {label}', field=field)
    if value < 0:
        raise ValidationError(f'{label.capitalize()} cannot be negative', field=field)
    return value


def parse_reading(raw: object, *, field: str) -> Decimal:
    label = field.replace('_', ' ')
    return quantize_liters(_to_decimal(raw, field=field, label=label))


def parse_optional_reading(raw: object, *, field: str) -> Decimal | None:
    if raw is None or (isinstance(raw, str) and raw.strip() == ''):
        return None
    return parse_reading(raw, field=field)


def parse_adjustment(raw: object) -> Decimal:
    if raw is None or (isinstance(raw, str) and raw.strip() == ''):
        return ZERO_LITERS
    return quantize_liters(_to_decimal(raw, field='adjustment_liters', label='adjustment liters'))


def clean_reason(raw: str | None) -> str | None:
    if raw is None:
        return None
    text = raw.strip()
    return text or None
