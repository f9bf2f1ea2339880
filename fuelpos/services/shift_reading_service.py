from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fuelpos.auth import Principal
from fuelpos.config import settings
from fuelpos.errors import ConflictError, NotFoundError, StateError, ValidationError
from fuelpos.models import Branch, ShiftFuelReading, ShiftReadingStatus
from fuelpos.services.audit_service import AuditSink, get_audit_sink
from fuelpos.services.fuel_type_service import FuelTypeProvider, SqlFuelTypeProvider
from fuelpos.services.reading_math_service import (
    ReadingMathInput,
    clean_reason,
    compute_reading_values,
    gross_liters,
    parse_adjustment,
    parse_optional_reading,
    parse_reading,
    round_money,
)
from fuelpos.services.shift_config_service import ensure_valid_shift, resolve_branch_scope

logger = logging.getLogger(__name__)

ENTITY_TYPE = 'shift_reading'
SCOPE_INDEX = 'shift_fuel_readings_scope_uniq'


@dataclass(frozen=True)
class ReadingScope:
    branch_id: int | None
    shift_date: date
    shift_number: int


@dataclass(frozen=True)
class ReadingSummary:
    total_liters: Decimal
    total_value: Decimal
    open_count: int
    closed_count: int
    unlocked_count: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _fuel_types(db: Session, fuel_types: FuelTypeProvider | None) -> FuelTypeProvider:
    return fuel_types if fuel_types is not None else SqlFuelTypeProvider(db, lock_rows=True)


def _audit(db: Session, audit: AuditSink | None) -> AuditSink:
    return audit if audit is not None else get_audit_sink(db)


def _branch_clause(branch_id: int | None):
    if branch_id is None:
        return ShiftFuelReading.branch_id.is_(None)
    return ShiftFuelReading.branch_id == branch_id


def _snapshot(reading: ShiftFuelReading) -> dict:
    return {
        'beginning_reading': reading.beginning_reading,
        'ending_reading': reading.ending_reading,
        'adjustment_liters': reading.adjustment_liters,
        'adjustment_reason': reading.adjustment_reason,
        'price_per_liter': reading.price_per_liter,
        'liters_dispensed': reading.liters_dispensed,
        'total_value': reading.total_value,
        'status': reading.status,
    }


def _scope_of(reading: ShiftFuelReading) -> dict:
    return {
        'branch_id': reading.branch_id,
        'shift_date': reading.shift_date,
        'shift_number': reading.shift_number,
        'fuel_type_id': reading.fuel_type_id,
    }


def _ensure_branch(db: Session, branch_id: int | None) -> None:
    if branch_id is None:
        return
    if db.execute(select(Branch.id).where(Branch.id == branch_id)).scalar_one_or_none() is None:
        raise ValidationError('Branch not found', field='branch_id')


def is_unlocked(reading: ShiftFuelReading) -> bool:
    return reading.status == ShiftReadingStatus.CLOSED and reading.unlocked_at is not None


def get_reading(
    db: Session,
    branch_id: int | None,
    shift_date: date,
    shift_number: int,
    fuel_type_id: int,
) -> ShiftFuelReading | None:
    return db.execute(
        select(ShiftFuelReading).where(
            _branch_clause(resolve_branch_scope(branch_id)),
            ShiftFuelReading.shift_date == shift_date,
            ShiftFuelReading.shift_number == shift_number,
            ShiftFuelReading.fuel_type_id == fuel_type_id,
        )
    ).scalar_one_or_none()


def get_reading_by_id(db: Session, reading_id: int) -> ShiftFuelReading:
    reading = db.execute(select(ShiftFuelReading).where(ShiftFuelReading.id == reading_id)).scalar_one_or_none()
    if not reading:
        raise NotFoundError('Shift reading not found')
    return reading


def _load_for_update(db: Session, reading_id: int) -> ShiftFuelReading:
    reading = db.execute(
        select(ShiftFuelReading).where(ShiftFuelReading.id == reading_id).with_for_update()
    ).scalar_one_or_none()
    if not reading:
        raise NotFoundError('Shift reading not found')
    return reading


def list_readings(db: Session, scope: ReadingScope) -> list[ShiftFuelReading]:
    """Readings for one date and shift. A ``None`` branch lists every branch."""
    query = (
        select(ShiftFuelReading)
        .where(
            ShiftFuelReading.shift_date == scope.shift_date,
            ShiftFuelReading.shift_number == scope.shift_number,
        )
        .order_by(ShiftFuelReading.created_at.asc(), ShiftFuelReading.id.asc())
    )
    branch_id = resolve_branch_scope(scope.branch_id)
    if branch_id is not None:
        query = query.where(ShiftFuelReading.branch_id == branch_id)
    return list(db.execute(query).scalars().all())


def start_reading(
    db: Session,
    *,
    actor: Principal,
    branch_id: int | None,
    shift_date: date,
    shift_number: int,
    fuel_type_id: int,
    beginning_reading: object,
    fuel_types: FuelTypeProvider | None = None,
    audit: AuditSink | None = None,
) -> ShiftFuelReading:
    branch_id = resolve_branch_scope(branch_id)
    beginning = parse_reading(beginning_reading, field='beginning_reading')
    # datetime is a date subclass; a time part would leak into the key.
    if isinstance(shift_date, datetime) or not isinstance(shift_date, date):
        raise ValidationError('Enter a valid shift date', field='shift_date')
    _ensure_branch(db, branch_id)
    ensure_valid_shift(db, branch_id, shift_number)

    fuel = _fuel_types(db, fuel_types).get_fuel_type(fuel_type_id)
    if not fuel.is_active:
        raise ValidationError(f'{fuel.short_code} is not an active fuel type', field='fuel_type_id')

    if get_reading(db, branch_id, shift_date, shift_number, fuel_type_id) is not None:
        raise ConflictError(f'A {fuel.short_code} reading already exists for this shift')

    now = _now()
    reading = ShiftFuelReading(
        branch_id=branch_id,
        shift_date=shift_date,
        shift_number=shift_number,
        fuel_type_id=fuel_type_id,
        beginning_reading=beginning,
        adjustment_liters=Decimal('0.000'),
        status=ShiftReadingStatus.OPEN,
        created_by=actor.display_name,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(reading)
            db.flush()
    except IntegrityError as exc:
        if SCOPE_INDEX in str(exc.orig):
            raise ConflictError(f'A {fuel.short_code} reading already exists for this shift') from exc
        raise ValidationError('Reading refers to a branch or fuel type that does not exist') from exc

    _audit(db, audit).record(
        action='create',
        entity_type=ENTITY_TYPE,
        entity_id=reading.id,
        description=f'Started shift reading for {fuel.short_code}: {beginning}',
        new_values={'beginning_reading': beginning, 'shift_number': shift_number},
        scope=_scope_of(reading),
        actor=actor,
    )
    logger.info('Opened shift reading %s for %s shift %s', reading.id, fuel.short_code, shift_number)
    return reading


def close_reading(
    db: Session,
    *,
    actor: Principal,
    reading_id: int,
    ending_reading: object,
    adjustment_liters: object = None,
    adjustment_reason: str | None = None,
    fuel_types: FuelTypeProvider | None = None,
    audit: AuditSink | None = None,
) -> ShiftFuelReading:
    reading = _load_for_update(db, reading_id)
    if reading.status != ShiftReadingStatus.OPEN:
        raise StateError('Reading is already closed; unlock it to make corrections')

    ending = parse_reading(ending_reading, field='ending_reading')
    adjustment = parse_adjustment(adjustment_liters)
    if ending < reading.beginning_reading:
        raise ValidationError('Ending reading cannot be less than beginning', field='ending_reading')

    fuel = _fuel_types(db, fuel_types).get_fuel_type(reading.fuel_type_id)
    result = compute_reading_values(
        ReadingMathInput(
            beginning_reading=reading.beginning_reading,
            ending_reading=ending,
            adjustment_liters=adjustment,
            price_per_liter=fuel.current_price,
        )
    )

    before = _snapshot(reading)
    now = _now()
    reading.ending_reading = ending
    reading.adjustment_liters = adjustment
    reading.adjustment_reason = clean_reason(adjustment_reason)
    reading.price_per_liter = result.price_per_liter
    reading.liters_dispensed = result.liters_dispensed
    reading.total_value = result.total_value
    reading.status = ShiftReadingStatus.CLOSED
    reading.closed_at = now
    reading.closed_by = actor.display_name
    reading.updated_at = now
    db.flush()

    _audit(db, audit).record(
        action='close',
        entity_type=ENTITY_TYPE,
        entity_id=reading.id,
        description=f'Closed shift reading: {fuel.short_code} - {result.liters_dispensed}L',
        old_values=before,
        new_values=_snapshot(reading),
        scope=_scope_of(reading),
        actor=actor,
    )
    logger.info('Closed shift reading %s: %sL at %s', reading.id, result.liters_dispensed, result.price_per_liter)
    return reading


def edit_while_open(
    db: Session,
    *,
    actor: Principal,
    reading_id: int,
    beginning_reading: object,
    ending_reading: object = None,
    adjustment_liters: object = None,
    adjustment_reason: str | None = None,
    fuel_types: FuelTypeProvider | None = None,
    audit: AuditSink | None = None,
) -> ShiftFuelReading:
    """Save the form of an open reading without closing it.

    Fields are replaced as submitted: a missing ending clears the ending and the
    preview values. With an ending, liters and value are previewed at today's
    price; the price is captured for real only when the reading closes.
    """
    reading = _load_for_update(db, reading_id)
    if reading.status != ShiftReadingStatus.OPEN:
        raise StateError('Only open readings can be edited; unlock the reading first')

    beginning = parse_reading(beginning_reading, field='beginning_reading')
    ending = parse_optional_reading(ending_reading, field='ending_reading')
    adjustment = parse_adjustment(adjustment_liters)
    if ending is not None and ending < beginning:
        raise ValidationError('Ending cannot be less than beginning', field='ending_reading')

    result = None
    if ending is not None:
        fuel = _fuel_types(db, fuel_types).get_fuel_type(reading.fuel_type_id)
        result = compute_reading_values(
            ReadingMathInput(
                beginning_reading=beginning,
                ending_reading=ending,
                adjustment_liters=adjustment,
                price_per_liter=fuel.current_price,
            )
        )

    before = _snapshot(reading)
    reading.beginning_reading = beginning
    reading.ending_reading = ending
    reading.adjustment_liters = adjustment
    reading.adjustment_reason = clean_reason(adjustment_reason)
    reading.price_per_liter = result.price_per_liter if result else None
    reading.liters_dispensed = result.liters_dispensed if result else None
    reading.total_value = result.total_value if result else None
    reading.updated_at = _now()
    db.flush()

    _audit(db, audit).record(
        action='update',
        entity_type=ENTITY_TYPE,
        entity_id=reading.id,
        description='Updated open shift reading',
        old_values=before,
        new_values=_snapshot(reading),
        scope=_scope_of(reading),
        actor=actor,
    )
    return reading


def unlock(
    db: Session,
    *,
    actor: Principal,
    reading_id: int,
    audit: AuditSink | None = None,
) -> None:
    reading = _load_for_update(db, reading_id)
    if reading.status != ShiftReadingStatus.CLOSED:
        raise StateError('Only closed readings can be unlocked')
    if reading.unlocked_at is not None:
        raise StateError(f'Reading is already unlocked by {reading.unlocked_by or "another user"}')

    now = _now()
    reading.unlocked_at = now
    reading.unlocked_by = actor.display_name
    reading.updated_at = now
    db.flush()

    _audit(db, audit).record(
        action='unlock',
        entity_type=ENTITY_TYPE,
        entity_id=reading.id,
        description='Unlocked closed shift reading for editing',
        scope=_scope_of(reading),
        actor=actor,
    )
    logger.info('Shift reading %s unlocked by %s', reading.id, actor.display_name)


def relock(
    db: Session,
    *,
    actor: Principal,
    reading_id: int,
    beginning_reading: object,
    ending_reading: object,
    adjustment_liters: object = None,
    adjustment_reason: str | None = None,
    recapture_price: bool | None = None,
    fuel_types: FuelTypeProvider | None = None,
    audit: AuditSink | None = None,
) -> ShiftFuelReading:
    """Save corrections to an unlocked reading and lock it again.

    The captured price is kept unless ``recapture_price`` (or the
    ``relock_price_policy`` setting when it is None) asks for the live price.
    """
    reading = _load_for_update(db, reading_id)
    if not is_unlocked(reading):
        raise StateError('Reading must be unlocked before it can be re-locked')

    beginning = parse_reading(beginning_reading, field='beginning_reading')
    ending = parse_reading(ending_reading, field='ending_reading')
    adjustment = parse_adjustment(adjustment_liters)
    if ending < beginning:
        raise ValidationError('Ending cannot be less than beginning', field='ending_reading')

    if recapture_price is None:
        recapture_price = settings.relock_price_policy == 'live'
    if recapture_price or reading.price_per_liter is None:
        price = _fuel_types(db, fuel_types).get_fuel_type(reading.fuel_type_id).current_price
    else:
        price = Decimal(reading.price_per_liter)

    result = compute_reading_values(
        ReadingMathInput(
            beginning_reading=beginning,
            ending_reading=ending,
            adjustment_liters=adjustment,
            price_per_liter=price,
        )
    )

    before = _snapshot(reading)
    reading.beginning_reading = beginning
    reading.ending_reading = ending
    reading.adjustment_liters = adjustment
    reading.adjustment_reason = clean_reason(adjustment_reason)
    reading.price_per_liter = result.price_per_liter
    reading.liters_dispensed = result.liters_dispensed
    reading.total_value = result.total_value
    reading.unlocked_at = None
    reading.unlocked_by = None
    reading.updated_at = _now()
    db.flush()

    _audit(db, audit).record(
        action='relock',
        entity_type=ENTITY_TYPE,
        entity_id=reading.id,
        description=f'Edited and locked shift reading - {result.liters_dispensed}L',
        old_values=before,
        new_values={**_snapshot(reading), 'price_recaptured': recapture_price},
        scope=_scope_of(reading),
        actor=actor,
    )
    logger.info('Shift reading %s re-locked: %sL at %s', reading.id, result.liters_dispensed, result.price_per_liter)
    return reading


def summarize_readings(readings: list[ShiftFuelReading]) -> ReadingSummary:
    return ReadingSummary(
        total_liters=sum(
            (Decimal(r.liters_dispensed) for r in readings if r.status == ShiftReadingStatus.CLOSED and r.liters_dispensed is not None),
            Decimal('0.000'),
        ),
        total_value=sum(
            (Decimal(r.total_value) for r in readings if r.status == ShiftReadingStatus.CLOSED and r.total_value is not None),
            Decimal('0'),
        ),
        open_count=sum(1 for r in readings if r.status == ShiftReadingStatus.OPEN),
        closed_count=sum(1 for r in readings if r.status == ShiftReadingStatus.CLOSED),
        unlocked_count=sum(1 for r in readings if is_unlocked(r)),
    )


def reading_to_dict(reading: ShiftFuelReading) -> dict:
    gross = None
    if reading.ending_reading is not None:
        gross = gross_liters(Decimal(reading.beginning_reading), Decimal(reading.ending_reading))
    return {
        'id': reading.id,
        'branch_id': reading.branch_id,
        'shift_date': reading.shift_date,
        'shift_number': reading.shift_number,
        'fuel_type_id': reading.fuel_type_id,
        'beginning_reading': reading.beginning_reading,
        'ending_reading': reading.ending_reading,
        'gross_liters': gross,
        'adjustment_liters': reading.adjustment_liters,
        'adjustment_reason': reading.adjustment_reason,
        'price_per_liter': reading.price_per_liter,
        'liters_dispensed': reading.liters_dispensed,
        'total_value': reading.total_value,
        'total_value_display': round_money(Decimal(reading.total_value)) if reading.total_value is not None else None,
        'status': reading.status.value,
        'is_unlocked': is_unlocked(reading),
        'unlocked_by': reading.unlocked_by,
        'created_by': reading.created_by,
        'closed_by': reading.closed_by,
        'closed_at': reading.closed_at,
        'created_at': reading.created_at,
    }
