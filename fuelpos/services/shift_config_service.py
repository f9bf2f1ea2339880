from __future__ import annotations

from dataclasses import dataclass
from datetime import time

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fuelpos.config import settings
from fuelpos.errors import CollaboratorError, ValidationError
from fuelpos.models import BranchShift


@dataclass(frozen=True)
class ShiftWindow:
    number: int
    label: str
    start_time: time
    end_time: time


DEFAULT_SHIFTS: list[ShiftWindow] = [
    ShiftWindow(number=1, label='1st', start_time=time(4, 0), end_time=time(12, 0)),
    ShiftWindow(number=2, label='2nd', start_time=time(12, 0), end_time=time(20, 0)),
    ShiftWindow(number=3, label='3rd', start_time=time(20, 0), end_time=time(4, 0)),
]


def resolve_branch_scope(branch_id: int | None) -> int | None:
    if not settings.multi_branch_enabled:
        return None
    return branch_id


def list_shifts_for_branch(db: Session, branch_id: int | None) -> list[ShiftWindow]:
    """Shift windows configured for a branch, or the station default schedule."""
    if branch_id is None:
        return list(DEFAULT_SHIFTS)
    try:
        rows = db.execute(
            select(BranchShift)
            .where(BranchShift.branch_id == branch_id)
            .order_by(BranchShift.shift_number.asc())
        ).scalars().all()
    except SQLAlchemyError as exc:
        raise CollaboratorError('Branch shift configuration is unavailable') from exc
    if not rows:
        return list(DEFAULT_SHIFTS)
    return [
        ShiftWindow(number=row.shift_number, label=row.label, start_time=row.start_time, end_time=row.end_time)
        for row in rows
    ]


def _format_clock(value: time) -> str:
    hour = value.hour % 12 or 12
    suffix = 'AM' if value.hour < 12 else 'PM'
    return f'{hour}:{value.minute:02d} {suffix}'


def format_shift_time(shift: ShiftWindow) -> str:
    return f'{_format_clock(shift.start_time)} - {_format_clock(shift.end_time)}'


def ensure_valid_shift(db: Session, branch_id: int | None, shift_number: int) -> ShiftWindow:
    if isinstance(shift_number, bool) or not isinstance(shift_number, int) or shift_number <= 0:
        raise ValidationError('Shift number must be a positive integer', field='shift_number')
    for shift in list_shifts_for_branch(db, branch_id):
        if shift.number == shift_number:
            return shift
    raise ValidationError(f'Shift {shift_number} is not defined for this branch', field='shift_number')
