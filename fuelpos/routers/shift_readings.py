from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fuelpos.auth import Principal, Role, assert_branch_scope, get_current_principal, require_role
from fuelpos.db import get_db
from fuelpos.errors import DomainError
from fuelpos.services.audit_service import list_audit_logs
from fuelpos.services.shift_config_service import format_shift_time, list_shifts_for_branch
from fuelpos.services.shift_reading_service import (
    ENTITY_TYPE,
    ReadingScope,
    close_reading,
    edit_while_open,
    get_reading,
    get_reading_by_id,
    list_readings,
    reading_to_dict,
    relock,
    start_reading,
    summarize_readings,
    unlock,
)

router = APIRouter(tags=['shift-readings'])
admin_access = require_role(Role.ADMIN)

STATUS_BY_KIND = {
    'validation_error': 422,
    'conflict': 409,
    'invalid_state': 409,
    'not_found': 404,
    'collaborator_unavailable': 503,
}

RawNumber = Decimal | str | None


class StartReadingBody(BaseModel):
    branch_id: int | None = None
    shift_date: date
    shift_number: int
    fuel_type_id: int
    beginning_reading: RawNumber = None


class CloseReadingBody(BaseModel):
    ending_reading: RawNumber = None
    adjustment_liters: RawNumber = None
    adjustment_reason: str | None = None


class EditReadingBody(BaseModel):
    beginning_reading: RawNumber = None
    ending_reading: RawNumber = None
    adjustment_liters: RawNumber = None
    adjustment_reason: str | None = None


class RelockReadingBody(EditReadingBody):
    recapture_price: bool | None = None


def raise_domain_http(db: Session, exc: DomainError) -> NoReturn:
    db.rollback()
    raise HTTPException(status_code=STATUS_BY_KIND.get(exc.kind, 400), detail=exc.to_dict()) from exc


def _load_scoped(db: Session, principal: Principal, reading_id: int):
    try:
        reading = get_reading_by_id(db, reading_id)
    except DomainError as exc:
        raise_domain_http(db, exc)
    assert_branch_scope(principal, reading.branch_id)
    return reading


@router.get('/shift-readings')
def list_shift_readings(
    shift_date: date,
    shift_number: int,
    branch_id: int | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    assert_branch_scope(principal, branch_id)
    readings = list_readings(db, ReadingScope(branch_id=branch_id, shift_date=shift_date, shift_number=shift_number))
    summary = summarize_readings(readings)
    return {
        'readings': [reading_to_dict(r) for r in readings],
        'summary': {
            'total_liters': summary.total_liters,
            'total_value': summary.total_value,
            'open_count': summary.open_count,
            'closed_count': summary.closed_count,
            'unlocked_count': summary.unlocked_count,
        },
    }


@router.get('/shift-readings/lookup')
def lookup_shift_reading(
    shift_date: date,
    shift_number: int,
    fuel_type_id: int,
    branch_id: int | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    assert_branch_scope(principal, branch_id)
    reading = get_reading(db, branch_id, shift_date, shift_number, fuel_type_id)
    return {'reading': reading_to_dict(reading) if reading else None}


@router.post('/shift-readings', status_code=201)
def start_shift_reading(
    body: StartReadingBody,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    assert_branch_scope(principal, body.branch_id)
    try:
        reading = start_reading(
            db,
            actor=principal,
            branch_id=body.branch_id,
            shift_date=body.shift_date,
            shift_number=body.shift_number,
            fuel_type_id=body.fuel_type_id,
            beginning_reading=body.beginning_reading,
        )
    except DomainError as exc:
        raise_domain_http(db, exc)
    db.commit()
    return reading_to_dict(reading)


@router.post('/shift-readings/{reading_id}/close')
def close_shift_reading(
    reading_id: int,
    body: CloseReadingBody,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    _load_scoped(db, principal, reading_id)
    try:
        reading = close_reading(
            db,
            actor=principal,
            reading_id=reading_id,
            ending_reading=body.ending_reading,
            adjustment_liters=body.adjustment_liters,
            adjustment_reason=body.adjustment_reason,
        )
    except DomainError as exc:
        raise_domain_http(db, exc)
    db.commit()
    return reading_to_dict(reading)


@router.put('/shift-readings/{reading_id}')
def update_open_shift_reading(
    reading_id: int,
    body: EditReadingBody,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    _load_scoped(db, principal, reading_id)
    try:
        reading = edit_while_open(
            db,
            actor=principal,
            reading_id=reading_id,
            beginning_reading=body.beginning_reading,
            ending_reading=body.ending_reading,
            adjustment_liters=body.adjustment_liters,
            adjustment_reason=body.adjustment_reason,
        )
    except DomainError as exc:
        raise_domain_http(db, exc)
    db.commit()
    return reading_to_dict(reading)


@router.post('/shift-readings/{reading_id}/unlock')
def unlock_shift_reading(
    reading_id: int,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    try:
        unlock(db, actor=principal, reading_id=reading_id)
        reading = get_reading_by_id(db, reading_id)
    except DomainError as exc:
        raise_domain_http(db, exc)
    db.commit()
    return reading_to_dict(reading)


@router.post('/shift-readings/{reading_id}/relock')
def relock_shift_reading(
    reading_id: int,
    body: RelockReadingBody,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    try:
        reading = relock(
            db,
            actor=principal,
            reading_id=reading_id,
            beginning_reading=body.beginning_reading,
            ending_reading=body.ending_reading,
            adjustment_liters=body.adjustment_liters,
            adjustment_reason=body.adjustment_reason,
            recapture_price=body.recapture_price,
        )
    except DomainError as exc:
        raise_domain_http(db, exc)
    db.commit()
    return reading_to_dict(reading)


@router.get('/shift-readings/{reading_id}/audit')
def shift_reading_audit(
    reading_id: int,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    _load_scoped(db, principal, reading_id)
    return {'events': list_audit_logs(db, entity_type=ENTITY_TYPE, entity_id=reading_id)}


@router.get('/branches/{branch_id}/shifts')
def branch_shifts(
    branch_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return {
        'shifts': [
            {
                'number': shift.number,
                'label': shift.label,
                'start_time': shift.start_time,
                'end_time': shift.end_time,
                'display': format_shift_time(shift),
            }
            for shift in list_shifts_for_branch(db, branch_id)
        ]
    }
