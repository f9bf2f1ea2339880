from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fuelpos.auth import Principal, Role, assert_branch_scope, require_role
from fuelpos.db import get_db
from fuelpos.errors import DomainError
from fuelpos.routers.shift_readings import raise_domain_http
from fuelpos.services.accountability_service import ReportScope, compute_accountability_report, report_to_dict

router = APIRouter(prefix='/reports', tags=['reports'])
report_access = require_role(Role.ADMIN, Role.CASHIER)


@router.get('/accountability')
def accountability_report(
    report_date: date,
    shift_number: int,
    branch_id: int | None = None,
    strict: bool = False,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    assert_branch_scope(principal, branch_id)
    try:
        report = compute_accountability_report(
            db,
            ReportScope(branch_id=branch_id, report_date=report_date, shift_number=shift_number),
            strict=strict,
        )
    except DomainError as exc:
        raise_domain_http(db, exc)
    return report_to_dict(report)
