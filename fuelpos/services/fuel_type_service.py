from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fuelpos.errors import CollaboratorError, NotFoundError
from fuelpos.models import FuelType


@dataclass(frozen=True)
class FuelTypeInfo:
    id: int
    short_code: str
    name: str
    current_price: Decimal
    is_active: bool = True
    is_discounted: bool = False


class FuelTypeProvider(Protocol):
    def get_active_fuel_types(self) -> list[FuelTypeInfo]: ...

    def get_fuel_type(self, fuel_type_id: int) -> FuelTypeInfo: ...


def _to_info(row: FuelType) -> FuelTypeInfo:
    return FuelTypeInfo(
        id=row.id,
        short_code=row.short_code,
        name=row.name,
        current_price=Decimal(row.current_price),
        is_active=row.is_active,
        is_discounted=row.is_discounted,
    )


class SqlFuelTypeProvider:
    """Read-only view over the price list maintained by pricing administration."""

    def __init__(self, db: Session, *, lock_rows: bool = False) -> None:
        self.db = db
        # Share-lock the price row so a close sees the same price it stores.
        self.lock_rows = lock_rows

    def get_active_fuel_types(self) -> list[FuelTypeInfo]:
        try:
            rows = self.db.execute(
                select(FuelType).where(FuelType.is_active.is_(True)).order_by(FuelType.name.asc())
            ).scalars().all()
        except SQLAlchemyError as exc:
            raise CollaboratorError('Fuel type list is unavailable') from exc
        return [_to_info(row) for row in rows]

    def get_fuel_type(self, fuel_type_id: int) -> FuelTypeInfo:
        query = select(FuelType).where(FuelType.id == fuel_type_id)
        if self.lock_rows:
            query = query.with_for_update(read=True)
        try:
            row = self.db.execute(query).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise CollaboratorError('Fuel type lookup is unavailable') from exc
        if not row:
            raise NotFoundError('Fuel type not found', field='fuel_type_id')
        return _to_info(row)
