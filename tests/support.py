from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fuelpos.auth import Principal, Role
from fuelpos.models import Base, Branch, FuelType

ADMIN = Principal(id='admin-1', display_name='Station Admin', role=Role.ADMIN)
CASHIER = Principal(id='cashier-7', display_name='Ana Cashier', role=Role.CASHIER, branch_id=None)

SHIFT_DATE = date(2024, 5, 1)


def make_session(*, foreign_keys: bool = False) -> Session:
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)

    # pysqlite needs explicit BEGIN for SAVEPOINT to nest correctly.
    @event.listens_for(engine, 'connect')
    def _disable_driver_transactions(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        if foreign_keys:
            dbapi_connection.execute('PRAGMA foreign_keys=ON')

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn):
        conn.exec_driver_sql('BEGIN')

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()


def add_branch(db: Session, name: str = 'Manolo') -> Branch:
    branch = Branch(name=name, is_active=True)
    db.add(branch)
    db.flush()
    return branch


def add_fuel_type(
    db: Session,
    short_code: str,
    name: str,
    price: str,
    *,
    is_active: bool = True,
) -> FuelType:
    fuel = FuelType(short_code=short_code, name=name, current_price=Decimal(price), is_active=is_active)
    db.add(fuel)
    db.flush()
    return fuel
