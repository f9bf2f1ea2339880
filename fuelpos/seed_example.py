from datetime import time
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from fuelpos.db import SessionLocal
from fuelpos.models import Branch, BranchShift, FuelType

BRANCH_NAMES = ['Manolo', 'Sankanan', 'Patulangan', 'Balingasag']

# Balingasag runs its shifts an hour later than the other stations.
LATE_SHIFT_BRANCHES = {
    'Balingasag': [
        (1, '1st', time(5, 0), time(13, 0)),
        (2, '2nd', time(13, 0), time(21, 0)),
        (3, '3rd', time(21, 0), time(5, 0)),
    ],
}

FUEL_TYPES = [
    ('DSL', 'Diesel', Decimal('60.00')),
    ('PRM', 'Premium', Decimal('66.50')),
    ('UNL', 'Unleaded', Decimal('63.25')),
]


def seed_data(db: Session) -> None:
    for name in BRANCH_NAMES:
        branch = db.execute(select(Branch).where(Branch.name == name)).scalar_one_or_none()
        if not branch:
            branch = Branch(name=name, is_active=True)
            db.add(branch)
            db.flush()

        for number, label, start, end in LATE_SHIFT_BRANCHES.get(name, []):
            shift = db.execute(
                select(BranchShift).where(BranchShift.branch_id == branch.id, BranchShift.shift_number == number)
            ).scalar_one_or_none()
            if not shift:
                db.add(BranchShift(branch_id=branch.id, shift_number=number, label=label, start_time=start, end_time=end))

    for short_code, name, price in FUEL_TYPES:
        fuel = db.execute(select(FuelType).where(FuelType.short_code == short_code)).scalar_one_or_none()
        if not fuel:
            db.add(FuelType(short_code=short_code, name=name, current_price=price, is_active=True, is_discounted=False))

    db.flush()


def seed() -> None:
    with SessionLocal() as db:
        seed_data(db)
        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
