from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fuelpos.errors import CollaboratorError, DomainError
from fuelpos.models import (
    CashSale,
    CheckPayment,
    Deposit,
    Expense,
    ProductCategory,
    ProductSale,
    PurchaseDisbursement,
    PurchaseOrder,
    ShiftFuelReading,
    ShiftReadingStatus,
)
from fuelpos.services.fuel_type_service import FuelTypeInfo, FuelTypeProvider, SqlFuelTypeProvider
from fuelpos.services.reading_math_service import gross_liters, round_money
from fuelpos.services.shift_config_service import resolve_branch_scope

logger = logging.getLogger(__name__)

ZERO = Decimal('0')
CASH_METHOD = 'cash'

CATEGORY_FUEL_READINGS = 'fuel_readings'
CATEGORY_CASH_SALES = 'cash_sales'
CATEGORY_PRODUCT_SALES = 'product_sales'
CATEGORY_CHARGE_INVOICES = 'charge_invoices'
CATEGORY_DEPOSITS = 'deposits'
CATEGORY_CHECKS = 'checks'
CATEGORY_EXPENSES = 'expenses'
CATEGORY_PURCHASES = 'purchases'

STATUS_OK = 'ok'
STATUS_UNAVAILABLE = 'unavailable'


@dataclass(frozen=True)
class ReportScope:
    branch_id: int | None
    report_date: date
    shift_number: int

    @property
    def day_bounds(self) -> tuple[datetime, datetime]:
        start = datetime.combine(self.report_date, time.min)
        return start, start + timedelta(days=1)


@dataclass(frozen=True)
class AmountLine:
    amount: Decimal
    payment_method: str | None = None
    category: str | None = None


class SiblingSource(Protocol):
    def fuel_readings(self, scope: ReportScope) -> list[ShiftFuelReading]: ...

    def cash_sales(self, scope: ReportScope) -> list[AmountLine]: ...

    def product_sales(self, scope: ReportScope) -> list[AmountLine]: ...

    def charge_invoices(self, scope: ReportScope) -> list[AmountLine]: ...

    def deposits(self, scope: ReportScope) -> list[AmountLine]: ...

    def checks(self, scope: ReportScope) -> list[AmountLine]: ...

    def expenses(self, scope: ReportScope) -> list[AmountLine]: ...

    def purchases(self, scope: ReportScope) -> list[AmountLine]: ...


class SqlSiblingSource:
    """Fetches the report's inputs; day-stamped records use the full calendar day."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _branch_filter(self, query, column, scope: ReportScope):
        branch_id = resolve_branch_scope(scope.branch_id)
        if branch_id is not None:
            query = query.where(column == branch_id)
        return query

    def _day_lines(self, model, amount_column, scope: ReportScope, *extra) -> list[AmountLine]:
        start, end = scope.day_bounds
        query = select(amount_column, *extra).where(model.created_at >= start, model.created_at < end)
        query = self._branch_filter(query, model.branch_id, scope)
        return [self._line(row) for row in self.db.execute(query).all()]

    def _shift_lines(self, model, scope: ReportScope, *extra) -> list[AmountLine]:
        query = select(model.amount, *extra).where(
            model.shift_date == scope.report_date,
            model.shift_number == scope.shift_number,
        )
        query = self._branch_filter(query, model.branch_id, scope)
        return [self._line(row) for row in self.db.execute(query).all()]

    @staticmethod
    def _line(row) -> AmountLine:
        mapping = row._mapping
        category = mapping.get('category')
        return AmountLine(
            amount=Decimal(row[0] or 0),
            payment_method=mapping.get('payment_method'),
            category=category.value if hasattr(category, 'value') else category,
        )

    def fuel_readings(self, scope: ReportScope) -> list[ShiftFuelReading]:
        query = select(ShiftFuelReading).where(
            ShiftFuelReading.shift_date == scope.report_date,
            ShiftFuelReading.shift_number == scope.shift_number,
        )
        query = self._branch_filter(query, ShiftFuelReading.branch_id, scope)
        return list(self.db.execute(query.order_by(ShiftFuelReading.id.asc())).scalars().all())

    def cash_sales(self, scope: ReportScope) -> list[AmountLine]:
        return self._day_lines(CashSale, CashSale.amount, scope, CashSale.payment_method)

    def product_sales(self, scope: ReportScope) -> list[AmountLine]:
        return self._day_lines(
            ProductSale, ProductSale.total_amount, scope, ProductSale.category, ProductSale.payment_method
        )

    def charge_invoices(self, scope: ReportScope) -> list[AmountLine]:
        return self._day_lines(PurchaseOrder, PurchaseOrder.amount, scope)

    def deposits(self, scope: ReportScope) -> list[AmountLine]:
        return self._shift_lines(Deposit, scope, Deposit.payment_method)

    def checks(self, scope: ReportScope) -> list[AmountLine]:
        return self._shift_lines(CheckPayment, scope)

    def expenses(self, scope: ReportScope) -> list[AmountLine]:
        return self._shift_lines(Expense, scope)

    def purchases(self, scope: ReportScope) -> list[AmountLine]:
        return self._shift_lines(PurchaseDisbursement, scope)


@dataclass(frozen=True)
class FuelBreakdownRow:
    fuel_type_id: int
    short_code: str
    name: str
    status: str
    beginning_reading: Decimal
    ending_reading: Decimal | None
    gross_liters: Decimal | None
    adjustment_liters: Decimal
    liters_dispensed: Decimal
    price_per_liter: Decimal | None
    total_value: Decimal


@dataclass
class AccountabilityReport:
    scope: ReportScope
    fuel_columns: list[FuelTypeInfo]
    # None marks a fuel type with no reading in scope.
    fuel_rows: dict[int, FuelBreakdownRow | None]
    total_fuel_sales: Decimal = ZERO
    total_fuel_liters: Decimal = ZERO
    total_cash_sales: Decimal = ZERO
    product_sales: dict[str, Decimal] = field(default_factory=dict)
    total_charge_invoices: Decimal = ZERO
    total_deposits: Decimal = ZERO
    total_cash_deposits: Decimal = ZERO
    total_electronic_deposits: Decimal = ZERO
    deposits_by_method: dict[str, Decimal] = field(default_factory=dict)
    total_checks: Decimal = ZERO
    total_expenses: Decimal = ZERO
    total_purchases: Decimal = ZERO
    category_status: dict[str, str] = field(default_factory=dict)
    category_errors: dict[str, str] = field(default_factory=dict)

    @property
    def total_product_sales(self) -> Decimal:
        return sum(self.product_sales.values(), ZERO)

    @property
    def total_accountability(self) -> Decimal:
        return self.total_fuel_sales + self.total_product_sales

    @property
    def total_remittance(self) -> Decimal:
        return self.total_deposits + self.total_checks

    @property
    def short_over(self) -> Decimal:
        """Positive when more was remitted than accounted for, negative when short."""
        return self.total_remittance - (
            self.total_accountability - self.total_charge_invoices - self.total_expenses - self.total_purchases
        )

    @property
    def is_complete(self) -> bool:
        return all(status == STATUS_OK for status in self.category_status.values())

    @property
    def unavailable_categories(self) -> list[str]:
        return [name for name, status in self.category_status.items() if status != STATUS_OK]


def _sum(lines: list[AmountLine]) -> Decimal:
    return sum((line.amount for line in lines), ZERO)


def _fetch(db: Session, report: AccountabilityReport, category: str, loader: Callable[[], list]) -> list:
    # A failed statement aborts the whole transaction on PostgreSQL; contain it.
    try:
        with db.begin_nested():
            rows = loader()
    except (SQLAlchemyError, DomainError) as exc:
        logger.warning('Accountability fetch failed for %s: %s', category, exc)
        report.category_status[category] = STATUS_UNAVAILABLE
        report.category_errors[category] = str(exc) or exc.__class__.__name__
        return []
    report.category_status[category] = STATUS_OK
    return rows


def _fuel_row(fuel: FuelTypeInfo, reading: ShiftFuelReading) -> FuelBreakdownRow:
    closed = reading.status == ShiftReadingStatus.CLOSED
    beginning = Decimal(reading.beginning_reading)
    ending = Decimal(reading.ending_reading) if reading.ending_reading is not None else None
    return FuelBreakdownRow(
        fuel_type_id=fuel.id,
        short_code=fuel.short_code,
        name=fuel.name,
        status=reading.status.value,
        beginning_reading=beginning,
        ending_reading=ending,
        gross_liters=gross_liters(beginning, ending) if ending is not None else None,
        adjustment_liters=Decimal(reading.adjustment_liters or 0),
        # Open readings count as zero liters until they close.
        liters_dispensed=Decimal(reading.liters_dispensed) if closed and reading.liters_dispensed is not None else ZERO,
        # An open row only carries a preview price.
        price_per_liter=Decimal(reading.price_per_liter) if closed and reading.price_per_liter is not None else None,
        total_value=Decimal(reading.total_value) if closed and reading.total_value is not None else ZERO,
    )


def compute_accountability_report(
    db: Session,
    scope: ReportScope,
    *,
    fuel_types: FuelTypeProvider | None = None,
    siblings: SiblingSource | None = None,
    strict: bool = False,
) -> AccountabilityReport:
    """Reconcile one shift's recorded sales against what was remitted.

    Only persisted reading values are summed; nothing is revalued at today's
    prices. A category whose fetch fails is flagged unavailable instead of
    being reported as zero, and ``strict`` turns that into a CollaboratorError.
    """
    fuel_types = fuel_types if fuel_types is not None else SqlFuelTypeProvider(db)
    siblings = siblings if siblings is not None else SqlSiblingSource(db)

    columns = fuel_types.get_active_fuel_types()
    report = AccountabilityReport(scope=scope, fuel_columns=columns, fuel_rows={fuel.id: None for fuel in columns})

    readings = _fetch(db, report, CATEGORY_FUEL_READINGS, lambda: siblings.fuel_readings(scope))
    by_fuel: dict[int, list[ShiftFuelReading]] = {}
    for reading in readings:
        by_fuel.setdefault(reading.fuel_type_id, []).append(reading)

    fuel_by_id = {fuel.id: fuel for fuel in columns}
    for fuel_type_id, fuel_readings in by_fuel.items():
        fuel = fuel_by_id.get(fuel_type_id)
        if fuel is None:
            # Deactivated since the shift: no column, but its sales still count.
            fuel = FuelTypeInfo(id=fuel_type_id, short_code='', name='', current_price=ZERO, is_active=False)
        rows = [_fuel_row(fuel, reading) for reading in fuel_readings]
        for row in rows:
            report.total_fuel_sales += row.total_value
            report.total_fuel_liters += row.liters_dispensed
        if fuel_type_id not in report.fuel_rows:
            continue
        # Several rows per fuel type when every branch is in scope.
        report.fuel_rows[fuel_type_id] = rows[0] if len(rows) == 1 else _merge_rows(fuel, rows)

    report.total_cash_sales = _sum(_fetch(db, report, CATEGORY_CASH_SALES, lambda: siblings.cash_sales(scope)))

    product_lines = _fetch(db, report, CATEGORY_PRODUCT_SALES, lambda: siblings.product_sales(scope))
    report.product_sales = {category.value: ZERO for category in ProductCategory}
    for line in product_lines:
        key = line.category if line.category in report.product_sales else ProductCategory.MISCELLANEOUS.value
        report.product_sales[key] += line.amount

    report.total_charge_invoices = _sum(
        _fetch(db, report, CATEGORY_CHARGE_INVOICES, lambda: siblings.charge_invoices(scope))
    )

    deposit_lines = _fetch(db, report, CATEGORY_DEPOSITS, lambda: siblings.deposits(scope))
    for line in deposit_lines:
        method = (line.payment_method or CASH_METHOD).strip().lower()
        report.deposits_by_method[method] = report.deposits_by_method.get(method, ZERO) + line.amount
        if method == CASH_METHOD:
            report.total_cash_deposits += line.amount
        else:
            report.total_electronic_deposits += line.amount
    report.total_deposits = _sum(deposit_lines)

    report.total_checks = _sum(_fetch(db, report, CATEGORY_CHECKS, lambda: siblings.checks(scope)))
    report.total_expenses = _sum(_fetch(db, report, CATEGORY_EXPENSES, lambda: siblings.expenses(scope)))
    report.total_purchases = _sum(_fetch(db, report, CATEGORY_PURCHASES, lambda: siblings.purchases(scope)))

    if strict and not report.is_complete:
        missing = ', '.join(report.unavailable_categories)
        raise CollaboratorError(f'Report data unavailable for: {missing}')
    return report


def _merge_rows(fuel: FuelTypeInfo, rows: list[FuelBreakdownRow]) -> FuelBreakdownRow:
    prices = {row.price_per_liter for row in rows if row.price_per_liter is not None}
    grosses = [row.gross_liters for row in rows if row.gross_liters is not None]
    return FuelBreakdownRow(
        fuel_type_id=fuel.id,
        short_code=fuel.short_code,
        name=fuel.name,
        status=ShiftReadingStatus.CLOSED.value
        if all(row.status == ShiftReadingStatus.CLOSED.value for row in rows)
        else ShiftReadingStatus.OPEN.value,
        beginning_reading=sum((row.beginning_reading for row in rows), ZERO),
        ending_reading=None,
        gross_liters=sum(grosses, ZERO) if grosses else None,
        adjustment_liters=sum((row.adjustment_liters for row in rows), ZERO),
        liters_dispensed=sum((row.liters_dispensed for row in rows), ZERO),
        price_per_liter=prices.pop() if len(prices) == 1 else None,
        total_value=sum((row.total_value for row in rows), ZERO),
    )


def _row_to_dict(row: FuelBreakdownRow | None) -> dict | None:
    if row is None:
        return None
    return {
        'fuel_type_id': row.fuel_type_id,
        'short_code': row.short_code,
        'status': row.status,
        'beginning_reading': row.beginning_reading,
        'ending_reading': row.ending_reading,
        'gross_liters': row.gross_liters,
        'adjustment_liters': row.adjustment_liters,
        'liters_dispensed': row.liters_dispensed,
        'price_per_liter': row.price_per_liter,
        'total_value': round_money(row.total_value),
    }


def report_to_dict(report: AccountabilityReport) -> dict:
    return {
        'branch_id': report.scope.branch_id,
        'report_date': report.scope.report_date,
        'shift_number': report.scope.shift_number,
        'fuel_columns': [{'id': f.id, 'short_code': f.short_code, 'name': f.name} for f in report.fuel_columns],
        'fuel_rows': {str(key): _row_to_dict(row) for key, row in report.fuel_rows.items()},
        'total_fuel_liters': report.total_fuel_liters,
        'total_fuel_sales': round_money(report.total_fuel_sales),
        'total_cash_sales': round_money(report.total_cash_sales),
        'product_sales': {key: round_money(value) for key, value in report.product_sales.items()},
        'total_product_sales': round_money(report.total_product_sales),
        'total_charge_invoices': round_money(report.total_charge_invoices),
        'total_deposits': round_money(report.total_deposits),
        'total_cash_deposits': round_money(report.total_cash_deposits),
        'total_electronic_deposits': round_money(report.total_electronic_deposits),
        'deposits_by_method': {key: round_money(value) for key, value in report.deposits_by_method.items()},
        'total_checks': round_money(report.total_checks),
        'total_expenses': round_money(report.total_expenses),
        'total_purchases': round_money(report.total_purchases),
        'total_accountability': round_money(report.total_accountability),
        'total_remittance': round_money(report.total_remittance),
        'short_over': round_money(report.short_over),
        'category_status': dict(report.category_status),
        'is_complete': report.is_complete,
    }
