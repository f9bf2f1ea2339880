from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ShiftReadingStatus(str, Enum):
    OPEN = 'open'
    CLOSED = 'closed'


class ProductCategory(str, Enum):
    OIL_LUBES = 'oil_lubes'
    ACCESSORIES = 'accessories'
    SERVICES = 'services'
    MISCELLANEOUS = 'miscellaneous'


class Branch(Base):
    __tablename__ = 'branches'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    address: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BranchShift(Base):
    __tablename__ = 'branch_shifts'
    __table_args__ = (
        CheckConstraint('shift_number > 0', name='branch_shifts_positive_number_ck'),
    )

    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('branches.id', ondelete='CASCADE'), primary_key=True)
    shift_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(16), nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)


class FuelType(Base):
    __tablename__ = 'fuel_types'
    __table_args__ = (
        CheckConstraint('current_price >= 0', name='fuel_types_price_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    short_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    current_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    is_discounted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ShiftFuelReading(Base):
    __tablename__ = 'shift_fuel_readings'
    __table_args__ = (
        CheckConstraint('beginning_reading >= 0', name='shift_fuel_readings_beginning_non_negative_ck'),
        CheckConstraint(
            'ending_reading IS NULL OR ending_reading >= beginning_reading',
            name='shift_fuel_readings_ending_ge_beginning_ck',
        ),
        CheckConstraint('shift_number > 0', name='shift_fuel_readings_positive_shift_ck'),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    shift_number: Mapped[int] = mapped_column(Integer, nullable=False)
    fuel_type_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('fuel_types.id'), nullable=False)
    beginning_reading: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    ending_reading: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    adjustment_liters: Mapped[Decimal] = mapped_column(
        Numeric(14, 3), nullable=False, default=Decimal('0.000'), server_default='0'
    )
    adjustment_reason: Mapped[str | None] = mapped_column(Text)
    price_per_liter: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    liters_dispensed: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    total_value: Mapped[Decimal | None] = mapped_column(Numeric(20, 7))
    status: Mapped[ShiftReadingStatus] = mapped_column(
        SQLEnum(ShiftReadingStatus, name='shift_reading_status', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ShiftReadingStatus.OPEN,
        server_default='open',
    )
    created_by: Mapped[str | None] = mapped_column(Text)
    closed_by: Mapped[str | None] = mapped_column(Text)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unlocked_by: Mapped[str | None] = mapped_column(Text)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# NULL branch ids compare distinct in a plain unique constraint.
Index(
    'shift_fuel_readings_scope_uniq',
    func.coalesce(ShiftFuelReading.branch_id, 0),
    ShiftFuelReading.shift_date,
    ShiftFuelReading.shift_number,
    ShiftFuelReading.fuel_type_id,
    unique=True,
)


class CashSale(Base):
    __tablename__ = 'cash_sales'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    fuel_type_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('fuel_types.id'))
    cashier_name: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default='cash', server_default='cash')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductSale(Base):
    __tablename__ = 'product_sales'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[ProductCategory] = mapped_column(
        SQLEnum(ProductCategory, name='product_category', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default='cash', server_default='cash')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PurchaseOrder(Base):
    """Charge invoice: fuel released on credit to a customer."""

    __tablename__ = 'purchase_orders'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    po_number: Mapped[str | None] = mapped_column(Text)
    customer_name: Mapped[str | None] = mapped_column(Text)
    fuel_type_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('fuel_types.id'))
    liters: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Deposit(Base):
    __tablename__ = 'deposits'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    shift_number: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_number: Mapped[int | None] = mapped_column(Integer)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default='cash', server_default='cash')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CheckPayment(Base):
    __tablename__ = 'checks'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    shift_number: Mapped[int] = mapped_column(Integer, nullable=False)
    bank: Mapped[str | None] = mapped_column(Text)
    check_number: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Expense(Base):
    __tablename__ = 'expenses'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    shift_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PurchaseDisbursement(Base):
    __tablename__ = 'purchases_disbursements'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    shift_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    old_values: Mapped[dict | None] = mapped_column(JSON)
    new_values: Mapped[dict | None] = mapped_column(JSON)
    branch_id: Mapped[int | None] = mapped_column(BigInteger)
    actor_id: Mapped[str | None] = mapped_column(Text)
    actor_name: Mapped[str | None] = mapped_column(Text)
    actor_role: Mapped[str | None] = mapped_column(String(32))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
