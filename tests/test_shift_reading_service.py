from __future__ import annotations

import unittest
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import func, select

from fuelpos.config import settings
from fuelpos.errors import ConflictError, NotFoundError, StateError, ValidationError
from fuelpos.models import AuditLog, ShiftFuelReading, ShiftReadingStatus
from fuelpos.services.audit_service import list_audit_logs
from fuelpos.services.shift_reading_service import (
    ReadingScope,
    close_reading,
    edit_while_open,
    get_reading,
    get_reading_by_id,
    is_unlocked,
    list_readings,
    reading_to_dict,
    relock,
    start_reading,
    summarize_readings,
    unlock,
)
from support import ADMIN, CASHIER, SHIFT_DATE, add_branch, add_fuel_type, make_session


def _start_in(db, fuel, branch_id):
    return start_reading(
        db,
        actor=CASHIER,
        branch_id=branch_id,
        shift_date=SHIFT_DATE,
        shift_number=1,
        fuel_type_id=fuel.id,
        beginning_reading='1000',
    )


class ShiftReadingServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.branch = add_branch(self.db, 'Manolo')
        self.diesel = add_fuel_type(self.db, 'DSL', 'Diesel', '60.00')
        self.gasoline = add_fuel_type(self.db, 'UNL', 'Unleaded', '64.00')

    def tearDown(self) -> None:
        self.db.close()

    def _start(self, fuel=None, beginning='1000.000', **kwargs):
        params = {
            'actor': CASHIER,
            'branch_id': self.branch.id,
            'shift_date': SHIFT_DATE,
            'shift_number': 1,
            'fuel_type_id': (fuel or self.diesel).id,
            'beginning_reading': beginning,
        }
        params.update(kwargs)
        return start_reading(self.db, **params)

    def _count_for_scope(self, fuel_type_id: int) -> int:
        return self.db.execute(
            select(func.count())
            .select_from(ShiftFuelReading)
            .where(
                ShiftFuelReading.branch_id == self.branch.id,
                ShiftFuelReading.shift_date == SHIFT_DATE,
                ShiftFuelReading.shift_number == 1,
                ShiftFuelReading.fuel_type_id == fuel_type_id,
            )
        ).scalar_one()

    def test_start_creates_open_reading(self) -> None:
        reading = self._start()
        self.assertEqual(reading.status, ShiftReadingStatus.OPEN)
        self.assertEqual(reading.beginning_reading, Decimal('1000.000'))
        self.assertIsNone(reading.ending_reading)
        self.assertIsNone(reading.liters_dispensed)
        self.assertIsNone(reading.total_value)
        self.assertIsNone(reading.closed_at)
        self.assertEqual(reading.created_by, 'Ana Cashier')

    def test_start_rejects_invalid_beginning(self) -> None:
        for raw in ['', 'abc', '-5']:
            with self.subTest(raw=raw):
                with self.assertRaises(ValidationError):
                    self._start(beginning=raw)
        self.assertEqual(self._count_for_scope(self.diesel.id), 0)

    def test_start_rejects_unknown_shift_number(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._start(shift_number=4)
        self.assertEqual(ctx.exception.field, 'shift_number')

    def test_start_rejects_datetime_as_shift_date(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._start(shift_date=datetime(2024, 5, 1, 13, 30))
        self.assertEqual(ctx.exception.field, 'shift_date')
        self.assertEqual(self._count_for_scope(self.diesel.id), 0)

    def test_unknown_branch_is_a_validation_error(self) -> None:
        db = make_session(foreign_keys=True)
        self.addCleanup(db.close)
        fuel = add_fuel_type(db, 'DSL', 'Diesel', '60.00')
        with self.assertRaises(ValidationError) as ctx:
            _start_in(db, fuel, 999)
        self.assertEqual(ctx.exception.field, 'branch_id')

    def test_foreign_key_failure_on_insert_is_not_a_conflict(self) -> None:
        db = make_session(foreign_keys=True)
        self.addCleanup(db.close)
        fuel = add_fuel_type(db, 'DSL', 'Diesel', '60.00')
        with patch('fuelpos.services.shift_reading_service._ensure_branch'):
            with self.assertRaises(ValidationError):
                _start_in(db, fuel, 999)
        self.assertEqual(db.execute(select(func.count()).select_from(ShiftFuelReading)).scalar_one(), 0)

    def test_start_rejects_inactive_fuel_type(self) -> None:
        kerosene = add_fuel_type(self.db, 'KER', 'Kerosene', '58.00', is_active=False)
        with self.assertRaises(ValidationError):
            self._start(fuel=kerosene)

    def test_start_unknown_fuel_type_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self._start(fuel_type_id=999)

    def test_second_start_for_same_scope_conflicts(self) -> None:
        self._start()
        with self.assertRaises(ConflictError):
            self._start(beginning='1200.000')
        self.assertEqual(self._count_for_scope(self.diesel.id), 1)

    def test_start_conflicts_even_when_existing_reading_is_closed(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        with self.assertRaises(ConflictError):
            self._start()

    def test_unique_index_catches_race_past_the_existence_check(self) -> None:
        self._start()
        with patch('fuelpos.services.shift_reading_service.get_reading', return_value=None):
            with self.assertRaises(ConflictError):
                self._start(beginning='1001.000')
        self.assertEqual(self._count_for_scope(self.diesel.id), 1)

    def test_branchless_readings_are_unique_too(self) -> None:
        self._start(branch_id=None)
        with self.assertRaises(ConflictError):
            self._start(branch_id=None)

    def test_single_branch_mode_drops_branch_scope(self) -> None:
        with patch.object(settings, 'multi_branch_enabled', False):
            reading = self._start()
            self.assertIsNone(reading.branch_id)
            self.assertEqual(get_reading(self.db, self.branch.id, SHIFT_DATE, 1, self.diesel.id).id, reading.id)

    def test_get_reading_is_pure_lookup(self) -> None:
        self.assertIsNone(get_reading(self.db, self.branch.id, SHIFT_DATE, 1, self.diesel.id))
        reading = self._start()
        first = reading_to_dict(get_reading(self.db, self.branch.id, SHIFT_DATE, 1, self.diesel.id))
        second = reading_to_dict(get_reading(self.db, self.branch.id, SHIFT_DATE, 1, self.diesel.id))
        self.assertEqual(first, second)
        self.assertEqual(first['id'], reading.id)

    def test_close_computes_liters_and_value(self) -> None:
        reading = self._start()
        closed = close_reading(
            self.db,
            actor=CASHIER,
            reading_id=reading.id,
            ending_reading='1250.500',
            adjustment_liters='0.500',
            adjustment_reason='Calibration test',
        )
        self.assertEqual(closed.status, ShiftReadingStatus.CLOSED)
        self.assertIsNotNone(closed.closed_at)
        self.assertEqual(closed.liters_dispensed, Decimal('250.000'))
        self.assertEqual(closed.price_per_liter, Decimal('60.00'))
        self.assertEqual(closed.total_value, Decimal('15000.00'))
        self.assertEqual(closed.adjustment_reason, 'Calibration test')
        self.assertEqual(closed.closed_by, 'Ana Cashier')

    def test_close_twice_is_state_error(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        with self.assertRaises(StateError):
            close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1200')
        self.assertEqual(get_reading_by_id(self.db, reading.id).ending_reading, Decimal('1100.000'))

    def test_close_with_ending_below_beginning_does_not_mutate(self) -> None:
        reading = self._start()
        with self.assertRaises(ValidationError):
            close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='999.999')
        self.db.expire_all()
        stored = get_reading_by_id(self.db, reading.id)
        self.assertEqual(stored.status, ShiftReadingStatus.OPEN)
        self.assertIsNone(stored.ending_reading)
        self.assertIsNone(stored.total_value)

    def test_close_unknown_reading_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            close_reading(self.db, actor=CASHIER, reading_id=404, ending_reading='10')

    def test_adjustment_clamps_liters_to_zero(self) -> None:
        reading = self._start()
        closed = close_reading(
            self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1002.000', adjustment_liters='5'
        )
        self.assertEqual(closed.liters_dispensed, Decimal('0.000'))
        self.assertEqual(closed.total_value, Decimal('0'))

    def test_close_captures_price_at_close_time(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1010')
        self.diesel.current_price = Decimal('70.00')
        self.db.flush()
        stored = get_reading_by_id(self.db, reading.id)
        self.assertEqual(stored.price_per_liter, Decimal('60.00'))
        self.assertEqual(stored.total_value, Decimal('600.00'))

    def test_edit_while_open_previews_without_closing(self) -> None:
        reading = self._start()
        edited = edit_while_open(
            self.db,
            actor=CASHIER,
            reading_id=reading.id,
            beginning_reading='1001.000',
            ending_reading='1101.000',
            adjustment_liters='1',
        )
        self.assertEqual(edited.status, ShiftReadingStatus.OPEN)
        self.assertEqual(edited.beginning_reading, Decimal('1001.000'))
        self.assertEqual(edited.liters_dispensed, Decimal('99.000'))
        self.assertEqual(edited.total_value, Decimal('5940.00'))
        self.assertIsNone(edited.closed_at)

        cleared = edit_while_open(self.db, actor=CASHIER, reading_id=reading.id, beginning_reading='1001.000')
        self.assertIsNone(cleared.ending_reading)
        self.assertIsNone(cleared.liters_dispensed)
        self.assertIsNone(cleared.total_value)

    def test_edit_while_open_validates(self) -> None:
        reading = self._start()
        with self.assertRaises(ValidationError):
            edit_while_open(
                self.db, actor=CASHIER, reading_id=reading.id, beginning_reading='1000', ending_reading='900'
            )
        self.assertIsNone(get_reading_by_id(self.db, reading.id).ending_reading)

    def test_edit_while_open_rejects_closed_reading(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        with self.assertRaises(StateError):
            edit_while_open(self.db, actor=CASHIER, reading_id=reading.id, beginning_reading='900')

    def test_unlock_requires_closed_reading(self) -> None:
        reading = self._start()
        with self.assertRaises(StateError):
            unlock(self.db, actor=ADMIN, reading_id=reading.id)

    def test_unlock_is_persisted_and_cannot_repeat(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1250.500', adjustment_liters='0.5')
        unlock(self.db, actor=ADMIN, reading_id=reading.id)

        self.db.expire_all()
        stored = get_reading_by_id(self.db, reading.id)
        self.assertTrue(is_unlocked(stored))
        self.assertEqual(stored.unlocked_by, 'Station Admin')
        self.assertEqual(stored.status, ShiftReadingStatus.CLOSED)
        self.assertEqual(stored.liters_dispensed, Decimal('250.000'))
        with self.assertRaises(StateError):
            unlock(self.db, actor=ADMIN, reading_id=reading.id)

    def test_relock_requires_unlock(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        with self.assertRaises(StateError):
            relock(self.db, actor=ADMIN, reading_id=reading.id, beginning_reading='1000', ending_reading='1300')

    def test_relock_preserves_captured_price_by_default(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1250.500', adjustment_liters='0.5')
        self.diesel.current_price = Decimal('62.00')
        self.db.flush()
        unlock(self.db, actor=ADMIN, reading_id=reading.id)

        relocked = relock(self.db, actor=ADMIN, reading_id=reading.id, beginning_reading='1000.000', ending_reading='1300.000')

        self.assertEqual(relocked.liters_dispensed, Decimal('300.000'))
        self.assertEqual(relocked.price_per_liter, Decimal('60.00'))
        self.assertEqual(relocked.total_value, Decimal('18000.00'))
        self.assertFalse(is_unlocked(relocked))
        self.assertEqual(self._count_for_scope(self.diesel.id), 1)

    def test_relock_with_live_price_recaptures_current_price(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1250.500', adjustment_liters='0.5')
        self.diesel.current_price = Decimal('62.00')
        self.db.flush()
        unlock(self.db, actor=ADMIN, reading_id=reading.id)

        relocked = relock(
            self.db,
            actor=ADMIN,
            reading_id=reading.id,
            beginning_reading='1000.000',
            ending_reading='1300.000',
            adjustment_liters='0',
            recapture_price=True,
        )

        self.assertEqual(relocked.liters_dispensed, Decimal('300.000'))
        self.assertEqual(relocked.price_per_liter, Decimal('62.00'))
        self.assertEqual(relocked.total_value, Decimal('18600.00'))

    def test_relock_price_policy_setting(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        self.diesel.current_price = Decimal('65.00')
        self.db.flush()
        unlock(self.db, actor=ADMIN, reading_id=reading.id)
        with patch.object(settings, 'relock_price_policy', 'live'):
            relocked = relock(self.db, actor=ADMIN, reading_id=reading.id, beginning_reading='1000', ending_reading='1100')
        self.assertEqual(relocked.total_value, Decimal('6500.00'))

    def test_relock_with_invalid_values_keeps_record_unlocked_and_unchanged(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        unlock(self.db, actor=ADMIN, reading_id=reading.id)
        with self.assertRaises(ValidationError):
            relock(self.db, actor=ADMIN, reading_id=reading.id, beginning_reading='1200', ending_reading='1100')

        self.db.expire_all()
        stored = get_reading_by_id(self.db, reading.id)
        self.assertEqual(stored.beginning_reading, Decimal('1000.000'))
        self.assertEqual(stored.ending_reading, Decimal('1100.000'))
        self.assertEqual(stored.total_value, Decimal('6000.00'))
        self.assertTrue(is_unlocked(stored))

    def test_relock_requires_ending_reading(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        unlock(self.db, actor=ADMIN, reading_id=reading.id)
        with self.assertRaises(ValidationError) as ctx:
            relock(self.db, actor=ADMIN, reading_id=reading.id, beginning_reading='1000', ending_reading='')
        self.assertEqual(ctx.exception.field, 'ending_reading')

    def test_every_write_leaves_an_audit_event(self) -> None:
        reading = self._start()
        close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        unlock(self.db, actor=ADMIN, reading_id=reading.id)
        relock(self.db, actor=ADMIN, reading_id=reading.id, beginning_reading='1000', ending_reading='1150')

        events = list_audit_logs(self.db, entity_type='shift_reading', entity_id=reading.id)
        self.assertEqual([e['action'] for e in reversed(events)], ['create', 'close', 'unlock', 'relock'])
        relock_event = events[0]
        self.assertEqual(relock_event['old_values']['ending_reading'], '1100.000')
        self.assertEqual(relock_event['new_values']['ending_reading'], '1150.000')
        self.assertEqual(relock_event['actor_name'], 'Station Admin')

    def test_audit_failure_does_not_abort_close(self) -> None:
        reading = self._start()
        with patch('fuelpos.services.audit_service.log_audit', side_effect=RuntimeError('audit store down')):
            with self.assertLogs('fuelpos.services.audit_service', level='WARNING'):
                closed = close_reading(self.db, actor=CASHIER, reading_id=reading.id, ending_reading='1100')
        self.assertEqual(closed.status, ShiftReadingStatus.CLOSED)
        actions = self.db.execute(select(AuditLog.action)).scalars().all()
        self.assertEqual(actions, ['create'])

    def test_list_and_summarize_readings(self) -> None:
        diesel = self._start()
        self._start(fuel=self.gasoline, beginning='500')
        close_reading(self.db, actor=CASHIER, reading_id=diesel.id, ending_reading='1250.500', adjustment_liters='0.5')
        other_shift = self._start(shift_number=2)

        readings = list_readings(self.db, ReadingScope(branch_id=self.branch.id, shift_date=SHIFT_DATE, shift_number=1))
        self.assertEqual([r.fuel_type_id for r in readings], [self.diesel.id, self.gasoline.id])
        self.assertNotIn(other_shift.id, [r.id for r in readings])

        summary = summarize_readings(readings)
        self.assertEqual(summary.total_liters, Decimal('250.000'))
        self.assertEqual(summary.total_value, Decimal('15000.00'))
        self.assertEqual(summary.open_count, 1)
        self.assertEqual(summary.closed_count, 1)
        self.assertEqual(summary.unlocked_count, 0)

    def test_list_without_branch_covers_every_branch(self) -> None:
        other = add_branch(self.db, 'Sankanan')
        self._start()
        self._start(branch_id=other.id)
        readings = list_readings(self.db, ReadingScope(branch_id=None, shift_date=SHIFT_DATE, shift_number=1))
        self.assertEqual(len(readings), 2)
        self.assertEqual(
            list_readings(self.db, ReadingScope(branch_id=other.id, shift_date=date(2024, 5, 2), shift_number=1)),
            [],
        )


if __name__ == '__main__':
    unittest.main()
