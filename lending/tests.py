"""
Test suite for the lending engine.

Covers the stock ledger, the borrow state machine, return verification and
inspection, the archive lifecycle, reminder sweeps, the JSON API and the
management commands. Organized into numbered categories like the rest of
the project's tests.
"""

import json
import random
import threading
import time
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

import requests
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, IntegrityError, OperationalError, connection, transaction
from django.forms.models import model_to_dict
from django.test import TestCase, TransactionTestCase, Client, override_settings
from django.utils import timezone

from . import archive, circulation, ledger, reminders, returns
from .exceptions import (
    AlreadyArchived,
    AlreadyInspected,
    ArchiveBlocked,
    BorrowerNotFound,
    CapacityViolation,
    ConsistencyViolation,
    DuplicateVerification,
    EntityArchived,
    InsufficientStock,
    InvalidRequest,
    InvalidStateTransition,
    NotArchived,
)
from .models import (
    STOCK_AVAILABLE,
    STOCK_LOW,
    STOCK_OUT,
    ActivityLog,
    BorrowTransaction,
    Employee,
    NotificationLog,
    ReturnRecord,
    ReturnVerification,
    StatusHistory,
    StockAdjustment,
    StockUnit,
    Student,
    derive_stock_status,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _student(student_id='2021-0001', **overrides):
    fields = {
        'first_name': 'Ana',
        'last_name': 'Reyes',
        'student_id': student_id,
        'email': f'{student_id}@students.example.edu',
        'contact_number': '0917-555-0101',
        'course': 'BSIT',
    }
    fields.update(overrides)
    return Student.objects.create(**fields)


def _unit(total=10, threshold=30, name='Digital Multimeter'):
    return ledger.stock_in(name, total, actor='stockroom', low_stock_threshold_percent=threshold)


def _request(unit, borrower, quantity=1, due_in=7, borrowed_days_ago=0):
    today = timezone.localdate()
    return circulation.submit_request(
        'student', borrower.pk, unit, quantity,
        expected_return_date=today + timedelta(days=due_in),
        borrow_date=today - timedelta(days=borrowed_days_ago),
        purpose='Lab exercise',
    )


def _loan(unit, borrower, quantity=1, **kwargs):
    borrow = _request(unit, borrower, quantity, **kwargs)
    return circulation.approve(borrow, 'admin')


def _utc(*args):
    return datetime(*args, tzinfo=dt_timezone.utc)


# ===================================================================
# 1. Stock Status Derivation
# ===================================================================

class TestStockStatus(TestCase):
    """Category 1 -- status is computed from quantity and threshold only."""

    def test_zero_available_is_out_of_stock(self):
        self.assertEqual(derive_stock_status(0, 10, 30), STOCK_OUT)

    def test_threshold_boundary_is_low_stock(self):
        """3 of 10 with a 30% threshold is exactly on the boundary and counts as low."""
        self.assertEqual(derive_stock_status(3, 10, 30), STOCK_LOW)

    def test_above_threshold_is_available(self):
        self.assertEqual(derive_stock_status(4, 10, 30), STOCK_AVAILABLE)

    def test_empty_unit_is_out_of_stock(self):
        self.assertEqual(derive_stock_status(0, 0, 30), STOCK_OUT)

    @override_settings(LENDING_LOW_STOCK_THRESHOLD=50)
    def test_unset_threshold_uses_setting(self):
        unit = _unit(total=10, threshold=None)
        ledger.reserve(unit, 5)
        self.assertEqual(unit.effective_threshold, 50)
        self.assertEqual(unit.status, STOCK_LOW)

    @override_settings(LENDING_LOW_STOCK_THRESHOLD=50)
    def test_stock_in_without_threshold_follows_setting(self):
        """A unit created with no threshold stores none, so the setting applies."""
        unit = ledger.stock_in('Breadboard', 10)
        unit.refresh_from_db()
        self.assertIsNone(unit.low_stock_threshold_percent)
        ledger.reserve(unit, 5)
        self.assertEqual(unit.status, STOCK_LOW)


# ===================================================================
# 2. Inventory Ledger
# ===================================================================

class TestInventoryLedger(TestCase):
    """Category 2 -- reserve, release and capacity changes."""

    def setUp(self):
        self.unit = _unit(total=10, threshold=30)

    def test_reserve_reports_status_change(self):
        change = ledger.reserve(self.unit, 8)
        self.assertEqual(self.unit.available_quantity, 2)
        self.assertEqual(change.old_status, STOCK_AVAILABLE)
        self.assertEqual(change.new_status, STOCK_LOW)

    def test_reserve_more_than_available_fails(self):
        ledger.reserve(self.unit, 8)
        with self.assertRaises(InsufficientStock) as ctx:
            ledger.reserve(self.unit, 3)
        self.assertEqual(str(ctx.exception), 'Only 2 of requested 3 available for Digital Multimeter')
        self.assertEqual(ctx.exception.context['available'], 2)
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 2)

    def test_reserve_exact_remainder_empties_unit(self):
        ledger.reserve(self.unit, 8)
        change = ledger.reserve(self.unit, 2)
        self.assertEqual(self.unit.available_quantity, 0)
        self.assertEqual(change.new_status, STOCK_OUT)

    def test_stale_instance_cannot_overdraw(self):
        """Two readers both see 3 available; only the first reservation lands."""
        ledger.reserve(self.unit, 7)
        first = StockUnit.objects.get(pk=self.unit.pk)
        second = StockUnit.objects.get(pk=self.unit.pk)
        ledger.reserve(first, 3)
        with self.assertRaises(InsufficientStock):
            ledger.reserve(second, 3)
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 0)

    def test_release_above_total_is_consistency_violation(self):
        with self.assertLogs('lending.ledger', level='CRITICAL'):
            with self.assertRaises(ConsistencyViolation):
                ledger.release(self.unit, 1)
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 10)

    def test_release_restores_status(self):
        ledger.reserve(self.unit, 10)
        change = ledger.release(self.unit, 4)
        self.assertEqual(self.unit.available_quantity, 4)
        self.assertEqual(change.old_status, STOCK_OUT)
        self.assertEqual(change.new_status, STOCK_AVAILABLE)

    def test_capacity_moves_available_by_same_delta(self):
        ledger.reserve(self.unit, 4)
        ledger.adjust_capacity(self.unit, 12, 'New delivery', actor='stockroom')
        self.assertEqual((self.unit.total_quantity, self.unit.available_quantity), (12, 8))
        ledger.adjust_capacity(self.unit, 4, 'Sent for calibration')
        self.assertEqual((self.unit.total_quantity, self.unit.available_quantity), (4, 0))
        self.assertEqual(self.unit.adjustments.filter(kind=StockAdjustment.CAPACITY).count(), 2)

    def test_capacity_below_reserved_fails(self):
        ledger.reserve(self.unit, 4)
        with self.assertRaises(CapacityViolation):
            ledger.adjust_capacity(self.unit, 3, 'Shrink')
        self.unit.refresh_from_db()
        self.assertEqual((self.unit.total_quantity, self.unit.available_quantity), (10, 6))

    def test_capacity_requires_reason(self):
        with self.assertRaises(InvalidRequest):
            ledger.adjust_capacity(self.unit, 12, '')

    def test_zero_quantity_rejected(self):
        with self.assertRaises(InvalidRequest):
            ledger.reserve(self.unit, 0)

    def test_archived_unit_cannot_be_reserved(self):
        archive.archive(self.unit, 'admin')
        with self.assertRaises(EntityArchived):
            ledger.reserve(self.unit, 1)

    def test_stock_in_records_adjustment(self):
        adjustment = self.unit.adjustments.get()
        self.assertEqual(adjustment.kind, StockAdjustment.STOCK_IN)
        self.assertEqual((adjustment.old_total, adjustment.new_total), (0, 10))

    def test_database_rejects_available_above_total(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                StockUnit.objects.filter(pk=self.unit.pk).update(available_quantity=11)


# ===================================================================
# 3. Borrow Requests and Approval
# ===================================================================

class TestBorrowRequests(TestCase):
    """Category 3 -- submit, approve, reject."""

    def setUp(self):
        self.student = _student()
        self.unit = _unit(total=10)

    def test_submit_does_not_reserve(self):
        borrow = _request(self.unit, self.student, 4)
        self.assertEqual(borrow.status, BorrowTransaction.PENDING)
        self.assertTrue(borrow.transaction_id.startswith('BRW-'))
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 10)

    def test_submit_snapshots_borrower(self):
        borrow = _request(self.unit, self.student)
        Student.objects.filter(pk=self.student.pk).update(first_name='Anabel', email='new@example.edu')
        borrow.refresh_from_db()
        self.assertEqual(borrow.borrower_name, 'Ana Reyes')
        self.assertEqual(borrow.borrower_id_number, '2021-0001')
        self.assertEqual(borrow.borrower_email, '2021-0001@students.example.edu')

    def test_submit_for_employee(self):
        employee = Employee.objects.create(first_name='Leo', last_name='Cruz', emp_id='EMP-42', department='Physics')
        borrow = circulation.submit_request(
            'employee', employee.pk, self.unit, 1, expected_return_date=timezone.localdate() + timedelta(days=3)
        )
        self.assertEqual(borrow.borrower_type, 'employee')
        self.assertEqual(borrow.borrower_id_number, 'EMP-42')

    def test_submit_more_than_available_fails(self):
        with self.assertRaises(InsufficientStock):
            _request(self.unit, self.student, 11)
        self.assertEqual(BorrowTransaction.objects.count(), 0)

    def test_unknown_borrower(self):
        with self.assertRaises(BorrowerNotFound):
            circulation.submit_request(
                'student', 9999, self.unit, 1, expected_return_date=timezone.localdate() + timedelta(days=3)
            )

    def test_archived_borrower_cannot_request(self):
        archive.archive(self.student, 'admin')
        with self.assertRaises(BorrowerNotFound):
            _request(self.unit, self.student)

    def test_unknown_borrower_type(self):
        with self.assertRaises(InvalidRequest):
            circulation.submit_request(
                'visitor', 1, self.unit, 1, expected_return_date=timezone.localdate() + timedelta(days=3)
            )

    def test_archived_unit_cannot_be_requested(self):
        archive.archive(self.unit, 'admin')
        with self.assertRaises(EntityArchived):
            _request(self.unit, self.student)

    def test_due_date_before_borrow_date(self):
        with self.assertRaises(InvalidRequest):
            _request(self.unit, self.student, due_in=-1)

    def test_approve_reserves_and_records_history(self):
        borrow = _loan(self.unit, self.student, 3)
        self.assertEqual(borrow.status, BorrowTransaction.BORROWED)
        self.assertEqual(borrow.approved_by, 'admin')
        self.assertIsNotNone(borrow.approved_at)
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 7)
        entry = borrow.status_history.get(action='approve')
        self.assertEqual((entry.old_status, entry.new_status), ('pending', 'borrowed'))

    def test_reject_leaves_stock_unchanged(self):
        borrow = _request(self.unit, self.student, 2)
        circulation.reject(borrow, 'admin', 'Not for coursework')
        self.assertEqual(borrow.status, BorrowTransaction.REJECTED)
        self.assertEqual(borrow.rejection_reason, 'Not for coursework')
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 10)

    def test_reject_requires_reason(self):
        borrow = _request(self.unit, self.student)
        with self.assertRaises(InvalidRequest):
            circulation.reject(borrow, 'admin', '')

    def test_competing_approvals_only_one_wins(self):
        """Two requests for 3 against 3 available: exactly one approval succeeds."""
        unit = _unit(total=3, name='Oscilloscope')
        other = _student('2021-0002', first_name='Ben')
        first = _request(unit, self.student, 3)
        second = _request(unit, other, 3)

        circulation.approve(first, 'admin')
        with self.assertRaises(InsufficientStock) as ctx:
            circulation.approve(second, 'admin')

        self.assertEqual(ctx.exception.context['requested'], 3)
        second.refresh_from_db()
        self.assertEqual(second.status, BorrowTransaction.PENDING)
        self.assertFalse(second.status_history.filter(action='approve').exists())
        unit.refresh_from_db()
        self.assertEqual(unit.available_quantity, 0)

    def test_double_approve_with_stale_copy(self):
        borrow = _request(self.unit, self.student, 2)
        stale = BorrowTransaction.objects.get(pk=borrow.pk)
        circulation.approve(borrow, 'admin')
        with self.assertRaises(InvalidStateTransition) as ctx:
            circulation.approve(stale, 'other-admin')
        self.assertEqual(ctx.exception.context['current_state'], 'borrowed')
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 8)

    def test_terminal_state_is_final(self):
        borrow = _request(self.unit, self.student)
        circulation.reject(borrow, 'admin', 'Duplicate request')
        with self.assertRaises(InvalidStateTransition) as ctx:
            circulation.approve(borrow, 'admin')
        self.assertEqual(ctx.exception.context['action'], 'approve')
        self.assertEqual(ctx.exception.context['current_state'], 'rejected')
        self.assertIn('closed', str(ctx.exception))


# ===================================================================
# 4. Overdue, Extension and Loss
# ===================================================================

class TestLoanLifecycle(TestCase):
    """Category 4 -- overdue marking, extensions, loss write-offs."""

    def setUp(self):
        self.student = _student()
        self.unit = _unit(total=10)
        self.today = timezone.localdate()

    def _past_due(self, quantity=1):
        return _loan(self.unit, self.student, quantity, due_in=-3, borrowed_days_ago=10)

    def test_mark_overdue_is_idempotent(self):
        borrow = self._past_due()
        self.assertTrue(circulation.mark_overdue(borrow, self.today))
        self.assertEqual(borrow.status, BorrowTransaction.OVERDUE)
        self.assertFalse(circulation.mark_overdue(borrow, self.today))
        borrow.refresh_from_db()
        self.assertEqual(borrow.status, BorrowTransaction.OVERDUE)
        self.assertEqual(borrow.status_history.filter(action='mark_overdue').count(), 1)
        self.assertEqual(borrow.days_overdue(self.today), 3)

    def test_mark_overdue_before_due_date_fails(self):
        borrow = _loan(self.unit, self.student)
        with self.assertRaises(InvalidStateTransition):
            circulation.mark_overdue(borrow, self.today)

    def test_mark_overdue_on_pending_fails(self):
        borrow = _request(self.unit, self.student, due_in=-1, borrowed_days_ago=5)
        with self.assertRaises(InvalidStateTransition):
            circulation.mark_overdue(borrow, self.today)

    def test_sweep_overdue_marks_only_past_due(self):
        late = self._past_due()
        on_time = _loan(self.unit, self.student)
        marked = circulation.sweep_overdue(self.today)
        self.assertEqual([b.pk for b in marked], [late.pk])
        on_time.refresh_from_db()
        self.assertEqual(on_time.status, BorrowTransaction.BORROWED)
        self.assertEqual(circulation.sweep_overdue(self.today), [])

    def test_sweep_overdue_dry_run_writes_nothing(self):
        late = self._past_due()
        self.assertEqual(len(circulation.sweep_overdue(self.today, dry_run=True)), 1)
        late.refresh_from_db()
        self.assertEqual(late.status, BorrowTransaction.BORROWED)

    def test_extend_overdue_loan_returns_to_borrowed(self):
        borrow = self._past_due()
        circulation.mark_overdue(borrow, self.today)
        new_date = self.today + timedelta(days=5)
        circulation.extend(borrow, new_date, 'admin', 'Thesis deadline')
        self.assertEqual(borrow.status, BorrowTransaction.BORROWED)
        self.assertEqual(borrow.expected_return_date, new_date)
        self.assertIn(f'Return date extended to {new_date.isoformat()} by admin. Reason: Thesis deadline', borrow.notes)

    def test_extend_requires_future_date(self):
        borrow = _loan(self.unit, self.student)
        with self.assertRaises(InvalidRequest):
            circulation.extend(borrow, self.today, 'admin')

    def test_extend_pending_request_fails(self):
        borrow = _request(self.unit, self.student)
        with self.assertRaises(InvalidStateTransition):
            circulation.extend(borrow, self.today + timedelta(days=3), 'admin')

    def test_declare_lost_writes_off_capacity(self):
        borrow = _loan(self.unit, self.student, 2)
        circulation.declare_lost(borrow, 'admin', 'Left on the bus')
        self.assertEqual(borrow.status, BorrowTransaction.LOST)
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.total_quantity, 8)
        self.assertEqual(self.unit.available_quantity, 8)
        self.assertEqual(self.unit.written_off_quantity, 2)
        write_off = self.unit.adjustments.get(kind=StockAdjustment.WRITE_OFF)
        self.assertEqual(write_off.transaction, borrow)
        self.assertTrue(ledger.check_conservation(self.unit).balanced)

    def test_lost_loan_cannot_be_returned(self):
        borrow = _loan(self.unit, self.student)
        circulation.declare_lost(borrow, 'admin')
        with self.assertRaises(InvalidStateTransition):
            circulation.report_return(borrow, 'Ana Reyes')


# ===================================================================
# 5. Return Verification
# ===================================================================

class TestReturnVerification(TestCase):
    """Category 5 -- report, verify, reject, and the single-open-verification rule."""

    def setUp(self):
        self.student = _student()
        self.unit = _unit(total=10)
        self.borrow = _loan(self.unit, self.student, 3)

    def test_report_return_keeps_stock_reserved(self):
        verification = circulation.report_return(self.borrow, 'Ana Reyes', 'All parts included')
        self.assertEqual(self.borrow.status, BorrowTransaction.PENDING_RETURN_VERIFICATION)
        self.assertEqual(verification.verification_status, ReturnVerification.PENDING_VERIFICATION)
        self.assertEqual(verification.quantity_returned, 3)
        self.assertTrue(verification.verification_id.startswith('RV-'))
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 7)

    def test_second_report_is_duplicate(self):
        first = circulation.report_return(self.borrow, 'Ana Reyes')
        with self.assertRaises(DuplicateVerification) as ctx:
            circulation.report_return(self.borrow, 'Ana Reyes')
        self.assertEqual(ctx.exception.context['verification_id'], first.verification_id)
        self.assertEqual(self.borrow.return_verifications.count(), 1)

    def test_database_allows_one_open_verification(self):
        first = circulation.report_return(self.borrow, 'Ana Reyes')
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                ReturnVerification.objects.create(
                    transaction=self.borrow, borrower_type='student', borrower_id=self.student.pk,
                    borrower_name='Ana Reyes', item_name=first.item_name,
                    quantity_returned=3, return_date=timezone.localdate(),
                )

    def test_future_return_date_rejected(self):
        tomorrow = timezone.localdate() + timedelta(days=1)
        with self.assertRaises(InvalidRequest) as ctx:
            circulation.report_return(self.borrow, 'Ana Reyes', return_date=tomorrow)
        self.assertEqual(ctx.exception.context['return_date'], tomorrow.isoformat())
        self.borrow.refresh_from_db()
        self.assertEqual(self.borrow.status, BorrowTransaction.BORROWED)
        self.assertFalse(self.borrow.return_verifications.exists())

    def test_return_date_before_borrow_date_rejected(self):
        day_before = self.borrow.borrow_date - timedelta(days=1)
        with self.assertRaises(InvalidRequest):
            circulation.report_return(self.borrow, 'Ana Reyes', return_date=day_before)
        self.assertFalse(self.borrow.return_verifications.exists())

    def test_rejected_return_allows_resubmission(self):
        verification = circulation.report_return(self.borrow, 'Ana Reyes')
        returns.resolve(verification, 'verifier', 'reject', 'wrong item')
        self.assertEqual(verification.verification_status, ReturnVerification.REJECTED)
        self.assertEqual(verification.rejection_reason, 'wrong item')
        self.borrow.refresh_from_db()
        self.assertEqual(self.borrow.status, BorrowTransaction.BORROWED)

        again = circulation.report_return(self.borrow, 'Ana Reyes')
        self.assertNotEqual(again.pk, verification.pk)
        self.assertEqual(self.borrow.status, BorrowTransaction.PENDING_RETURN_VERIFICATION)

    def test_rejected_return_goes_back_to_overdue(self):
        unit = _unit(total=5, name='Soldering Iron')
        borrow = _loan(unit, self.student, 1, due_in=-2, borrowed_days_ago=6)
        circulation.mark_overdue(borrow)
        verification = circulation.report_return(borrow, 'Ana Reyes')
        returns.resolve(verification, 'verifier', 'reject', 'tip missing')
        borrow.refresh_from_db()
        self.assertEqual(borrow.status, BorrowTransaction.OVERDUE)

    def test_reject_requires_reason(self):
        verification = circulation.report_return(self.borrow, 'Ana Reyes')
        with self.assertRaises(InvalidRequest):
            returns.resolve(verification, 'verifier', 'reject', '')

    def test_unknown_decision(self):
        verification = circulation.report_return(self.borrow, 'Ana Reyes')
        with self.assertRaises(InvalidRequest):
            returns.resolve(verification, 'verifier', 'maybe')

    def test_verify_credits_stock_and_opens_record(self):
        verification = circulation.report_return(self.borrow, 'Ana Reyes')
        returns.resolve(verification, 'verifier', 'verify', 'Counted 3')

        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 10)
        self.borrow.refresh_from_db()
        self.assertEqual(self.borrow.status, BorrowTransaction.RETURNED)
        self.assertEqual(self.borrow.actual_return_date, verification.return_date)
        record = ReturnRecord.objects.get(transaction=self.borrow)
        self.assertEqual(record.inspection_status, ReturnRecord.PENDING_INSPECTION)
        self.assertEqual(verification.verified_by, 'verifier')

    def test_resolve_twice_fails(self):
        verification = circulation.report_return(self.borrow, 'Ana Reyes')
        returns.resolve(verification, 'verifier', 'verify')
        with self.assertRaises(InvalidStateTransition):
            returns.resolve(verification, 'verifier', 'verify')
        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 10)

    def test_verify_is_all_or_nothing(self):
        """A failure creating the return record undoes the stock release and the status change."""
        verification = circulation.report_return(self.borrow, 'Ana Reyes')
        with patch.object(ReturnRecord.objects, 'create', side_effect=DatabaseError('disk full')):
            with self.assertRaises(DatabaseError):
                returns.resolve(verification, 'verifier', 'verify')

        self.unit.refresh_from_db()
        self.assertEqual(self.unit.available_quantity, 7)
        self.borrow.refresh_from_db()
        self.assertEqual(self.borrow.status, BorrowTransaction.PENDING_RETURN_VERIFICATION)
        verification.refresh_from_db()
        self.assertEqual(verification.verification_status, ReturnVerification.PENDING_VERIFICATION)
        self.assertFalse(ReturnRecord.objects.exists())
        self.assertFalse(self.borrow.status_history.filter(action='verify_return').exists())


# ===================================================================
# 6. Inspection
# ===================================================================

class TestInspection(TestCase):
    """Category 6 -- one inspection per return record."""

    def setUp(self):
        student = _student()
        self.unit = _unit(total=10)
        borrow = _loan(self.unit, student, 2, due_in=-2, borrowed_days_ago=5)
        verification = circulation.report_return(borrow, 'Ana Reyes')
        returns.resolve(verification, 'verifier', 'verify')
        self.record = ReturnRecord.objects.get(transaction=borrow)

    def test_inspect_sets_condition_and_fee(self):
        returns.inspect(self.record, 'inspector', ReturnRecord.MAJOR_DAMAGE, damage_fee=50, notes='Cracked case')
        self.assertEqual(self.record.inspection_status, ReturnRecord.MAJOR_DAMAGE)
        self.assertEqual(self.record.condition, 'damaged')
        self.assertEqual(self.record.damage_fee, Decimal('50.00'))
        self.assertEqual(self.record.inspected_by, 'inspector')

    def test_second_inspection_fails(self):
        returns.inspect(self.record, 'inspector', ReturnRecord.MAJOR_DAMAGE, damage_fee=50)
        with self.assertRaises(AlreadyInspected):
            returns.inspect(self.record, 'inspector', ReturnRecord.GOOD_CONDITION)
        self.record.refresh_from_db()
        self.assertEqual(self.record.inspection_status, ReturnRecord.MAJOR_DAMAGE)

    def test_inspection_has_no_ledger_effect(self):
        returns.inspect(self.record, 'inspector', ReturnRecord.LOST)
        self.unit.refresh_from_db()
        self.assertEqual((self.unit.total_quantity, self.unit.available_quantity), (10, 10))

    def test_negative_fee_rejected(self):
        with self.assertRaises(InvalidRequest):
            returns.inspect(self.record, 'inspector', ReturnRecord.MINOR_DAMAGE, damage_fee='-1')

    def test_fee_above_column_size_rejected(self):
        """A fee the damage_fee column cannot hold is refused before anything is written."""
        with self.assertRaises(InvalidRequest):
            returns.inspect(self.record, 'inspector', ReturnRecord.MAJOR_DAMAGE, damage_fee='123456789012.5')
        with self.assertRaises(InvalidRequest):
            returns.inspect(self.record, 'inspector', ReturnRecord.MAJOR_DAMAGE, damage_fee='1E+40')
        self.record.refresh_from_db()
        self.assertEqual(self.record.inspection_status, ReturnRecord.PENDING_INSPECTION)
        self.assertEqual(self.record.damage_fee, Decimal('0'))

    def test_fee_rounds_to_cents(self):
        returns.inspect(self.record, 'inspector', ReturnRecord.MINOR_DAMAGE, damage_fee='12.345')
        self.assertEqual(self.record.damage_fee, Decimal('12.35'))

    def test_largest_fee_accepted(self):
        returns.inspect(self.record, 'inspector', ReturnRecord.UNUSABLE, damage_fee='99999999.99')
        self.assertEqual(self.record.damage_fee, Decimal('99999999.99'))

    def test_unknown_inspection_status(self):
        with self.assertRaises(InvalidRequest):
            returns.inspect(self.record, 'inspector', ReturnRecord.PENDING_INSPECTION)

    def test_days_late(self):
        self.assertEqual(self.record.days_late, 2)


# ===================================================================
# 7. Conservation
# ===================================================================

class TestConservation(TestCase):
    """Category 7 -- available + reserved == total after any mix of operations."""

    def test_mixed_operations_stay_balanced(self):
        unit = _unit(total=20)
        students = [_student(f'2021-01{i:02d}') for i in range(4)]
        returned = _loan(unit, students[0], 3)
        lost = _loan(unit, students[1], 2)
        open_loan = _loan(unit, students[2], 4)
        _request(unit, students[3], 5)

        verification = circulation.report_return(returned, 'student')
        returns.resolve(verification, 'verifier', 'verify')
        circulation.declare_lost(lost, 'admin')
        circulation.report_return(open_loan, 'student')
        ledger.adjust_capacity(unit, 25, 'Restock')

        audit = ledger.check_conservation(unit)
        self.assertTrue(audit.balanced)
        self.assertEqual(audit.reserved_quantity, 4)
        self.assertEqual(audit.total_quantity, 25)
        self.assertEqual(audit.available_quantity, 21)

    def test_imbalance_detected(self):
        unit = _unit(total=10)
        StockUnit.objects.filter(pk=unit.pk).update(available_quantity=6)
        with self.assertLogs('lending.ledger', level='CRITICAL'):
            audit = ledger.check_conservation(unit)
        self.assertFalse(audit.balanced)


# ===================================================================
# 8. Archive Lifecycle
# ===================================================================

class TestArchiveLifecycle(TestCase):
    """Category 8 -- archive, restore, purge."""

    def setUp(self):
        self.unit = _unit(total=5, name='Breadboard')

    def test_one_month_retention(self):
        archive.archive(self.unit, 'admin', now=_utc(2025, 1, 1))
        self.assertEqual(self.unit.auto_delete_at, _utc(2025, 2, 1))
        self.assertEqual(self.unit.archived_by, 'admin')

        self.assertEqual(archive.sweep_expired(now=_utc(2025, 1, 31, 23, 59, 59)), [])
        self.assertTrue(StockUnit.objects.filter(pk=self.unit.pk).exists())

        purged = archive.sweep_expired(now=_utc(2025, 2, 1))
        self.assertEqual([entry.entity.pk for entry in purged], [self.unit.pk])
        self.assertFalse(StockUnit.objects.filter(pk=self.unit.pk).exists())
        self.assertTrue(ActivityLog.objects.filter(
            activity_type=ActivityLog.PURGED, entity_type='stock_unit', entity_id=self.unit.pk
        ).exists())

    def test_sweep_twice_is_idempotent(self):
        archive.archive(self.unit, 'admin', now=_utc(2025, 1, 1))
        archive.sweep_expired(now=_utc(2025, 3, 1))
        remaining = set(StockUnit.objects.values_list('pk', flat=True))
        self.assertEqual(archive.sweep_expired(now=_utc(2025, 3, 1)), [])
        self.assertEqual(set(StockUnit.objects.values_list('pk', flat=True)), remaining)
        self.assertEqual(ActivityLog.objects.filter(activity_type=ActivityLog.PURGED).count(), 1)

    def test_dry_run_deletes_nothing(self):
        archive.archive(self.unit, 'admin', now=_utc(2025, 1, 1))
        self.assertEqual(len(archive.sweep_expired(now=_utc(2025, 3, 1), dry_run=True)), 1)
        self.assertTrue(StockUnit.objects.filter(pk=self.unit.pk).exists())

    def test_restore_round_trip(self):
        before = model_to_dict(StockUnit.objects.get(pk=self.unit.pk))
        archive.archive(self.unit, 'admin')
        archive.restore(self.unit, 'admin')
        self.assertEqual(model_to_dict(StockUnit.objects.get(pk=self.unit.pk)), before)
        self.assertIsNone(self.unit.archived_at)
        self.assertIsNone(self.unit.auto_delete_at)
        self.assertEqual(
            list(ActivityLog.objects.order_by('id').values_list('activity_type', flat=True)),
            [ActivityLog.ARCHIVED, ActivityLog.RESTORED],
        )

    def test_archive_twice_fails(self):
        archive.archive(self.unit, 'admin')
        with self.assertRaises(AlreadyArchived):
            archive.archive(self.unit, 'admin')

    def test_restore_active_record_fails(self):
        with self.assertRaises(NotArchived):
            archive.restore(self.unit, 'admin')

    def test_unit_with_active_loan_is_blocked(self):
        borrow = _loan(self.unit, _student(), 1)
        with self.assertRaises(ArchiveBlocked):
            archive.archive(self.unit, 'admin')
        self.unit.refresh_from_db()
        self.assertFalse(self.unit.archived)

        verification = circulation.report_return(borrow, 'Ana Reyes')
        returns.resolve(verification, 'verifier', 'verify')
        archive.archive(self.unit, 'admin')
        self.assertTrue(self.unit.archived)

    def test_student_archive_hides_from_active(self):
        student = _student()
        archive.archive(student, 'registrar')
        self.assertFalse(Student.objects.active().filter(pk=student.pk).exists())
        entries = archive.archived_entries('student')
        self.assertEqual(entries[0].label, 'Ana Reyes (2021-0001)')

    def test_days_remaining(self):
        archive.archive(self.unit, 'admin', now=_utc(2025, 1, 1))
        self.assertEqual(self.unit.days_until_auto_delete(_utc(2025, 1, 30, 12)), 2)
        self.assertEqual(self.unit.days_until_auto_delete(_utc(2025, 2, 3)), 0)
        entry = archive.archived_entries('stock_unit', now=_utc(2025, 1, 1))[0]
        self.assertEqual(entry.days_remaining, 31)

    def test_month_end_clamps(self):
        self.assertEqual(archive.add_months(_utc(2025, 1, 31), 1), _utc(2025, 2, 28))
        self.assertEqual(archive.add_months(_utc(2024, 1, 31), 1), _utc(2024, 2, 29))
        self.assertEqual(archive.add_months(_utc(2025, 12, 15), 1), _utc(2026, 1, 15))

    def test_archive_dates_are_paired_in_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                StockUnit.objects.filter(pk=self.unit.pk).update(archived_at=timezone.now())


# ===================================================================
# 9. Reminders
# ===================================================================

class TestReminders(TestCase):
    """Category 9 -- each milestone is sent at most once."""

    def setUp(self):
        self.student = _student()
        self.unit = _unit(total=10)
        self.now = timezone.now()

    def test_due_soon_sent_once(self):
        borrow = _loan(self.unit, self.student, due_in=1)
        events = reminders.sweep_due_reminders(self.now)
        self.assertEqual([e.event_type for e in events], [NotificationLog.DUE_SOON])
        borrow.refresh_from_db()
        self.assertIsNotNone(borrow.due_soon_notification_sent_at)

        self.assertEqual(reminders.sweep_due_reminders(self.now), [])
        log = NotificationLog.objects.get()
        self.assertEqual(log.transaction, borrow)
        self.assertEqual(log.sent_to, 'logged_only')

    def test_due_today_and_overdue(self):
        due_today = _loan(self.unit, self.student, due_in=0)
        late = _loan(self.unit, self.student, due_in=-2, borrowed_days_ago=7)
        events = {e.transaction.pk: e.event_type for e in reminders.sweep_due_reminders(self.now)}
        self.assertEqual(events, {due_today.pk: NotificationLog.DUE_TODAY, late.pk: NotificationLog.OVERDUE})

    def test_pending_requests_get_no_reminders(self):
        _request(self.unit, self.student, due_in=1)
        self.assertEqual(reminders.sweep_due_reminders(self.now), [])

    def test_dry_run_does_not_stamp(self):
        borrow = _loan(self.unit, self.student, due_in=1)
        self.assertEqual(len(reminders.sweep_due_reminders(self.now, dry_run=True)), 1)
        borrow.refresh_from_db()
        self.assertIsNone(borrow.due_soon_notification_sent_at)
        self.assertFalse(NotificationLog.objects.exists())

    @override_settings(NOTIFICATION_WEBHOOK_URL='https://hooks.example.com/lending')
    def test_webhook_delivery(self):
        _loan(self.unit, self.student, due_in=1)
        with patch('lending.notifications.requests.post') as post:
            reminders.sweep_due_reminders(self.now)
        post.assert_called_once()
        self.assertEqual(post.call_args.kwargs['json']['type'], NotificationLog.DUE_SOON)
        self.assertTrue(NotificationLog.objects.get().delivered)

    @override_settings(NOTIFICATION_WEBHOOK_URL='https://hooks.example.com/lending')
    def test_webhook_failure_keeps_stamp(self):
        borrow = _loan(self.unit, self.student, due_in=1)
        with patch('lending.notifications.requests.post', side_effect=requests.ConnectionError('down')):
            with self.assertLogs('lending.notifications', level='WARNING'):
                reminders.sweep_due_reminders(self.now)
        borrow.refresh_from_db()
        self.assertIsNotNone(borrow.due_soon_notification_sent_at)
        self.assertFalse(NotificationLog.objects.get().delivered)

    def test_overdue_digest(self):
        _loan(self.unit, self.student, 2, due_in=-4, borrowed_days_ago=10)
        _loan(self.unit, self.student, 1, due_in=-2, borrowed_days_ago=10)
        summary = reminders.send_overdue_digest(timezone.localdate())
        self.assertEqual(summary['count'], 2)
        self.assertEqual(summary['total_quantity'], 3)
        self.assertEqual(summary['average_days_overdue'], 3.0)
        self.assertTrue(NotificationLog.objects.filter(notification_type=NotificationLog.OVERDUE_DIGEST).exists())

    def test_no_digest_without_overdue_loans(self):
        self.assertIsNone(reminders.send_overdue_digest(timezone.localdate()))
        self.assertFalse(NotificationLog.objects.exists())

    def test_archive_expiration_notice(self):
        archive.archive(self.unit, 'admin', now=_utc(2025, 1, 1))
        purged = reminders.sweep_archive_expirations(now=_utc(2025, 2, 1))
        self.assertEqual(len(purged), 1)
        log = NotificationLog.objects.get(notification_type=NotificationLog.AUTO_DELETE)
        self.assertEqual(log.payload['entity_type'], 'stock_unit')


# ===================================================================
# 10. JSON API
# ===================================================================

class TestLendingApi(TestCase):
    """Category 10 -- HTTP status codes and the JSON error envelope."""

    def setUp(self):
        self.client = Client()
        self.student = _student()
        self.unit = _unit(total=3, name='Logic Analyzer')

    def _post(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def _submit(self, quantity=2):
        return self._post('/api/borrow/request/', {
            'borrower_type': 'student',
            'borrower_id': self.student.pk,
            'stock_unit_id': self.unit.pk,
            'quantity': quantity,
            'expected_return_date': (timezone.localdate() + timedelta(days=7)).isoformat(),
            'purpose': 'Capstone',
        })

    def test_create_stock_unit(self):
        resp = self._post('/api/stock-units/create/', {'name': 'Arduino Uno', 'quantity': 12, 'kind': 'usable'})
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body['stock_unit']['status'], STOCK_AVAILABLE)
        self.assertEqual(body['stock_unit']['available_quantity'], 12)

    def test_borrow_flow(self):
        resp = self._submit()
        self.assertEqual(resp.status_code, 201)
        transaction_id = resp.json()['transaction']['transaction_id']

        resp = self._post(f'/api/borrow/{transaction_id}/approve/', {'actor': 'admin'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['transaction']['status'], 'borrowed')
        self.assertEqual(resp.json()['stock_unit']['available_quantity'], 1)

        resp = self._post(f'/api/borrow/{transaction_id}/return/', {'returned_by': 'Ana Reyes'})
        self.assertEqual(resp.status_code, 201)
        verification_id = resp.json()['verification']['verification_id']

        resp = self._post(f'/api/verifications/{verification_id}/resolve/', {'actor': 'verifier', 'decision': 'verify'})
        self.assertEqual(resp.status_code, 200)
        record_id = resp.json()['return_record']['id']

        resp = self._post(f'/api/inspections/{record_id}/', {
            'actor': 'inspector', 'inspection_status': 'minor_damage', 'damage_fee': '12.50',
        })
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['return_record']['damage_fee'], '12.50')

        resp = self._post(f'/api/inspections/{record_id}/', {'actor': 'inspector', 'inspection_status': 'good_condition'})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()['code'], 'already_inspected')

        resp = self.client.get(f'/api/transactions/{transaction_id}/')
        actions = [entry['action'] for entry in resp.json()['history']]
        self.assertEqual(actions, ['submit_request', 'approve', 'report_return', 'verify_return'])

    def test_insufficient_stock_is_conflict(self):
        first = self._submit(2).json()['transaction']['transaction_id']
        second = self._submit(2).json()['transaction']['transaction_id']
        self._post(f'/api/borrow/{first}/approve/', {'actor': 'admin'})
        resp = self._post(f'/api/borrow/{second}/approve/', {'actor': 'admin'})
        self.assertEqual(resp.status_code, 409)
        body = resp.json()
        self.assertFalse(body['success'])
        self.assertEqual(body['code'], 'insufficient_stock')
        self.assertEqual(body['error'], 'Only 1 of requested 2 available for Logic Analyzer')

    def test_invalid_transition_is_conflict(self):
        transaction_id = self._submit().json()['transaction']['transaction_id']
        resp = self._post(f'/api/borrow/{transaction_id}/return/', {'returned_by': 'Ana Reyes'})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()['current_state'], 'pending')

    def test_unknown_borrower_is_not_found(self):
        resp = self._post('/api/borrow/request/', {
            'borrower_type': 'student', 'borrower_id': 9999, 'stock_unit_id': self.unit.pk,
            'quantity': 1, 'expected_return_date': '2030-01-01',
        })
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['code'], 'borrower_not_found')

    def test_malformed_json(self):
        resp = self.client.post('/api/borrow/request/', data='{not json', content_type='application/json')
        self.assertEqual(resp.status_code, 400)

    def test_bad_date(self):
        resp = self._post('/api/borrow/request/', {
            'borrower_type': 'student', 'borrower_id': self.student.pk, 'stock_unit_id': self.unit.pk,
            'quantity': 1, 'expected_return_date': 'next tuesday',
        })
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['field'], 'expected_return_date')

    def test_commands_require_post(self):
        resp = self.client.get('/api/borrow/request/')
        self.assertEqual(resp.status_code, 405)

    def test_unknown_transaction_is_404(self):
        resp = self._post('/api/borrow/BRW-0000000000/approve/', {'actor': 'admin'})
        self.assertEqual(resp.status_code, 404)

    def test_archive_and_list(self):
        resp = self._post(f'/api/archives/stock_unit/{self.unit.pk}/archive/', {'actor': 'admin'})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()['archived'])

        resp = self.client.get('/api/archives/stock_unit/')
        entry = resp.json()['archived'][0]
        self.assertEqual(entry['id'], self.unit.pk)
        self.assertGreaterEqual(entry['days_remaining'], 28)

        resp = self._post(f'/api/archives/stock_unit/{self.unit.pk}/archive/', {'actor': 'admin'})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()['code'], 'already_archived')

        resp = self._post(f'/api/archives/stock_unit/{self.unit.pk}/restore/', {'actor': 'admin'})
        self.assertFalse(resp.json()['archived'])

    def test_unknown_archive_type(self):
        resp = self.client.get('/api/archives/vehicle/')
        self.assertEqual(resp.status_code, 404)

    def test_stock_unit_list_shows_derived_status(self):
        ledger.reserve(self.unit, 3)
        resp = self.client.get('/api/stock-units/', {'status': STOCK_OUT})
        self.assertEqual(resp.json()['count'], 1)
        self.assertEqual(resp.json()['stock_units'][0]['status_display'], 'Out of Stock')

    def test_inventory_report(self):
        transaction_id = self._submit(1).json()['transaction']['transaction_id']
        self._post(f'/api/borrow/{transaction_id}/approve/', {'actor': 'admin'})
        body = self.client.get('/api/report/').json()
        self.assertEqual(body['total_stock_units'], 1)
        self.assertEqual(body['active_loans'], 1)
        self.assertEqual(body['status_breakdown']['Available'], 1)

    def test_fractional_quantity_rejected(self):
        resp = self._submit(2.9)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['field'], 'quantity')
        self.assertFalse(BorrowTransaction.objects.exists())

    def test_boolean_quantity_rejected(self):
        resp = self._submit(True)
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(BorrowTransaction.objects.exists())

    def test_digit_string_quantity_accepted(self):
        resp = self._submit('2')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['transaction']['quantity'], 2)

    @override_settings(LENDING_LOW_STOCK_THRESHOLD=45)
    def test_created_unit_without_threshold_uses_setting(self):
        resp = self._post('/api/stock-units/create/', {'name': 'Servo Motor', 'quantity': 4})
        self.assertEqual(resp.json()['stock_unit']['low_stock_threshold_percent'], 45)

    def test_oversized_damage_fee_is_bad_request(self):
        borrow = _loan(self.unit, self.student, 1)
        verification = circulation.report_return(borrow, 'Ana Reyes')
        returns.resolve(verification, 'verifier', 'verify')
        record = ReturnRecord.objects.get(transaction=borrow)

        resp = self._post(f'/api/inspections/{record.pk}/', {
            'actor': 'inspector', 'inspection_status': 'major_damage', 'damage_fee': '123456789012.5',
        })
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['code'], 'invalid_request')
        resp = self.client.get('/api/inspections/')
        self.assertEqual(resp.json()['count'], 1)

    def test_transaction_history_filters(self):
        other = _student('2021-0002', first_name='Ben', last_name='Cruz')
        today = timezone.localdate()
        older = _request(self.unit, self.student, 1, borrowed_days_ago=10)
        newer = _request(self.unit, other, 1)

        resp = self.client.get('/api/transactions/', {'borrower_type': 'student', 'borrower_id': self.student.pk})
        self.assertEqual([t['transaction_id'] for t in resp.json()['transactions']], [older.transaction_id])

        resp = self.client.get('/api/transactions/', {'start_date': (today - timedelta(days=1)).isoformat()})
        self.assertEqual([t['transaction_id'] for t in resp.json()['transactions']], [newer.transaction_id])

        resp = self.client.get('/api/transactions/', {'end_date': (today - timedelta(days=5)).isoformat()})
        self.assertEqual([t['transaction_id'] for t in resp.json()['transactions']], [older.transaction_id])

        resp = self.client.get('/api/transactions/', {'status': 'pending'})
        self.assertEqual(resp.json()['count'], 2)

    def test_transaction_history_bad_filters(self):
        today = timezone.localdate()
        self.assertEqual(self.client.get('/api/transactions/', {'borrower_id': 1}).status_code, 400)
        self.assertEqual(self.client.get('/api/transactions/', {'status': 'misplaced'}).status_code, 400)
        resp = self.client.get('/api/transactions/', {
            'start_date': today.isoformat(), 'end_date': (today - timedelta(days=3)).isoformat(),
        })
        self.assertEqual(resp.status_code, 400)
        resp = self.client.get('/api/transactions/', {'borrower_type': 'student', 'borrower_id': 'abc'})
        self.assertEqual(resp.status_code, 400)

    def _verified_and_open(self):
        done = _loan(self.unit, self.student, 1)
        verified = circulation.report_return(done, 'Ana Reyes')
        returns.resolve(verified, 'verifier', 'verify')
        waiting = circulation.report_return(_loan(self.unit, self.student, 1), 'Ana Reyes')
        return verified, waiting

    def test_verification_list_filters(self):
        verified, waiting = self._verified_and_open()
        tomorrow = (timezone.localdate() + timedelta(days=1)).isoformat()

        self.assertEqual(self.client.get('/api/verifications/all/').json()['count'], 2)
        resp = self.client.get('/api/verifications/all/', {'status': 'verified'})
        self.assertEqual([v['verification_id'] for v in resp.json()['verifications']], [verified.verification_id])
        self.assertEqual(self.client.get('/api/verifications/all/', {'start_date': tomorrow}).json()['count'], 0)
        self.assertEqual(self.client.get('/api/verifications/all/', {'end_date': tomorrow}).json()['count'], 2)
        self.assertEqual(self.client.get('/api/verifications/all/', {'status': 'lost'}).status_code, 400)
        # The open list still shows only what awaits a verifier.
        resp = self.client.get('/api/verifications/')
        self.assertEqual([v['verification_id'] for v in resp.json()['verifications']], [waiting.verification_id])

    def test_verification_status_check(self):
        verified, waiting = self._verified_and_open()

        body = self.client.get('/api/verifications/status/', {'ids': verified.verification_id}).json()
        self.assertTrue(body['all_verified'])
        self.assertTrue(body['can_close'])

        ids = f'{verified.verification_id},{waiting.verification_id}'
        body = self.client.get('/api/verifications/status/', {'ids': ids}).json()
        self.assertEqual(len(body['verifications']), 2)
        self.assertFalse(body['all_verified'])
        self.assertFalse(body['any_rejected'])
        self.assertFalse(body['can_close'])

        returns.resolve(waiting, 'verifier', 'reject', 'wrong item')
        body = self.client.get('/api/verifications/status/', {'ids': ids}).json()
        self.assertTrue(body['any_rejected'])
        self.assertTrue(body['can_close'])

        self.assertEqual(self.client.get('/api/verifications/status/', {'ids': 'RV-1999-000000'}).status_code, 404)
        self.assertEqual(self.client.get('/api/verifications/status/').status_code, 400)

    def test_returned_items(self):
        verified, _ = self._verified_and_open()

        body = self.client.get('/api/returned-items/').json()
        self.assertEqual(body['count'], 1)
        item = body['returned_items'][0]
        self.assertEqual(item['transaction_id'], verified.transaction.transaction_id)
        self.assertEqual(item['days_borrowed'], 0)
        self.assertEqual(item['return_record']['inspection_status'], 'pending_inspection')

        self.assertEqual(self.client.get('/api/returned-items/', {'search': 'reyes'}).json()['count'], 1)
        self.assertEqual(self.client.get('/api/returned-items/', {'search': 'logic'}).json()['count'], 1)
        self.assertEqual(self.client.get('/api/returned-items/', {'search': 'Cruz'}).json()['count'], 0)


# ===================================================================
# 11. Management Commands
# ===================================================================

class TestManagementCommands(TestCase):
    """Category 11 -- scheduled sweeps and the ledger audit."""

    def setUp(self):
        self.student = _student()
        self.unit = _unit(total=10)

    def test_mark_overdue_command(self):
        borrow = _loan(self.unit, self.student, due_in=-1, borrowed_days_ago=4)
        out = StringIO()
        call_command('mark_overdue', '--dry-run', stdout=out)
        borrow.refresh_from_db()
        self.assertEqual(borrow.status, BorrowTransaction.BORROWED)
        self.assertIn('Would mark', out.getvalue())

        call_command('mark_overdue', stdout=StringIO())
        borrow.refresh_from_db()
        self.assertEqual(borrow.status, BorrowTransaction.OVERDUE)

    def test_send_borrower_reminders_command(self):
        _loan(self.unit, self.student, due_in=1)
        out = StringIO()
        call_command('send_borrower_reminders', stdout=out)
        self.assertIn('Sent 1 reminder(s)', out.getvalue())
        self.assertEqual(NotificationLog.objects.filter(notification_type=NotificationLog.DUE_SOON).count(), 1)

    def test_purge_archives_command(self):
        archive.archive(self.unit, 'admin', now=_utc(2020, 1, 1))
        out = StringIO()
        call_command('purge_archives', '--dry-run', stdout=out)
        self.assertTrue(StockUnit.objects.filter(pk=self.unit.pk).exists())
        call_command('purge_archives', stdout=out)
        self.assertFalse(StockUnit.objects.filter(pk=self.unit.pk).exists())

    def test_check_ledger_command(self):
        _loan(self.unit, self.student, 3)
        out = StringIO()
        call_command('check_ledger', stdout=out)
        self.assertIn('All 1 stock unit(s) balanced', out.getvalue())

        StockUnit.objects.filter(pk=self.unit.pk).update(available_quantity=9)
        with self.assertLogs('lending.ledger', level='CRITICAL'):
            with self.assertRaises(CommandError):
                call_command('check_ledger', stdout=StringIO(), stderr=StringIO())


# ===================================================================
# 12. Concurrency
# ===================================================================

class TestConcurrentApprovals(TransactionTestCase):
    """Category 12 -- approvals racing on separate threads and connections."""

    def _approve_in_thread(self, borrow, barrier, outcomes):
        try:
            barrier.wait(timeout=10)
            for _ in range(100):
                try:
                    circulation.approve(BorrowTransaction.objects.get(pk=borrow.pk), 'admin')
                    outcomes[borrow.pk] = 'approved'
                    return
                except InsufficientStock:
                    outcomes[borrow.pk] = 'insufficient'
                    return
                except InvalidStateTransition:
                    # An earlier attempt committed before the lock error surfaced.
                    outcomes[borrow.pk] = 'approved'
                    return
                except OperationalError:
                    # SQLite reports a locked table instead of waiting for the row lock.
                    time.sleep(random.uniform(0.005, 0.05))
            outcomes[borrow.pk] = 'gave up'
        except Exception as e:
            outcomes[borrow.pk] = repr(e)
        finally:
            connection.close()

    def test_two_threads_three_units_one_winner(self):
        unit = _unit(total=3, name='Oscilloscope')
        first = _request(unit, _student(), 3)
        second = _request(unit, _student('2021-0002', first_name='Ben'), 3)

        barrier = threading.Barrier(2)
        outcomes = {}
        threads = [
            threading.Thread(target=self._approve_in_thread, args=(borrow, barrier, outcomes))
            for borrow in (first, second)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(outcomes.values()), ['approved', 'insufficient'])
        unit.refresh_from_db()
        self.assertEqual(unit.available_quantity, 0)
        statuses = sorted(BorrowTransaction.objects.values_list('status', flat=True))
        self.assertEqual(statuses, [BorrowTransaction.BORROWED, BorrowTransaction.PENDING])
        self.assertTrue(ledger.check_conservation(unit).balanced)
