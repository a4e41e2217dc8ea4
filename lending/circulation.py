"""Borrow transaction lifecycle.

``TRANSITIONS`` is the complete table of legal moves. Anything not listed
raises InvalidStateTransition. Status writes are compare-and-set updates on
the status the caller locked, and each one appends a StatusHistory row.
"""

import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from . import ledger
from .borrowers import lookup_borrower
from .exceptions import (
    DuplicateVerification,
    EntityArchived,
    InsufficientStock,
    InvalidRequest,
    InvalidStateTransition,
)
from .models import BorrowTransaction, ReturnVerification, StatusHistory

logger = logging.getLogger(__name__)

PENDING = BorrowTransaction.PENDING
BORROWED = BorrowTransaction.BORROWED
OVERDUE = BorrowTransaction.OVERDUE
PENDING_RETURN = BorrowTransaction.PENDING_RETURN_VERIFICATION
RETURNED = BorrowTransaction.RETURNED
REJECTED = BorrowTransaction.REJECTED
LOST = BorrowTransaction.LOST

# Target for a rejected return: whatever the loan was before it was reported.
PREVIOUS_STATUS = 'previous'

TRANSITIONS = {
    (PENDING, 'approve'): BORROWED,
    (PENDING, 'reject'): REJECTED,
    (BORROWED, 'mark_overdue'): OVERDUE,
    (BORROWED, 'report_return'): PENDING_RETURN,
    (OVERDUE, 'report_return'): PENDING_RETURN,
    (BORROWED, 'extend'): BORROWED,
    (OVERDUE, 'extend'): BORROWED,
    (BORROWED, 'declare_lost'): LOST,
    (OVERDUE, 'declare_lost'): LOST,
    (PENDING_RETURN, 'verify_return'): RETURNED,
    (PENDING_RETURN, 'reject_return'): PREVIOUS_STATUS,
}


def allowed_actions(status):
    return sorted(action for (source, action) in TRANSITIONS if source == status)


def next_status(borrow, action):
    try:
        target = TRANSITIONS[(borrow.status, action)]
    except KeyError:
        reason = 'it is closed' if borrow.status in BorrowTransaction.TERMINAL_STATUSES else ''
        raise InvalidStateTransition(borrow.transaction_id, action, borrow.status, reason)
    if target == PREVIOUS_STATUS:
        target = borrow.status_before_return or BORROWED
    return target


def lock_transaction(borrow):
    return BorrowTransaction.objects.select_for_update().get(pk=borrow.pk)


def advance(borrow, action, actor='', remark='', **fields):
    """Move ``borrow`` along ``action`` and record the history row.

    ``borrow`` must be the row locked by the caller. Zero rows updated means
    another request changed the status first.
    """
    current = borrow.status
    target = next_status(borrow, action)
    now = timezone.now()

    updated = BorrowTransaction.objects.filter(pk=borrow.pk, status=current).update(
        status=target, updated_at=now, **fields
    )
    if not updated:
        borrow.refresh_from_db(fields=['status'])
        raise InvalidStateTransition(
            borrow.transaction_id, action, borrow.status, 'status changed by another request'
        )

    for name, value in fields.items():
        setattr(borrow, name, value)
    borrow.status = target
    borrow.updated_at = now

    StatusHistory.objects.create(
        transaction=borrow,
        action=action,
        old_status=current,
        new_status=target,
        notes=remark,
        changed_by=actor,
    )
    logger.info('%s %s: %s -> %s by %s', borrow.transaction_id, action, current, target, actor or 'system')
    return borrow


def _reload(borrow):
    """Bring the caller's instance up to date after a committed transition."""
    borrow.refresh_from_db()
    return borrow


def submit_request(borrower_type, borrower_id, stock_unit, quantity, expected_return_date,
                   borrow_date=None, purpose='', notes='', actor=''):
    """Open a pending request. No stock is reserved until approval."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidRequest('Quantity must be an integer of at least 1', quantity=quantity)
    borrow_date = borrow_date or timezone.localdate()
    if expected_return_date < borrow_date:
        raise InvalidRequest(
            'Expected return date cannot be before the borrow date',
            borrow_date=borrow_date.isoformat(),
            expected_return_date=expected_return_date.isoformat(),
        )

    borrower = lookup_borrower(borrower_type, borrower_id)

    stock_unit.refresh_from_db()
    if stock_unit.archived:
        raise EntityArchived(f'{stock_unit.name} is archived', stock_unit_id=stock_unit.pk)
    if quantity > stock_unit.available_quantity:
        raise InsufficientStock(stock_unit, quantity, stock_unit.available_quantity)

    with transaction.atomic():
        borrow = BorrowTransaction.objects.create(
            borrower_type=borrower.borrower_type,
            borrower_id=borrower.borrower_id,
            borrower_name=borrower.name,
            borrower_id_number=borrower.id_number or '',
            borrower_email=borrower.email or '',
            borrower_contact=borrower.contact or '',
            stock_unit=stock_unit,
            item_name=stock_unit.name,
            quantity=quantity,
            borrow_date=borrow_date,
            expected_return_date=expected_return_date,
            purpose=purpose,
            notes=notes,
        )
        StatusHistory.objects.create(
            transaction=borrow,
            action='submit_request',
            new_status=PENDING,
            changed_by=actor or borrower.name,
        )
    logger.info('%s requested: %s x %s for %s', borrow.transaction_id, quantity, stock_unit.name, borrower.name)
    return borrow


def approve(borrow, approver):
    """Reserve the requested quantity and move the loan to borrowed.

    On InsufficientStock nothing is written and the request stays pending.
    """
    with transaction.atomic():
        locked = lock_transaction(borrow)
        next_status(locked, 'approve')
        if locked.stock_unit is None:
            raise InvalidStateTransition(locked.transaction_id, 'approve', locked.status, 'stock unit was deleted')
        change = ledger.reserve(locked.stock_unit, locked.quantity)
        advance(
            locked, 'approve', actor=approver,
            remark=f'Reserved {locked.quantity}; stock now {change.new_available}',
            approved_by=approver, approved_at=timezone.now(),
        )
    return _reload(borrow)


def reject(borrow, approver, reason):
    if not reason:
        raise InvalidRequest('A rejection reason is required')
    with transaction.atomic():
        locked = lock_transaction(borrow)
        advance(
            locked, 'reject', actor=approver, remark=reason,
            approved_by=approver, approved_at=timezone.now(), rejection_reason=reason,
        )
    return _reload(borrow)


def mark_overdue(borrow, today=None):
    """Flag a past-due loan.

    Returns True when the loan moved to overdue and False when it already was.
    """
    today = today or timezone.localdate()
    with transaction.atomic():
        locked = lock_transaction(borrow)
        if locked.status == OVERDUE:
            return False
        next_status(locked, 'mark_overdue')
        if locked.expected_return_date >= today:
            raise InvalidStateTransition(
                locked.transaction_id, 'mark_overdue', locked.status,
                f'not due until {locked.expected_return_date.isoformat()}',
            )
        advance(locked, 'mark_overdue', remark=f'Due {locked.expected_return_date.isoformat()}')
    _reload(borrow)
    return True


def overdue_candidates(today=None):
    today = today or timezone.localdate()
    return BorrowTransaction.objects.filter(status=BORROWED, expected_return_date__lt=today)


def transaction_history(status='', borrower_type='', borrower_id=None, start_date=None, end_date=None):
    """Loans newest first, filtered by status, borrower and borrow date range."""
    borrows = BorrowTransaction.objects.all()
    if status:
        if status not in dict(BorrowTransaction.STATUS_CHOICES):
            raise InvalidRequest(f'Unknown status "{status}"', field='status')
        borrows = borrows.filter(status=status)
    if borrower_id is not None and not borrower_type:
        raise InvalidRequest('"borrower_type" is required with "borrower_id"', field='borrower_type')
    if borrower_type:
        if borrower_type not in dict(BorrowTransaction.BORROWER_TYPE_CHOICES):
            raise InvalidRequest(f'Unknown borrower type "{borrower_type}"', field='borrower_type')
        borrows = borrows.filter(borrower_type=borrower_type)
    if borrower_id is not None:
        borrows = borrows.filter(borrower_id=borrower_id)
    if start_date and end_date and start_date > end_date:
        raise InvalidRequest('"start_date" cannot be after "end_date"', field='start_date')
    if start_date:
        borrows = borrows.filter(borrow_date__gte=start_date)
    if end_date:
        borrows = borrows.filter(borrow_date__lte=end_date)
    return borrows.order_by('-created_at', '-id')


def sweep_overdue(today=None, dry_run=False):
    """Mark every past-due borrowed loan overdue. Safe to rerun."""
    today = today or timezone.localdate()
    candidates = list(overdue_candidates(today))
    if dry_run:
        return candidates

    marked = []
    for borrow in candidates:
        try:
            if mark_overdue(borrow, today):
                marked.append(borrow)
        except InvalidStateTransition as e:
            # Returned or extended since the candidate query ran.
            logger.info('Skipped %s: %s', borrow.transaction_id, e.message)
    logger.info('Overdue sweep for %s marked %s loan(s)', today.isoformat(), len(marked))
    return marked


def report_return(borrow, returned_by, notes='', return_date=None):
    """Stage a return for verification. Stock stays reserved until verified."""
    today = timezone.localdate()
    return_date = return_date or today
    if return_date > today:
        raise InvalidRequest('Return date cannot be in the future', return_date=return_date.isoformat())
    if return_date < borrow.borrow_date:
        raise InvalidRequest(
            'Return date cannot be before the borrow date',
            return_date=return_date.isoformat(),
            borrow_date=borrow.borrow_date.isoformat(),
        )
    try:
        with transaction.atomic():
            locked = lock_transaction(borrow)
            open_verification = locked.return_verifications.filter(
                verification_status=ReturnVerification.PENDING_VERIFICATION
            ).first()
            if open_verification is not None:
                raise DuplicateVerification(locked.transaction_id, open_verification.verification_id)

            previous = locked.status
            next_status(locked, 'report_return')
            verification = ReturnVerification.objects.create(
                transaction=locked,
                stock_unit=locked.stock_unit,
                borrower_type=locked.borrower_type,
                borrower_id=locked.borrower_id,
                borrower_name=locked.borrower_name,
                borrower_id_number=locked.borrower_id_number,
                borrower_email=locked.borrower_email,
                borrower_contact=locked.borrower_contact,
                item_name=locked.item_name,
                quantity_returned=locked.quantity,
                return_date=return_date,
                returned_by=returned_by,
                return_notes=notes,
            )
            advance(
                locked, 'report_return', actor=returned_by,
                remark=f'Verification {verification.verification_id} opened',
                status_before_return=previous,
            )
    except IntegrityError:
        # Lost the race on the one-open-verification constraint.
        existing = ReturnVerification.objects.filter(
            transaction_id=borrow.pk, verification_status=ReturnVerification.PENDING_VERIFICATION
        ).first()
        raise DuplicateVerification(borrow.transaction_id, existing.verification_id if existing else '')
    _reload(borrow)
    return verification


def declare_lost(borrow, actor, reason=''):
    """Close a loan as lost and write its quantity off the stock total."""
    with transaction.atomic():
        locked = lock_transaction(borrow)
        next_status(locked, 'declare_lost')
        if locked.stock_unit is not None:
            ledger.write_off(
                locked.stock_unit, locked.quantity,
                reason=f'Lost on {locked.transaction_id}' + (f': {reason}' if reason else ''),
                actor=actor, borrow=locked,
            )
        advance(locked, 'declare_lost', actor=actor, remark=reason)
    return _reload(borrow)


def extend(borrow, new_return_date, actor, reason='', today=None):
    """Push the due date out. An overdue loan becomes borrowed again."""
    today = today or timezone.localdate()
    if new_return_date <= today:
        raise InvalidRequest(
            'New return date must be after today',
            new_return_date=new_return_date.isoformat(),
        )
    with transaction.atomic():
        locked = lock_transaction(borrow)
        next_status(locked, 'extend')
        note = f'Return date extended to {new_return_date.isoformat()} by {actor}'
        if reason:
            note = f'{note}. Reason: {reason}'
        stamped = f'[{timezone.now():%Y-%m-%d %H:%M:%S}] {note}'
        advance(
            locked, 'extend', actor=actor, remark=note,
            expected_return_date=new_return_date,
            notes=f'{locked.notes}\n{stamped}' if locked.notes else stamped,
        )
    return _reload(borrow)
