"""Return verification and post-return inspection."""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from . import ledger
from .circulation import advance, lock_transaction
from .exceptions import AlreadyInspected, InvalidRequest, InvalidStateTransition
from .models import BorrowTransaction, ReturnRecord, ReturnVerification

logger = logging.getLogger(__name__)

VERIFY = 'verify'
REJECT = 'reject'
DECISIONS = (VERIFY, REJECT)

# ReturnRecord.damage_fee is DecimalField(max_digits=10, decimal_places=2).
CENT = Decimal('0.01')
MAX_DAMAGE_FEE = Decimal('99999999.99')


def open_verifications():
    return ReturnVerification.objects.filter(
        verification_status=ReturnVerification.PENDING_VERIFICATION
    ).select_related('transaction', 'stock_unit')


def verifications(status='', start_date=None, end_date=None):
    """Every verification, newest first; ``status`` and the dates narrow it down."""
    queryset = ReturnVerification.objects.select_related('transaction', 'stock_unit')
    if status:
        if status not in dict(ReturnVerification.VERIFICATION_STATUS_CHOICES):
            raise InvalidRequest(f'Unknown verification status "{status}"', field='status')
        queryset = queryset.filter(verification_status=status)
    if start_date:
        queryset = queryset.filter(created_at__date__gte=start_date)
    if end_date:
        queryset = queryset.filter(created_at__date__lte=end_date)
    return queryset.order_by('-created_at', '-id')


def verification_status(verification_ids):
    """Borrower-side polling of submitted returns.

    ``can_close`` is true once every verification is verified or any of them
    was rejected, i.e. when the borrower has a final answer.
    """
    found = list(ReturnVerification.objects.filter(verification_id__in=verification_ids))
    if not found:
        raise InvalidRequest('No matching verifications', verification_ids=list(verification_ids))
    all_verified = all(v.verification_status == ReturnVerification.VERIFIED for v in found)
    any_rejected = any(v.verification_status == ReturnVerification.REJECTED for v in found)
    return {
        'verifications': found,
        'all_verified': all_verified,
        'any_rejected': any_rejected,
        'can_close': all_verified or any_rejected,
    }


def returned_loans(search=''):
    """Closed-by-return loans, latest return first, with their return record.

    ``search`` matches the borrower name or id number and the item name.
    """
    borrows = BorrowTransaction.objects.filter(status=BorrowTransaction.RETURNED)
    if search:
        borrows = borrows.filter(
            Q(borrower_name__icontains=search)
            | Q(borrower_id_number__icontains=search)
            | Q(item_name__icontains=search)
        )
    borrows = borrows.prefetch_related('return_records').order_by('-actual_return_date', '-id')
    return [(borrow, next(iter(borrow.return_records.all()), None)) for borrow in borrows]


def pending_inspections():
    return ReturnRecord.objects.filter(
        inspection_status=ReturnRecord.PENDING_INSPECTION
    ).select_related('transaction', 'verification')


def resolve(verification, verifier, decision, notes=''):
    """Settle an open verification.

    ``verify`` releases the stock, closes the loan and opens a ReturnRecord,
    all in one database transaction. ``reject`` sends the loan back to the
    status it had before the return was reported.
    """
    if decision not in DECISIONS:
        raise InvalidRequest(f'Decision must be one of {", ".join(DECISIONS)}', decision=decision)
    if decision == REJECT and not notes:
        raise InvalidRequest('A reason is required to reject a return')

    with transaction.atomic():
        locked = ReturnVerification.objects.select_for_update().get(pk=verification.pk)
        now = timezone.now()
        claimed = ReturnVerification.objects.filter(
            pk=locked.pk, verification_status=ReturnVerification.PENDING_VERIFICATION
        ).update(
            verification_status=ReturnVerification.VERIFIED if decision == VERIFY else ReturnVerification.REJECTED,
            verified_by=verifier,
            verified_at=now,
            verification_notes=notes if decision == VERIFY else '',
            rejection_reason=notes if decision == REJECT else '',
        )
        if not claimed:
            locked.refresh_from_db()
            raise InvalidStateTransition(
                locked.verification_id, decision, locked.verification_status, 'verification is already resolved'
            )

        borrow = lock_transaction(locked.transaction)
        if decision == VERIFY:
            if locked.stock_unit is not None:
                ledger.release(locked.stock_unit, locked.quantity_returned)
            advance(
                borrow, 'verify_return', actor=verifier,
                remark=f'Verified by {verifier} ({locked.verification_id})',
                actual_return_date=locked.return_date,
            )
            ReturnRecord.objects.create(
                verification=locked,
                transaction=borrow,
                return_date=locked.return_date,
                received_by=verifier,
                return_notes=locked.return_notes,
            )
        else:
            advance(
                borrow, 'reject_return', actor=verifier,
                remark=f'Return {locked.verification_id} rejected: {notes}',
            )

    logger.info('%s %s by %s', locked.verification_id, 'verified' if decision == VERIFY else 'rejected', verifier)
    verification.refresh_from_db()
    return verification


def inspect(record, inspector, inspection_status, damage_fee=0, notes=''):
    """Record the returned item's condition. Allowed exactly once per record."""
    if inspection_status not in ReturnRecord.CONDITION_BY_INSPECTION:
        raise InvalidRequest(
            f'Unknown inspection status "{inspection_status}"', inspection_status=inspection_status
        )
    try:
        fee = Decimal(str(damage_fee or 0))
    except InvalidOperation:
        raise InvalidRequest('Damage fee must be a number', damage_fee=str(damage_fee))
    if not fee.is_finite() or fee < 0:
        raise InvalidRequest('Damage fee must be a non-negative amount', damage_fee=str(damage_fee))
    # Bound first: quantize() raises on values too large for the context.
    if fee > MAX_DAMAGE_FEE:
        raise InvalidRequest(f'Damage fee cannot exceed {MAX_DAMAGE_FEE}', damage_fee=str(damage_fee))
    fee = fee.quantize(CENT, rounding=ROUND_HALF_UP)
    if fee > MAX_DAMAGE_FEE:
        raise InvalidRequest(f'Damage fee cannot exceed {MAX_DAMAGE_FEE}', damage_fee=str(damage_fee))

    updated = ReturnRecord.objects.filter(
        pk=record.pk, inspection_status=ReturnRecord.PENDING_INSPECTION
    ).update(
        inspection_status=inspection_status,
        condition=ReturnRecord.CONDITION_BY_INSPECTION[inspection_status],
        damage_fee=fee,
        inspected_by=inspector,
        inspected_at=timezone.now(),
        inspection_notes=notes,
    )
    record.refresh_from_db()
    if not updated:
        raise AlreadyInspected(record.pk, record.inspection_status)

    logger.info('Return record %s inspected as %s (fee %s) by %s', record.pk, inspection_status, fee, inspector)
    return record
