"""Stock quantity ledger.

Every quantity change is a single guarded UPDATE built from ``F()``
expressions, run inside ``transaction.atomic()`` with the stock row locked.
The guard in the WHERE clause is what keeps ``available_quantity`` inside
``[0, total_quantity]`` even on backends that ignore ``select_for_update``.
"""

import logging
from collections import namedtuple

from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone

from .exceptions import (
    CapacityViolation,
    ConsistencyViolation,
    EntityArchived,
    InsufficientStock,
    InvalidRequest,
)
from .models import BorrowTransaction, StockAdjustment, StockUnit, derive_stock_status

logger = logging.getLogger(__name__)

__all__ = [
    'LedgerChange', 'LedgerAudit', 'derive_stock_status', 'stock_in', 'reserve', 'release',
    'adjust_capacity', 'write_off', 'reserved_quantity', 'check_conservation', 'check_ledger',
]

LedgerChange = namedtuple(
    'LedgerChange',
    ['stock_unit', 'old_available', 'new_available', 'old_status', 'new_status'],
)

LedgerAudit = namedtuple(
    'LedgerAudit',
    ['stock_unit', 'total_quantity', 'available_quantity', 'reserved_quantity', 'balanced'],
)


def _require_quantity(quantity, minimum=1):
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < minimum:
        raise InvalidRequest(f'Quantity must be an integer of at least {minimum}', quantity=quantity)


def _lock(stock_unit):
    return StockUnit.objects.select_for_update().get(pk=stock_unit.pk)


def _sync(stock_unit, fresh):
    """Copy ledger columns from ``fresh`` onto the caller's instance."""
    stock_unit.total_quantity = fresh.total_quantity
    stock_unit.available_quantity = fresh.available_quantity
    stock_unit.written_off_quantity = fresh.written_off_quantity
    stock_unit.updated_at = fresh.updated_at


def _change(stock_unit, old_available, old_total=None):
    if old_total is None:
        old_total = stock_unit.total_quantity
    old_status = derive_stock_status(old_available, old_total, stock_unit.effective_threshold)
    new_status = stock_unit.status
    if old_status != new_status:
        logger.info('%s stock status %s -> %s', stock_unit.display_id, old_status, new_status)
    return LedgerChange(stock_unit, old_available, stock_unit.available_quantity, old_status, new_status)


def stock_in(name, quantity, actor='', **fields):
    """Create a stock unit with ``quantity`` units all available."""
    _require_quantity(quantity, minimum=0)
    with transaction.atomic():
        unit = StockUnit.objects.create(
            name=name, total_quantity=quantity, available_quantity=quantity, **fields
        )
        StockAdjustment.objects.create(
            stock_unit=unit,
            kind=StockAdjustment.STOCK_IN,
            old_total=0,
            new_total=quantity,
            old_available=0,
            new_available=quantity,
            reason='Initial stock',
            adjusted_by=actor,
        )
    logger.info('Stocked in %s: %s x %s', unit.display_id, quantity, name)
    return unit


def reserve(stock_unit, quantity):
    """Take ``quantity`` out of the available pool or raise InsufficientStock."""
    _require_quantity(quantity)
    with transaction.atomic():
        unit = _lock(stock_unit)
        if unit.archived:
            raise EntityArchived(f'{unit.name} is archived', stock_unit_id=unit.pk)
        updated = StockUnit.objects.filter(pk=unit.pk, available_quantity__gte=quantity).update(
            available_quantity=F('available_quantity') - quantity,
            updated_at=timezone.now(),
        )
        unit.refresh_from_db()
        if not updated:
            raise InsufficientStock(unit, quantity, unit.available_quantity)
    _sync(stock_unit, unit)
    return _change(unit, unit.available_quantity + quantity)


def release(stock_unit, quantity):
    """Return ``quantity`` to the available pool.

    Releasing more than is reserved means a reservation went missing
    somewhere upstream, so it raises ConsistencyViolation instead of clamping.
    """
    _require_quantity(quantity)
    with transaction.atomic():
        unit = _lock(stock_unit)
        updated = StockUnit.objects.filter(
            pk=unit.pk, available_quantity__lte=F('total_quantity') - quantity
        ).update(
            available_quantity=F('available_quantity') + quantity,
            updated_at=timezone.now(),
        )
        unit.refresh_from_db()
        if not updated:
            logger.critical(
                'Release of %s would push %s above total (%s/%s available)',
                quantity, unit.display_id, unit.available_quantity, unit.total_quantity,
            )
            raise ConsistencyViolation(
                f'Releasing {quantity} would exceed total quantity of {unit.name}',
                stock_unit_id=unit.pk,
                requested=quantity,
                available=unit.available_quantity,
                total=unit.total_quantity,
            )
    _sync(stock_unit, unit)
    return _change(unit, unit.available_quantity - quantity)


def adjust_capacity(stock_unit, new_total, reason, actor=''):
    """Set total_quantity, moving available_quantity by the same delta."""
    _require_quantity(new_total, minimum=0)
    if not reason:
        raise InvalidRequest('A reason is required for capacity changes')

    with transaction.atomic():
        unit = _lock(stock_unit)
        if unit.archived:
            raise EntityArchived(f'{unit.name} is archived', stock_unit_id=unit.pk)
        old_total, old_available = unit.total_quantity, unit.available_quantity
        delta = new_total - old_total

        updated = StockUnit.objects.filter(
            pk=unit.pk,
            total_quantity=old_total,
            available_quantity__gte=max(-delta, 0),
        ).update(
            total_quantity=new_total,
            available_quantity=F('available_quantity') + delta,
            updated_at=timezone.now(),
        )
        unit.refresh_from_db()
        if not updated:
            raise CapacityViolation(
                f'Cannot set total of {unit.name} to {new_total}: '
                f'{unit.total_quantity - unit.available_quantity} units are on loan',
                stock_unit_id=unit.pk,
                requested_total=new_total,
                total=unit.total_quantity,
                available=unit.available_quantity,
            )

        StockAdjustment.objects.create(
            stock_unit=unit,
            kind=StockAdjustment.CAPACITY,
            old_total=old_total,
            new_total=unit.total_quantity,
            old_available=old_available,
            new_available=unit.available_quantity,
            reason=reason,
            adjusted_by=actor,
        )
    logger.info('Capacity of %s changed %s -> %s (%s)', unit.display_id, old_total, new_total, reason)
    _sync(stock_unit, unit)
    return _change(unit, old_available, old_total)


def write_off(stock_unit, quantity, reason, actor='', borrow=None):
    """Remove reserved units from the total permanently.

    Used for lost loans: the units were already out of the available pool,
    so only the total shrinks.
    """
    _require_quantity(quantity)
    with transaction.atomic():
        unit = _lock(stock_unit)
        old_total, old_available = unit.total_quantity, unit.available_quantity
        updated = StockUnit.objects.filter(
            pk=unit.pk, available_quantity__lte=F('total_quantity') - quantity
        ).update(
            total_quantity=F('total_quantity') - quantity,
            written_off_quantity=F('written_off_quantity') + quantity,
            updated_at=timezone.now(),
        )
        unit.refresh_from_db()
        if not updated:
            logger.critical(
                'Write-off of %s from %s exceeds reserved quantity (%s/%s available)',
                quantity, unit.display_id, unit.available_quantity, unit.total_quantity,
            )
            raise ConsistencyViolation(
                f'Cannot write off {quantity} of {unit.name}: fewer units are on loan',
                stock_unit_id=unit.pk,
                requested=quantity,
                available=unit.available_quantity,
                total=unit.total_quantity,
            )

        StockAdjustment.objects.create(
            stock_unit=unit,
            transaction=borrow,
            kind=StockAdjustment.WRITE_OFF,
            old_total=old_total,
            new_total=unit.total_quantity,
            old_available=old_available,
            new_available=unit.available_quantity,
            reason=reason,
            adjusted_by=actor,
        )
    logger.info('Wrote off %s of %s: %s', quantity, unit.display_id, reason)
    _sync(stock_unit, unit)
    return _change(unit, old_available, old_total)


def reserved_quantity(stock_unit):
    total = BorrowTransaction.objects.filter(
        stock_unit=stock_unit, status__in=BorrowTransaction.RESERVING_STATUSES
    ).aggregate(total=Sum('quantity'))['total']
    return total or 0


def check_conservation(stock_unit):
    """available + reserved must equal total. Write-offs already left the total."""
    stock_unit.refresh_from_db()
    reserved = reserved_quantity(stock_unit)
    balanced = (
        0 <= stock_unit.available_quantity <= stock_unit.total_quantity
        and stock_unit.available_quantity + reserved == stock_unit.total_quantity
    )
    if not balanced:
        logger.critical(
            'Ledger imbalance on %s: total=%s available=%s reserved=%s',
            stock_unit.display_id, stock_unit.total_quantity, stock_unit.available_quantity, reserved,
        )
    return LedgerAudit(stock_unit, stock_unit.total_quantity, stock_unit.available_quantity, reserved, balanced)


def check_ledger():
    return [check_conservation(unit) for unit in StockUnit.objects.all()]
