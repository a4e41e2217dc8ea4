"""Time-driven reminder sweeps.

A reminder milestone is claimed by stamping its ``*_notification_sent_at``
column with a compare-and-set UPDATE. Only the sweep whose UPDATE claimed
the row emits the event, so overlapping sweeps never send a milestone twice.
Events are delivered after the claim, outside any lock.
"""

import logging
from collections import namedtuple
from datetime import timedelta

from django.db.models import Q
from django.utils import timezone

from . import archive, notifications
from .models import BorrowTransaction, NotificationLog

logger = logging.getLogger(__name__)

ReminderEvent = namedtuple('ReminderEvent', ['event_type', 'transaction', 'payload'])

ACTIVE_STATUSES = (BorrowTransaction.BORROWED, BorrowTransaction.OVERDUE)

# event type -> (stamp column, due date lookup relative to today)
MILESTONES = [
    (NotificationLog.DUE_SOON, 'due_soon_notification_sent_at', lambda today: Q(expected_return_date=today + timedelta(days=1))),
    (NotificationLog.DUE_TODAY, 'due_today_notification_sent_at', lambda today: Q(expected_return_date=today)),
    (NotificationLog.OVERDUE, 'overdue_notification_sent_at', lambda today: Q(expected_return_date__lt=today)),
]


def _message(event_type, borrow, today):
    due = borrow.expected_return_date.isoformat()
    if event_type == NotificationLog.DUE_SOON:
        return f'{borrow.item_name} (x{borrow.quantity}) is due tomorrow, {due}'
    if event_type == NotificationLog.DUE_TODAY:
        return f'{borrow.item_name} (x{borrow.quantity}) is due today'
    return (f'{borrow.item_name} (x{borrow.quantity}) was due {due} '
            f'and is {borrow.days_overdue(today)} day(s) overdue')


def _payload(event_type, borrow, today):
    return {
        'transaction_id': borrow.transaction_id,
        'item_name': borrow.item_name,
        'quantity': borrow.quantity,
        'expected_return_date': borrow.expected_return_date.isoformat(),
        'days_overdue': borrow.days_overdue(today),
        'message': _message(event_type, borrow, today),
    }


def sweep_due_reminders(now=None, dry_run=False):
    """Emit due-soon, due-today and overdue reminders, each at most once per loan."""
    now = now or timezone.now()
    today = timezone.localdate(now)
    events = []

    for event_type, stamp_field, due_filter in MILESTONES:
        candidates = BorrowTransaction.objects.filter(
            due_filter(today), status__in=ACTIVE_STATUSES, **{f'{stamp_field}__isnull': True}
        )
        for borrow in candidates:
            if not dry_run:
                claimed = BorrowTransaction.objects.filter(
                    pk=borrow.pk, status__in=ACTIVE_STATUSES, **{f'{stamp_field}__isnull': True}
                ).update(**{stamp_field: now})
                if not claimed:
                    continue
                setattr(borrow, stamp_field, now)
            events.append(ReminderEvent(event_type, borrow, _payload(event_type, borrow, today)))

    if not dry_run:
        for event in events:
            notifications.deliver(
                event.transaction.borrower_contact_info(), event.event_type, event.payload,
                transaction=event.transaction,
            )
    logger.info('Reminder sweep at %s: %s event(s)%s', now.isoformat(), len(events), ' (dry run)' if dry_run else '')
    return events


def overdue_summary(today=None):
    today = today or timezone.localdate()
    loans = list(
        BorrowTransaction.objects.filter(status__in=ACTIVE_STATUSES, expected_return_date__lt=today)
        .order_by('expected_return_date')
    )
    if not loans:
        return None
    days = [loan.days_overdue(today) for loan in loans]
    return {
        'date': today.isoformat(),
        'count': len(loans),
        'total_quantity': sum(loan.quantity for loan in loans),
        'average_days_overdue': round(sum(days) / len(days), 1),
        'loans': [
            {
                'transaction_id': loan.transaction_id,
                'borrower': loan.borrower_name,
                'item_name': loan.item_name,
                'quantity': loan.quantity,
                'days_overdue': loan.days_overdue(today),
            }
            for loan in loans
        ],
    }


def send_overdue_digest(today=None, dry_run=False):
    """One operator-facing summary of every overdue loan. Returns the summary."""
    summary = overdue_summary(today)
    if summary is None or dry_run:
        return summary
    message = (f'{summary["count"]} overdue loan(s), {summary["total_quantity"]} unit(s), '
               f'average {summary["average_days_overdue"]} day(s) late')
    notifications.deliver(
        notifications.operator_contact(), NotificationLog.OVERDUE_DIGEST, summary, message=message
    )
    return summary


def sweep_archive_expirations(now=None, dry_run=False):
    """Purge expired archives and notify the operator of each deletion."""
    purged = archive.sweep_expired(now=now, dry_run=dry_run)
    if dry_run:
        return purged
    for entry in purged:
        notifications.deliver(
            notifications.operator_contact(),
            NotificationLog.AUTO_DELETE,
            {
                'entity_type': entry.entity_type,
                'entity_id': entry.entity.pk,
                'label': entry.label,
                'archived_at': entry.archived_at.isoformat(),
                'auto_delete_at': entry.auto_delete_at.isoformat(),
            },
            message=f'Archived {entry.entity_type.replace("_", " ")} "{entry.label}" was permanently deleted',
        )
    return purged
