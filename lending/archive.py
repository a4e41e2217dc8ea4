"""Archive, restore and purge for every archivable record type.

The same three operations serve stock units, students and employees; the
registry below maps an entity type name to its model and display label.
"""

import calendar
import logging
from collections import namedtuple

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .exceptions import AlreadyArchived, ArchiveBlocked, InvalidRequest, NotArchived
from .models import ActivityLog, BorrowTransaction, Employee, StockUnit, Student

logger = logging.getLogger(__name__)

ArchiveType = namedtuple('ArchiveType', ['model', 'label'])

ARCHIVE_TYPES = {
    'stock_unit': ArchiveType(StockUnit, lambda unit: unit.name),
    'student': ArchiveType(Student, lambda student: f'{student.full_name} ({student.student_id})'),
    'employee': ArchiveType(Employee, lambda employee: f'{employee.full_name} ({employee.emp_id})'),
}

ArchivedEntry = namedtuple(
    'ArchivedEntry', ['entity_type', 'entity', 'label', 'archived_at', 'auto_delete_at', 'days_remaining']
)


def add_months(value, months):
    """Calendar-month arithmetic; day-of-month clamps to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def entity_type_of(entity):
    for name, archive_type in ARCHIVE_TYPES.items():
        if isinstance(entity, archive_type.model):
            return name
    raise InvalidRequest(f'{type(entity).__name__} records cannot be archived')


def get_archive_type(entity_type):
    try:
        return ARCHIVE_TYPES[entity_type]
    except KeyError:
        raise InvalidRequest(f'Unknown archive type "{entity_type}"', entity_type=entity_type)


def _guard_archive(entity):
    if isinstance(entity, StockUnit):
        open_loans = BorrowTransaction.objects.filter(
            stock_unit=entity, status__in=BorrowTransaction.RESERVING_STATUSES
        ).count()
        if open_loans:
            raise ArchiveBlocked(
                f'{entity.name} has {open_loans} active loan(s); close them before archiving',
                entity_id=entity.pk,
                active_loans=open_loans,
            )


def _log(activity_type, entity_type, entity, actor, **details):
    ActivityLog.objects.create(
        activity_type=activity_type,
        entity_type=entity_type,
        entity_id=entity.pk,
        entity_label=get_archive_type(entity_type).label(entity),
        actor=actor,
        details=details,
    )


def archive(entity, actor, retention_months=None, now=None):
    """Soft-delete ``entity`` and schedule its purge."""
    entity_type = entity_type_of(entity)
    model = type(entity)
    if retention_months is None:
        retention_months = settings.LENDING_ARCHIVE_RETENTION_MONTHS
    if retention_months < 1:
        raise InvalidRequest('Retention must be at least one month', retention_months=retention_months)
    now = now or timezone.now()
    auto_delete_at = add_months(now, retention_months)

    with transaction.atomic():
        locked = model.objects.select_for_update().get(pk=entity.pk)
        if locked.archived:
            raise AlreadyArchived(f'{entity_type} {locked.pk} is already archived', entity_id=locked.pk)
        _guard_archive(locked)

        model.objects.filter(pk=locked.pk, archived=False).update(
            archived=True, archived_at=now, auto_delete_at=auto_delete_at, archived_by=actor
        )
        _log(ActivityLog.ARCHIVED, entity_type, locked, actor, auto_delete_at=auto_delete_at.isoformat())

    logger.info('Archived %s %s by %s; purge after %s', entity_type, entity.pk, actor, auto_delete_at.isoformat())
    entity.refresh_from_db()
    return entity


def restore(entity, actor):
    """Bring an archived record back. Both archive dates clear together."""
    entity_type = entity_type_of(entity)
    model = type(entity)

    with transaction.atomic():
        updated = model.objects.filter(pk=entity.pk, archived=True).update(
            archived=False, archived_at=None, auto_delete_at=None, archived_by=''
        )
        if not updated:
            raise NotArchived(f'{entity_type} {entity.pk} is not archived', entity_id=entity.pk)
        _log(ActivityLog.RESTORED, entity_type, entity, actor)

    logger.info('Restored %s %s by %s', entity_type, entity.pk, actor)
    entity.refresh_from_db()
    return entity


def sweep_expired(now=None, dry_run=False):
    """Permanently delete archived records whose retention has run out.

    Returns the purged entries. Rows already deleted by a concurrent sweep
    are skipped, so running it twice purges nothing the second time.
    """
    now = now or timezone.now()
    purged = []
    for entity_type, archive_type in ARCHIVE_TYPES.items():
        for entity in archive_type.model.objects.expired(now):
            entry = ArchivedEntry(
                entity_type, entity, archive_type.label(entity),
                entity.archived_at, entity.auto_delete_at, 0,
            )
            if dry_run:
                purged.append(entry)
                continue

            with transaction.atomic():
                deleted, _ = archive_type.model.objects.expired(now).filter(pk=entity.pk).delete()
                if not deleted:
                    continue
                ActivityLog.objects.create(
                    activity_type=ActivityLog.PURGED,
                    entity_type=entity_type,
                    entity_id=entity.pk,
                    entity_label=entry.label,
                    actor='system',
                    details={
                        'archived_at': entity.archived_at.isoformat(),
                        'archived_by': entity.archived_by,
                    },
                )
            purged.append(entry)
            logger.info('Purged %s %s (%s)', entity_type, entity.pk, entry.label)
    return purged


def archived_entries(entity_type, now=None):
    """Archived records of one type with days left before the purge."""
    now = now or timezone.now()
    archive_type = get_archive_type(entity_type)
    return [
        ArchivedEntry(
            entity_type, entity, archive_type.label(entity),
            entity.archived_at, entity.auto_delete_at, entity.days_until_auto_delete(now),
        )
        for entity in archive_type.model.objects.archived().order_by('auto_delete_at')
    ]
