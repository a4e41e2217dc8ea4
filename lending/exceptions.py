"""Business-rule failures raised by the lending engine.

Every error carries a machine ``code``, the HTTP status the JSON API should
answer with, and a ``context`` dict naming the entity, the attempted
action and the current state so callers can render a precise message.
"""


class CirculationError(Exception):
    code = 'circulation_error'
    status_code = 409

    def __init__(self, message, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def as_dict(self):
        payload = {'success': False, 'error': self.message, 'code': self.code}
        payload.update(self.context)
        return payload


class InvalidRequest(CirculationError):
    code = 'invalid_request'
    status_code = 400


class BorrowerNotFound(CirculationError):
    code = 'borrower_not_found'
    status_code = 404


class InsufficientStock(CirculationError):
    code = 'insufficient_stock'

    def __init__(self, stock_unit, requested, available):
        super().__init__(
            f'Only {available} of requested {requested} available for {stock_unit.name}',
            stock_unit_id=stock_unit.pk,
            requested=requested,
            available=available,
        )


class CapacityViolation(CirculationError):
    code = 'capacity_violation'


class InvalidStateTransition(CirculationError):
    code = 'invalid_state_transition'

    def __init__(self, entity_id, action, current_state, reason=''):
        message = f'Cannot {action} {entity_id} while it is {current_state}'
        if reason:
            message = f'{message}: {reason}'
        super().__init__(
            message,
            entity_id=entity_id,
            action=action,
            current_state=current_state,
        )


class DuplicateVerification(CirculationError):
    code = 'duplicate_verification'

    def __init__(self, transaction_id, verification_id):
        super().__init__(
            f'Return for {transaction_id} is already awaiting verification ({verification_id})',
            transaction_id=transaction_id,
            verification_id=verification_id,
        )


class AlreadyInspected(CirculationError):
    code = 'already_inspected'

    def __init__(self, record_id, inspection_status):
        super().__init__(
            f'Return record {record_id} was already inspected as {inspection_status}',
            record_id=record_id,
            inspection_status=inspection_status,
        )


class EntityArchived(CirculationError):
    code = 'entity_archived'


class ArchiveBlocked(CirculationError):
    code = 'archive_blocked'


class AlreadyArchived(ArchiveBlocked):
    code = 'already_archived'


class NotArchived(CirculationError):
    code = 'not_archived'


class ConsistencyViolation(CirculationError):
    """A reservation/release mismatch. Never recovered from silently."""

    code = 'consistency_violation'
    status_code = 500
