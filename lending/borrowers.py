"""Borrower lookup: resolves (borrower_type, borrower_id) to display fields."""

from collections import namedtuple

from .exceptions import BorrowerNotFound, InvalidRequest
from .models import BorrowTransaction, Employee, Student

BorrowerSnapshot = namedtuple(
    'BorrowerSnapshot',
    ['borrower_type', 'borrower_id', 'name', 'id_number', 'email', 'contact'],
)

BORROWER_MODELS = {
    BorrowTransaction.BORROWER_STUDENT: Student,
    BorrowTransaction.BORROWER_EMPLOYEE: Employee,
}


def lookup_borrower(borrower_type, borrower_id):
    """Snapshot the active borrower record, or raise BorrowerNotFound."""
    model = BORROWER_MODELS.get(borrower_type)
    if model is None:
        raise InvalidRequest(
            f'Unknown borrower type "{borrower_type}"',
            borrower_type=borrower_type,
        )

    record = model.objects.active().filter(pk=borrower_id).first()
    if record is None:
        raise BorrowerNotFound(
            f'No active {borrower_type} with id {borrower_id}',
            borrower_type=borrower_type,
            borrower_id=borrower_id,
        )

    return BorrowerSnapshot(
        borrower_type=borrower_type,
        borrower_id=record.pk,
        name=record.full_name,
        id_number=record.id_number,
        email=record.email,
        contact=record.contact_number,
    )
