from functools import wraps
import json

from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from . import archive, circulation, ledger, reminders, returns
from .exceptions import CirculationError, InvalidRequest
from .models import (
    STOCK_STATUS_CHOICES,
    BorrowTransaction,
    ReturnRecord,
    ReturnVerification,
    StockUnit,
)


# ---- Request helpers ----

def json_command(view):
    """POST-only JSON endpoint; business errors become the JSON error envelope."""
    @csrf_exempt
    @require_http_methods(["POST"])
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            data = json.loads(request.body or b'{}')
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JsonResponse({'success': False, 'error': 'Invalid JSON body'}, status=400)
        if not isinstance(data, dict):
            return JsonResponse({'success': False, 'error': 'JSON body must be an object'}, status=400)

        try:
            return view(request, data, *args, **kwargs)
        except CirculationError as e:
            return JsonResponse(e.as_dict(), status=e.status_code)
    return wrapper


def _required(data, key):
    value = data.get(key)
    if value in (None, ''):
        raise InvalidRequest(f'"{key}" is required', field=key)
    return value


def _int(data, key, default=None):
    value = data.get(key, default)
    if value is None:
        raise InvalidRequest(f'"{key}" is required', field=key)
    # int('2.9') fails but int(2.9) truncates, and bool is an int subclass.
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise InvalidRequest(f'"{key}" must be a whole number', field=key)


def _date(data, key, required=True):
    value = data.get(key)
    if not value:
        if required:
            raise InvalidRequest(f'"{key}" is required', field=key)
        return None
    try:
        parsed = parse_date(value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        raise InvalidRequest(f'"{key}" must be a date (YYYY-MM-DD)', field=key)
    return parsed


def _iso(value):
    return value.isoformat() if value else None


# ---- Serializers ----

def _stock_unit_json(unit):
    return {
        'id': unit.id,
        'display_id': unit.display_id,
        'name': unit.name,
        'category': unit.category,
        'kind': unit.kind,
        'kind_display': dict(StockUnit.KIND_SUGGESTIONS).get(unit.kind, unit.kind),
        'location': unit.location,
        'total_quantity': unit.total_quantity,
        'available_quantity': unit.available_quantity,
        'written_off_quantity': unit.written_off_quantity,
        'low_stock_threshold_percent': unit.effective_threshold,
        'status': unit.status,
        'status_display': unit.get_status_display(),
        'archived': unit.archived,
    }


def _transaction_json(borrow, today=None):
    return {
        'transaction_id': borrow.transaction_id,
        'borrower_type': borrow.borrower_type,
        'borrower_id': borrow.borrower_id,
        'borrower': borrow.borrower_contact_info(),
        'stock_unit_id': borrow.stock_unit_id,
        'item_name': borrow.item_name,
        'quantity': borrow.quantity,
        'borrow_date': _iso(borrow.borrow_date),
        'expected_return_date': _iso(borrow.expected_return_date),
        'actual_return_date': _iso(borrow.actual_return_date),
        'purpose': borrow.purpose,
        'notes': borrow.notes,
        'status': borrow.status,
        'status_display': borrow.get_status_display(),
        'allowed_actions': circulation.allowed_actions(borrow.status),
        'is_terminal': borrow.is_terminal,
        'approved_by': borrow.approved_by,
        'approved_at': _iso(borrow.approved_at),
        'rejection_reason': borrow.rejection_reason,
        'days_overdue': borrow.days_overdue(today),
    }


def _verification_json(verification):
    return {
        'verification_id': verification.verification_id,
        'transaction_id': verification.transaction.transaction_id,
        'stock_unit_id': verification.stock_unit_id,
        'borrower_name': verification.borrower_name,
        'item_name': verification.item_name,
        'quantity_returned': verification.quantity_returned,
        'return_date': _iso(verification.return_date),
        'returned_by': verification.returned_by,
        'return_notes': verification.return_notes,
        'verification_status': verification.verification_status,
        'is_pending': verification.is_pending,
        'verified_by': verification.verified_by,
        'verified_at': _iso(verification.verified_at),
        'rejection_reason': verification.rejection_reason,
    }


def _return_record_json(record):
    return {
        'id': record.id,
        'verification_id': record.verification.verification_id,
        'transaction_id': record.transaction.transaction_id,
        'return_date': _iso(record.return_date),
        'days_late': record.days_late,
        'received_by': record.received_by,
        'condition': record.condition,
        'inspection_status': record.inspection_status,
        'is_inspected': record.is_inspected,
        'damage_fee': str(record.damage_fee),
        'inspected_by': record.inspected_by,
        'inspected_at': _iso(record.inspected_at),
        'inspection_notes': record.inspection_notes,
    }


# ---- Stock units ----

@json_command
def create_stock_unit(request, data):
    """Stock-in: create a unit with its full quantity available"""
    fields = {key: data[key] for key in ('category', 'kind', 'description', 'location') if data.get(key)}
    if data.get('low_stock_threshold_percent') is not None:
        threshold = _int(data, 'low_stock_threshold_percent')
        if not 0 <= threshold <= 100:
            raise InvalidRequest('Threshold must be between 0 and 100', field='low_stock_threshold_percent')
        fields['low_stock_threshold_percent'] = threshold
    unit = ledger.stock_in(
        _required(data, 'name'), _int(data, 'quantity'), actor=data.get('actor', ''), **fields
    )
    return JsonResponse({'success': True, 'stock_unit': _stock_unit_json(unit)}, status=201)


@json_command
def adjust_capacity(request, data, unit_id):
    unit = get_object_or_404(StockUnit, id=unit_id)
    change = ledger.adjust_capacity(
        unit, _int(data, 'total_quantity'), data.get('reason', ''), actor=data.get('actor', '')
    )
    return JsonResponse({
        'success': True,
        'stock_unit': _stock_unit_json(unit),
        'old_status': change.old_status,
        'new_status': change.new_status,
    })


def stock_unit_list(request):
    """Active stock units with their derived status"""
    units = StockUnit.objects.active()
    status = request.GET.get('status', '')
    data = [_stock_unit_json(unit) for unit in units]
    if status:
        data = [unit for unit in data if unit['status'] == status]
    return JsonResponse({'stock_units': data, 'count': len(data)})


def stock_unit_detail(request, unit_id):
    unit = get_object_or_404(StockUnit, id=unit_id)
    return JsonResponse({
        'stock_unit': _stock_unit_json(unit),
        'reserved_quantity': ledger.reserved_quantity(unit),
    })


# ---- Borrow transactions ----

@json_command
def submit_request(request, data):
    unit = get_object_or_404(StockUnit, id=_int(data, 'stock_unit_id'))
    borrow = circulation.submit_request(
        _required(data, 'borrower_type'),
        _int(data, 'borrower_id'),
        unit,
        _int(data, 'quantity'),
        expected_return_date=_date(data, 'expected_return_date'),
        borrow_date=_date(data, 'borrow_date', required=False),
        purpose=data.get('purpose', ''),
        notes=data.get('notes', ''),
        actor=data.get('actor', ''),
    )
    return JsonResponse({'success': True, 'transaction': _transaction_json(borrow)}, status=201)


@json_command
def approve_request(request, data, transaction_id):
    borrow = get_object_or_404(BorrowTransaction, transaction_id=transaction_id)
    circulation.approve(borrow, _required(data, 'actor'))
    return JsonResponse({
        'success': True,
        'transaction': _transaction_json(borrow),
        'stock_unit': _stock_unit_json(borrow.stock_unit) if borrow.stock_unit else None,
    })


@json_command
def reject_request(request, data, transaction_id):
    borrow = get_object_or_404(BorrowTransaction, transaction_id=transaction_id)
    circulation.reject(borrow, _required(data, 'actor'), data.get('reason', ''))
    return JsonResponse({'success': True, 'transaction': _transaction_json(borrow)})


@json_command
def report_return(request, data, transaction_id):
    borrow = get_object_or_404(BorrowTransaction, transaction_id=transaction_id)
    verification = circulation.report_return(
        borrow,
        _required(data, 'returned_by'),
        notes=data.get('notes', ''),
        return_date=_date(data, 'return_date', required=False),
    )
    return JsonResponse({
        'success': True,
        'transaction': _transaction_json(borrow),
        'verification': _verification_json(verification),
    }, status=201)


@json_command
def declare_lost(request, data, transaction_id):
    borrow = get_object_or_404(BorrowTransaction, transaction_id=transaction_id)
    circulation.declare_lost(borrow, _required(data, 'actor'), data.get('reason', ''))
    return JsonResponse({
        'success': True,
        'transaction': _transaction_json(borrow),
        'stock_unit': _stock_unit_json(borrow.stock_unit) if borrow.stock_unit else None,
    })


@json_command
def extend_loan(request, data, transaction_id):
    borrow = get_object_or_404(BorrowTransaction, transaction_id=transaction_id)
    circulation.extend(
        borrow, _date(data, 'new_return_date'), _required(data, 'actor'), data.get('reason', '')
    )
    return JsonResponse({'success': True, 'transaction': _transaction_json(borrow)})


def transaction_list(request):
    """Transaction history.

    Filters: ?status=, ?borrower_type= with ?borrower_id=, and a borrow date
    range via ?start_date= / ?end_date= (inclusive).
    """
    try:
        borrows = circulation.transaction_history(
            status=request.GET.get('status', ''),
            borrower_type=request.GET.get('borrower_type', ''),
            borrower_id=_int(request.GET, 'borrower_id') if request.GET.get('borrower_id') else None,
            start_date=_date(request.GET, 'start_date', required=False),
            end_date=_date(request.GET, 'end_date', required=False),
        )
    except InvalidRequest as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    today = timezone.localdate()
    data = [_transaction_json(borrow, today) for borrow in borrows]
    return JsonResponse({'transactions': data, 'count': len(data)})


def transaction_detail(request, transaction_id):
    """One transaction with its full status history"""
    borrow = get_object_or_404(BorrowTransaction, transaction_id=transaction_id)
    history = [{
        'action': entry.action,
        'old_status': entry.old_status,
        'old_status_display': entry.old_status_label(),
        'new_status': entry.new_status,
        'new_status_display': entry.new_status_label(),
        'notes': entry.notes,
        'changed_by': entry.changed_by,
        'changed_at': _iso(entry.changed_at),
    } for entry in borrow.status_history.order_by('changed_at', 'id')]
    return JsonResponse({
        'transaction': _transaction_json(borrow),
        'history': history,
        'verifications': [_verification_json(v) for v in borrow.return_verifications.all()],
    })


def overdue_loans(request):
    summary = reminders.overdue_summary(timezone.localdate())
    if summary is None:
        return JsonResponse({'overdue_items': [], 'count': 0})
    return JsonResponse({'overdue_items': summary['loans'], 'count': summary['count']})


# ---- Returns ----

@json_command
def resolve_verification(request, data, verification_id):
    verification = get_object_or_404(ReturnVerification, verification_id=verification_id)
    returns.resolve(
        verification, _required(data, 'actor'), _required(data, 'decision'), data.get('notes', '')
    )
    payload = {'success': True, 'verification': _verification_json(verification)}
    record = ReturnRecord.objects.filter(verification=verification).first()
    if record is not None:
        payload['return_record'] = _return_record_json(record)
    return JsonResponse(payload)


@json_command
def inspect_return(request, data, record_id):
    record = get_object_or_404(ReturnRecord, id=record_id)
    returns.inspect(
        record,
        _required(data, 'actor'),
        _required(data, 'inspection_status'),
        damage_fee=data.get('damage_fee', 0),
        notes=data.get('notes', ''),
    )
    return JsonResponse({'success': True, 'return_record': _return_record_json(record)})


def open_verifications(request):
    data = [_verification_json(v) for v in returns.open_verifications()]
    return JsonResponse({'verifications': data, 'count': len(data)})


def verification_list(request):
    """All verifications; ?status=, ?start_date=, ?end_date= (submission date)"""
    try:
        found = returns.verifications(
            status=request.GET.get('status', ''),
            start_date=_date(request.GET, 'start_date', required=False),
            end_date=_date(request.GET, 'end_date', required=False),
        )
    except InvalidRequest as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    data = [_verification_json(v) for v in found]
    return JsonResponse({'verifications': data, 'count': len(data)})


def verification_status(request):
    """Status of the borrower's own returns: ?ids=RV-...,RV-..."""
    ids = [value.strip() for value in request.GET.get('ids', '').split(',') if value.strip()]
    if not ids:
        return JsonResponse({'success': False, 'error': '"ids" is required', 'field': 'ids'}, status=400)
    try:
        result = returns.verification_status(ids)
    except InvalidRequest as e:
        return JsonResponse(e.as_dict(), status=404)
    return JsonResponse({
        'success': True,
        'verifications': [{
            'verification_id': v.verification_id,
            'verification_status': v.verification_status,
            'verified_at': _iso(v.verified_at),
            'rejection_reason': v.rejection_reason,
        } for v in result['verifications']],
        'all_verified': result['all_verified'],
        'any_rejected': result['any_rejected'],
        'can_close': result['can_close'],
    })


def returned_items(request):
    """Returned loans with their inspection outcome; ?search= on borrower or item"""
    items = []
    for borrow, record in returns.returned_loans(request.GET.get('search', '').strip()):
        item = _transaction_json(borrow)
        item['days_borrowed'] = (borrow.actual_return_date - borrow.borrow_date).days
        item['return_record'] = _return_record_json(record) if record else None
        items.append(item)
    return JsonResponse({'returned_items': items, 'count': len(items)})


def pending_inspections(request):
    data = [_return_record_json(r) for r in returns.pending_inspections()]
    return JsonResponse({'return_records': data, 'count': len(data)})


# ---- Archives ----

def _archivable(entity_type, entity_id):
    try:
        archive_type = archive.get_archive_type(entity_type)
    except InvalidRequest:
        return None
    return get_object_or_404(archive_type.model, id=entity_id)


@json_command
def archive_entity(request, data, entity_type, entity_id):
    entity = _archivable(entity_type, entity_id)
    if entity is None:
        return JsonResponse({'success': False, 'error': 'Unknown archive type'}, status=404)
    archive.archive(entity, _required(data, 'actor'))
    return JsonResponse({
        'success': True,
        'archived': entity.archived,
        'archived_at': _iso(entity.archived_at),
        'auto_delete_at': _iso(entity.auto_delete_at),
    })


@json_command
def restore_entity(request, data, entity_type, entity_id):
    entity = _archivable(entity_type, entity_id)
    if entity is None:
        return JsonResponse({'success': False, 'error': 'Unknown archive type'}, status=404)
    archive.restore(entity, _required(data, 'actor'))
    return JsonResponse({'success': True, 'archived': entity.archived})


def archived_list(request, entity_type):
    """Archived records with days remaining before permanent deletion"""
    try:
        entries = archive.archived_entries(entity_type)
    except InvalidRequest as e:
        return JsonResponse(e.as_dict(), status=404)
    return JsonResponse({
        'archived': [{
            'id': entry.entity.pk,
            'label': entry.label,
            'archived_at': _iso(entry.archived_at),
            'archived_by': entry.entity.archived_by,
            'auto_delete_at': _iso(entry.auto_delete_at),
            'days_remaining': entry.days_remaining,
        } for entry in entries],
        'count': len(entries),
    })


# ---- Reports ----

def inventory_report(request):
    """Counts by derived stock status and open workload"""
    units = list(StockUnit.objects.active())
    status_counts = {label: 0 for _, label in STOCK_STATUS_CHOICES}
    for unit in units:
        status_counts[unit.get_status_display()] += 1

    today = timezone.localdate()
    return JsonResponse({
        'total_stock_units': len(units),
        'status_breakdown': status_counts,
        'active_loans': BorrowTransaction.objects.filter(
            status__in=BorrowTransaction.RESERVING_STATUSES
        ).count(),
        'pending_requests': BorrowTransaction.objects.filter(status=BorrowTransaction.PENDING).count(),
        'pending_verifications': returns.open_verifications().count(),
        'pending_inspections': returns.pending_inspections().count(),
        'overdue_count': circulation.overdue_candidates(today).count()
        + BorrowTransaction.objects.filter(status=BorrowTransaction.OVERDUE).count(),
        'archived_count': StockUnit.objects.archived().count(),
        'generated_at': timezone.now().isoformat(),
    })
