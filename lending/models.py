import math
import uuid

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


STOCK_AVAILABLE = 'available'
STOCK_LOW = 'low_stock'
STOCK_OUT = 'out_of_stock'

STOCK_STATUS_CHOICES = [
    (STOCK_AVAILABLE, 'Available'),
    (STOCK_LOW, 'Low Stock'),
    (STOCK_OUT, 'Out of Stock'),
]


def derive_stock_status(available_quantity, total_quantity, threshold_percent):
    """Stock status as a pure function of quantity and threshold.

    ``low_stock`` is boundary inclusive: 3 of 10 with a 30% threshold is low.
    """
    if available_quantity <= 0:
        return STOCK_OUT
    if total_quantity > 0 and available_quantity / total_quantity * 100 <= threshold_percent:
        return STOCK_LOW
    return STOCK_AVAILABLE


def _transaction_id():
    return f'BRW-{uuid.uuid4().hex[:10].upper()}'


def _verification_id():
    return f'RV-{timezone.now().year}-{uuid.uuid4().hex[:6].upper()}'


class ArchivableQuerySet(models.QuerySet):
    def active(self):
        return self.filter(archived=False)

    def archived(self):
        return self.filter(archived=True)

    def expired(self, now):
        return self.filter(archived=True, auto_delete_at__lte=now)


class ArchivableModel(models.Model):
    """Soft-delete fields shared by every record that can be archived."""

    archived = models.BooleanField(default=False, db_index=True)
    archived_at = models.DateTimeField(null=True, blank=True)
    auto_delete_at = models.DateTimeField(null=True, blank=True)
    archived_by = models.CharField(max_length=255, blank=True, default='')

    objects = ArchivableQuerySet.as_manager()

    class Meta:
        abstract = True

    def days_until_auto_delete(self, now=None):
        if not self.auto_delete_at:
            return None
        now = now or timezone.now()
        remaining = (self.auto_delete_at - now).total_seconds() / 86400
        return max(math.ceil(remaining), 0)


class StockUnit(ArchivableModel):
    KIND_USABLE = 'usable'
    KIND_CONSUMABLE = 'consumable'
    # Operators may also enter their own kind label.
    KIND_SUGGESTIONS = [
        (KIND_USABLE, 'Usable'),
        (KIND_CONSUMABLE, 'Consumable'),
    ]

    name = models.CharField(max_length=255)
    category = models.CharField(max_length=100, blank=True, default='')
    kind = models.CharField(max_length=50, default=KIND_USABLE)
    description = models.TextField(blank=True, default='')
    location = models.CharField(max_length=255, blank=True, default='')
    total_quantity = models.PositiveIntegerField(default=0)
    available_quantity = models.PositiveIntegerField(default=0)
    written_off_quantity = models.PositiveIntegerField(default=0)
    low_stock_threshold_percent = models.PositiveSmallIntegerField(null=True, blank=True, default=None)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name', 'id']
        verbose_name = "Stock Unit"
        verbose_name_plural = "Stock Units"
        constraints = [
            models.CheckConstraint(
                condition=Q(available_quantity__lte=F('total_quantity')),
                name='stockunit_available_within_total',
            ),
            models.CheckConstraint(
                condition=Q(low_stock_threshold_percent__isnull=True) | Q(low_stock_threshold_percent__lte=100),
                name='stockunit_threshold_percent_range',
            ),
            models.CheckConstraint(
                condition=(
                    Q(archived_at__isnull=True, auto_delete_at__isnull=True)
                    | Q(archived_at__isnull=False, auto_delete_at__isnull=False)
                ),
                name='stockunit_archive_dates_paired',
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.available_quantity}/{self.total_quantity})"

    @property
    def display_id(self):
        return f"INV-{self.pk:03d}" if self.pk else ''

    @property
    def effective_threshold(self):
        if self.low_stock_threshold_percent is None:
            return settings.LENDING_LOW_STOCK_THRESHOLD
        return self.low_stock_threshold_percent

    @property
    def status(self):
        return derive_stock_status(self.available_quantity, self.total_quantity, self.effective_threshold)

    def get_status_display(self):
        return dict(STOCK_STATUS_CHOICES).get(self.status, self.status)


class BorrowerRecord(ArchivableModel):
    first_name = models.CharField(max_length=100)
    middle_name = models.CharField(max_length=100, blank=True, default='')
    last_name = models.CharField(max_length=100)
    email = models.EmailField(blank=True, default='')
    contact_number = models.CharField(max_length=50, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        abstract = True

    def __str__(self):
        return self.full_name

    @property
    def full_name(self):
        parts = [self.first_name, self.middle_name, self.last_name]
        return ' '.join(p for p in parts if p)


class Student(BorrowerRecord):
    student_id = models.CharField(max_length=50, unique=True)
    course = models.CharField(max_length=100, blank=True, default='')
    year_level = models.CharField(max_length=20, blank=True, default='')

    class Meta:
        ordering = ['last_name', 'first_name']
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(archived_at__isnull=True, auto_delete_at__isnull=True)
                    | Q(archived_at__isnull=False, auto_delete_at__isnull=False)
                ),
                name='student_archive_dates_paired',
            ),
        ]

    @property
    def id_number(self):
        return self.student_id


class Employee(BorrowerRecord):
    emp_id = models.CharField(max_length=50, unique=True)
    department = models.CharField(max_length=100, blank=True, default='')
    position = models.CharField(max_length=100, blank=True, default='')

    class Meta:
        ordering = ['last_name', 'first_name']
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(archived_at__isnull=True, auto_delete_at__isnull=True)
                    | Q(archived_at__isnull=False, auto_delete_at__isnull=False)
                ),
                name='employee_archive_dates_paired',
            ),
        ]

    @property
    def id_number(self):
        return self.emp_id


class BorrowTransaction(models.Model):
    PENDING = 'pending'
    BORROWED = 'borrowed'
    OVERDUE = 'overdue'
    PENDING_RETURN_VERIFICATION = 'pending_return_verification'
    RETURNED = 'returned'
    REJECTED = 'rejected'
    LOST = 'lost'

    STATUS_CHOICES = [
        (PENDING, 'Pending Approval'),
        (BORROWED, 'Borrowed'),
        (OVERDUE, 'Overdue'),
        (PENDING_RETURN_VERIFICATION, 'Pending Return Verification'),
        (RETURNED, 'Returned'),
        (REJECTED, 'Rejected'),
        (LOST, 'Lost'),
    ]

    # Statuses whose quantity is held out of the stock unit's available pool.
    RESERVING_STATUSES = (BORROWED, OVERDUE, PENDING_RETURN_VERIFICATION)
    TERMINAL_STATUSES = (RETURNED, REJECTED, LOST)

    BORROWER_STUDENT = 'student'
    BORROWER_EMPLOYEE = 'employee'
    BORROWER_TYPE_CHOICES = [
        (BORROWER_STUDENT, 'Student'),
        (BORROWER_EMPLOYEE, 'Employee'),
    ]

    transaction_id = models.CharField(max_length=20, unique=True, default=_transaction_id, editable=False)

    # Borrower snapshot, copied at creation so history survives record changes
    borrower_type = models.CharField(max_length=20, choices=BORROWER_TYPE_CHOICES)
    borrower_id = models.PositiveBigIntegerField()
    borrower_name = models.CharField(max_length=255)
    borrower_id_number = models.CharField(max_length=100, blank=True, default='')
    borrower_email = models.EmailField(blank=True, default='')
    borrower_contact = models.CharField(max_length=50, blank=True, default='')

    stock_unit = models.ForeignKey(
        StockUnit, on_delete=models.SET_NULL, null=True, blank=True, related_name='borrow_transactions'
    )
    item_name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    borrow_date = models.DateField()
    expected_return_date = models.DateField()
    actual_return_date = models.DateField(null=True, blank=True)
    purpose = models.TextField(blank=True, default='')
    notes = models.TextField(blank=True, default='')

    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    # Where a rejected return verification sends the loan back to
    status_before_return = models.CharField(max_length=30, blank=True, default='')

    approved_by = models.CharField(max_length=255, blank=True, default='')
    approved_at = models.DateTimeField(null=True, blank=True)
    rejection_reason = models.TextField(blank=True, default='')

    # Reminder stamps; each is written at most once
    due_soon_notification_sent_at = models.DateTimeField(null=True, blank=True)
    due_today_notification_sent_at = models.DateTimeField(null=True, blank=True)
    overdue_notification_sent_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        verbose_name = "Borrow Transaction"
        verbose_name_plural = "Borrow Transactions"
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gte=1), name='borrow_quantity_positive'),
            models.CheckConstraint(
                condition=Q(expected_return_date__gte=F('borrow_date')),
                name='borrow_return_not_before_borrow',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'expected_return_date'], name='borrow_status_due_idx'),
        ]

    def __str__(self):
        return f"{self.transaction_id} - {self.borrower_name} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def days_overdue(self, today=None):
        if self.status not in (self.BORROWED, self.OVERDUE):
            return 0
        today = today or timezone.localdate()
        return max((today - self.expected_return_date).days, 0)

    def borrower_contact_info(self):
        return {
            'name': self.borrower_name,
            'id_number': self.borrower_id_number,
            'email': self.borrower_email,
            'contact': self.borrower_contact,
        }


class StatusHistory(models.Model):
    transaction = models.ForeignKey(BorrowTransaction, on_delete=models.CASCADE, related_name='status_history')
    action = models.CharField(max_length=30)
    old_status = models.CharField(max_length=30, blank=True, default='')
    new_status = models.CharField(max_length=30)
    notes = models.TextField(blank=True, default='')
    changed_at = models.DateTimeField(auto_now_add=True)
    changed_by = models.CharField(max_length=255, blank=True, default='')

    class Meta:
        ordering = ['-changed_at', '-id']

    STATUS_LABELS = dict(BorrowTransaction.STATUS_CHOICES)

    def __str__(self):
        return f"{self.transaction.transaction_id} - {self.old_status or 'new'} to {self.new_status}"

    def old_status_label(self):
        return self.STATUS_LABELS.get(self.old_status, self.old_status)

    def new_status_label(self):
        return self.STATUS_LABELS.get(self.new_status, self.new_status)


class ReturnVerification(models.Model):
    PENDING_VERIFICATION = 'pending_verification'
    VERIFIED = 'verified'
    REJECTED = 'rejected'

    VERIFICATION_STATUS_CHOICES = [
        (PENDING_VERIFICATION, 'Pending Verification'),
        (VERIFIED, 'Verified'),
        (REJECTED, 'Rejected'),
    ]

    verification_id = models.CharField(max_length=20, unique=True, default=_verification_id, editable=False)
    transaction = models.ForeignKey(
        BorrowTransaction, on_delete=models.CASCADE, related_name='return_verifications'
    )
    stock_unit = models.ForeignKey(
        StockUnit, on_delete=models.SET_NULL, null=True, blank=True, related_name='return_verifications'
    )

    borrower_type = models.CharField(max_length=20, choices=BorrowTransaction.BORROWER_TYPE_CHOICES)
    borrower_id = models.PositiveBigIntegerField()
    borrower_name = models.CharField(max_length=255)
    borrower_id_number = models.CharField(max_length=100, blank=True, default='')
    borrower_email = models.EmailField(blank=True, default='')
    borrower_contact = models.CharField(max_length=50, blank=True, default='')
    item_name = models.CharField(max_length=255)

    quantity_returned = models.PositiveIntegerField()
    return_date = models.DateField()
    returned_by = models.CharField(max_length=255, blank=True, default='')
    return_notes = models.TextField(blank=True, default='')

    verification_status = models.CharField(
        max_length=30, choices=VERIFICATION_STATUS_CHOICES, default=PENDING_VERIFICATION, db_index=True
    )
    verified_by = models.CharField(max_length=255, blank=True, default='')
    verified_at = models.DateTimeField(null=True, blank=True)
    verification_notes = models.TextField(blank=True, default='')
    rejection_reason = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['transaction'],
                condition=Q(verification_status='pending_verification'),
                name='one_open_verification_per_transaction',
            ),
        ]

    def __str__(self):
        return f"{self.verification_id} - {self.transaction.transaction_id} ({self.verification_status})"

    @property
    def is_pending(self):
        return self.verification_status == self.PENDING_VERIFICATION


class ReturnRecord(models.Model):
    PENDING_INSPECTION = 'pending_inspection'
    GOOD_CONDITION = 'good_condition'
    MINOR_DAMAGE = 'minor_damage'
    MAJOR_DAMAGE = 'major_damage'
    LOST = 'lost'
    UNUSABLE = 'unusable'

    INSPECTION_STATUS_CHOICES = [
        (PENDING_INSPECTION, 'Pending Inspection'),
        (GOOD_CONDITION, 'Good Condition'),
        (MINOR_DAMAGE, 'Minor Damage'),
        (MAJOR_DAMAGE, 'Major Damage'),
        (LOST, 'Lost'),
        (UNUSABLE, 'Unusable'),
    ]

    CONDITION_BY_INSPECTION = {
        GOOD_CONDITION: 'good',
        MINOR_DAMAGE: 'slightly_damaged',
        MAJOR_DAMAGE: 'damaged',
        LOST: 'lost',
        UNUSABLE: 'damaged',
    }

    verification = models.OneToOneField(ReturnVerification, on_delete=models.CASCADE, related_name='return_record')
    transaction = models.ForeignKey(BorrowTransaction, on_delete=models.CASCADE, related_name='return_records')
    return_date = models.DateField()
    received_by = models.CharField(max_length=255, blank=True, default='')
    return_notes = models.TextField(blank=True, default='')
    condition = models.CharField(max_length=30, default='good')
    inspection_status = models.CharField(
        max_length=30, choices=INSPECTION_STATUS_CHOICES, default=PENDING_INSPECTION, db_index=True
    )
    damage_fee = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    inspected_by = models.CharField(max_length=255, blank=True, default='')
    inspected_at = models.DateTimeField(null=True, blank=True)
    inspection_notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.CheckConstraint(condition=Q(damage_fee__gte=0), name='return_damage_fee_non_negative'),
        ]

    def __str__(self):
        return f"Return of {self.transaction.transaction_id} ({self.inspection_status})"

    @property
    def is_inspected(self):
        return self.inspection_status != self.PENDING_INSPECTION

    @property
    def days_late(self):
        return max((self.return_date - self.transaction.expected_return_date).days, 0)


class StockAdjustment(models.Model):
    """Audit row for every change to a stock unit's total quantity."""

    STOCK_IN = 'stock_in'
    CAPACITY = 'capacity'
    WRITE_OFF = 'write_off'

    KIND_CHOICES = [
        (STOCK_IN, 'Stock In'),
        (CAPACITY, 'Capacity Adjustment'),
        (WRITE_OFF, 'Loss Write-off'),
    ]

    stock_unit = models.ForeignKey(StockUnit, on_delete=models.CASCADE, related_name='adjustments')
    transaction = models.ForeignKey(
        BorrowTransaction, on_delete=models.SET_NULL, null=True, blank=True, related_name='adjustments'
    )
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    old_total = models.PositiveIntegerField()
    new_total = models.PositiveIntegerField()
    old_available = models.PositiveIntegerField()
    new_available = models.PositiveIntegerField()
    reason = models.TextField(blank=True, default='')
    adjusted_by = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"{self.stock_unit} {self.get_kind_display()}: {self.old_total} -> {self.new_total}"


class ActivityLog(models.Model):
    """Archive lifecycle events.

    No foreign key to the archived record so the entry survives the purge.
    """

    ARCHIVED = 'archived'
    RESTORED = 'restored'
    PURGED = 'purged'

    ACTIVITY_TYPES = [
        (ARCHIVED, 'Archived'),
        (RESTORED, 'Restored'),
        (PURGED, 'Permanently Deleted'),
    ]

    activity_type = models.CharField(max_length=20, choices=ACTIVITY_TYPES)
    entity_type = models.CharField(max_length=30)
    entity_id = models.BigIntegerField()
    entity_label = models.CharField(max_length=255, blank=True, default='')
    actor = models.CharField(max_length=255, blank=True, default='')
    details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"{self.get_activity_type_display()} {self.entity_type} #{self.entity_id}"


class NotificationLog(models.Model):
    DUE_SOON = 'due_soon'
    DUE_TODAY = 'due_today'
    OVERDUE = 'overdue'
    OVERDUE_DIGEST = 'overdue_digest'
    AUTO_DELETE = 'auto_delete'

    NOTIFICATION_TYPES = [
        (DUE_SOON, 'Due Tomorrow'),
        (DUE_TODAY, 'Due Today'),
        (OVERDUE, 'Overdue'),
        (OVERDUE_DIGEST, 'Overdue Digest'),
        (AUTO_DELETE, 'Archived Record Deleted'),
    ]

    transaction = models.ForeignKey(
        BorrowTransaction, on_delete=models.SET_NULL, null=True, blank=True, related_name='notifications'
    )
    notification_type = models.CharField(max_length=20, choices=NOTIFICATION_TYPES)
    message = models.TextField()
    payload = models.JSONField(default=dict, blank=True)
    sent_to = models.CharField(max_length=500, blank=True, default='')
    delivered = models.BooleanField(default=False)
    sent_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-sent_at', '-id']

    def __str__(self):
        return f"{self.get_notification_type_display()} - {self.sent_to}"
