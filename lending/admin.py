from django.contrib import admin
from .models import (
    StockUnit, Student, Employee, BorrowTransaction, StatusHistory, ReturnVerification,
    ReturnRecord, StockAdjustment, ActivityLog, NotificationLog,
)

# Quantities and statuses change only through the lending services, so the
# admin shows them read-only.


@admin.register(StockUnit)
class StockUnitAdmin(admin.ModelAdmin):
    list_display = ['display_id', 'name', 'category', 'kind', 'available_quantity', 'total_quantity', 'status', 'archived']
    list_filter = ['kind', 'category', 'archived']
    search_fields = ['name', 'category', 'location']
    readonly_fields = ['total_quantity', 'available_quantity', 'written_off_quantity',
                       'archived', 'archived_at', 'auto_delete_at', 'archived_by']

@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ['student_id', 'full_name', 'course', 'year_level', 'archived']
    list_filter = ['archived', 'course']
    search_fields = ['student_id', 'first_name', 'last_name', 'email']

@admin.register(Employee)
class EmployeeAdmin(admin.ModelAdmin):
    list_display = ['emp_id', 'full_name', 'department', 'position', 'archived']
    list_filter = ['archived', 'department']
    search_fields = ['emp_id', 'first_name', 'last_name', 'email']

@admin.register(BorrowTransaction)
class BorrowTransactionAdmin(admin.ModelAdmin):
    list_display = ['transaction_id', 'borrower_name', 'item_name', 'quantity', 'status', 'expected_return_date']
    list_filter = ['status', 'borrower_type']
    search_fields = ['transaction_id', 'borrower_name', 'borrower_id_number', 'item_name']
    readonly_fields = ['transaction_id', 'status', 'status_before_return', 'quantity', 'stock_unit',
                       'due_soon_notification_sent_at', 'due_today_notification_sent_at',
                       'overdue_notification_sent_at']

@admin.register(StatusHistory)
class StatusHistoryAdmin(admin.ModelAdmin):
    list_display = ['transaction', 'action', 'old_status', 'new_status', 'changed_by', 'changed_at']
    list_filter = ['new_status', 'action']
    search_fields = ['changed_by', 'notes']

@admin.register(ReturnVerification)
class ReturnVerificationAdmin(admin.ModelAdmin):
    list_display = ['verification_id', 'transaction', 'quantity_returned', 'verification_status', 'verified_by']
    list_filter = ['verification_status']
    search_fields = ['verification_id', 'borrower_name', 'returned_by']

@admin.register(ReturnRecord)
class ReturnRecordAdmin(admin.ModelAdmin):
    list_display = ['transaction', 'return_date', 'inspection_status', 'condition', 'damage_fee', 'inspected_by']
    list_filter = ['inspection_status', 'condition']

@admin.register(StockAdjustment)
class StockAdjustmentAdmin(admin.ModelAdmin):
    list_display = ['stock_unit', 'kind', 'old_total', 'new_total', 'adjusted_by', 'created_at']
    list_filter = ['kind']
    readonly_fields = ['stock_unit', 'transaction', 'kind', 'old_total', 'new_total',
                       'old_available', 'new_available', 'reason', 'adjusted_by', 'created_at']

@admin.register(ActivityLog)
class ActivityLogAdmin(admin.ModelAdmin):
    list_display = ['activity_type', 'entity_type', 'entity_id', 'entity_label', 'actor', 'created_at']
    list_filter = ['activity_type', 'entity_type']
    search_fields = ['entity_label', 'actor']
    readonly_fields = ['activity_type', 'entity_type', 'entity_id', 'entity_label', 'actor', 'details', 'created_at']

@admin.register(NotificationLog)
class NotificationLogAdmin(admin.ModelAdmin):
    list_display = ['transaction', 'notification_type', 'sent_at', 'sent_to', 'delivered']
    list_filter = ['notification_type', 'delivered']
