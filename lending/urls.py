from django.urls import path
from . import views

app_name = 'lending'

urlpatterns = [
    # Stock units
    path('api/stock-units/', views.stock_unit_list, name='stock_unit_list'),
    path('api/stock-units/create/', views.create_stock_unit, name='create_stock_unit'),
    path('api/stock-units/<int:unit_id>/', views.stock_unit_detail, name='stock_unit_detail'),
    path('api/stock-units/<int:unit_id>/capacity/', views.adjust_capacity, name='adjust_capacity'),

    # Borrow lifecycle
    path('api/borrow/request/', views.submit_request, name='submit_request'),
    path('api/borrow/<str:transaction_id>/approve/', views.approve_request, name='approve_request'),
    path('api/borrow/<str:transaction_id>/reject/', views.reject_request, name='reject_request'),
    path('api/borrow/<str:transaction_id>/return/', views.report_return, name='report_return'),
    path('api/borrow/<str:transaction_id>/lost/', views.declare_lost, name='declare_lost'),
    path('api/borrow/<str:transaction_id>/extend/', views.extend_loan, name='extend_loan'),
    path('api/transactions/', views.transaction_list, name='transaction_list'),
    path('api/transactions/<str:transaction_id>/', views.transaction_detail, name='transaction_detail'),
    path('api/overdue/', views.overdue_loans, name='overdue_loans'),

    # Returns
    path('api/verifications/', views.open_verifications, name='open_verifications'),
    path('api/verifications/all/', views.verification_list, name='verification_list'),
    path('api/verifications/status/', views.verification_status, name='verification_status'),
    path('api/returned-items/', views.returned_items, name='returned_items'),
    path('api/verifications/<str:verification_id>/resolve/', views.resolve_verification, name='resolve_verification'),
    path('api/inspections/', views.pending_inspections, name='pending_inspections'),
    path('api/inspections/<int:record_id>/', views.inspect_return, name='inspect_return'),

    # Archives
    path('api/archives/<str:entity_type>/', views.archived_list, name='archived_list'),
    path('api/archives/<str:entity_type>/<int:entity_id>/archive/', views.archive_entity, name='archive_entity'),
    path('api/archives/<str:entity_type>/<int:entity_id>/restore/', views.restore_entity, name='restore_entity'),

    # Reports
    path('api/report/', views.inventory_report, name='inventory_report'),
]
