from django.db import migrations, models
import django.db.models.deletion
import lending.models


def _archive_fields():
    return [
        ('archived', models.BooleanField(db_index=True, default=False)),
        ('archived_at', models.DateTimeField(blank=True, null=True)),
        ('auto_delete_at', models.DateTimeField(blank=True, null=True)),
        ('archived_by', models.CharField(blank=True, default='', max_length=255)),
    ]


def _archive_dates_paired(name):
    return models.CheckConstraint(
        condition=(
            models.Q(archived_at__isnull=True, auto_delete_at__isnull=True)
            | models.Q(archived_at__isnull=False, auto_delete_at__isnull=False)
        ),
        name=name,
    )


def _borrower_fields():
    return [
        ('first_name', models.CharField(max_length=100)),
        ('middle_name', models.CharField(blank=True, default='', max_length=100)),
        ('last_name', models.CharField(max_length=100)),
        ('email', models.EmailField(blank=True, default='', max_length=254)),
        ('contact_number', models.CharField(blank=True, default='', max_length=50)),
        ('created_at', models.DateTimeField(auto_now_add=True)),
    ]


BORROWER_TYPE_CHOICES = [('student', 'Student'), ('employee', 'Employee')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='StockUnit',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                *_archive_fields(),
                ('name', models.CharField(max_length=255)),
                ('category', models.CharField(blank=True, default='', max_length=100)),
                ('kind', models.CharField(default='usable', max_length=50)),
                ('description', models.TextField(blank=True, default='')),
                ('location', models.CharField(blank=True, default='', max_length=255)),
                ('total_quantity', models.PositiveIntegerField(default=0)),
                ('available_quantity', models.PositiveIntegerField(default=0)),
                ('written_off_quantity', models.PositiveIntegerField(default=0)),
                ('low_stock_threshold_percent', models.PositiveSmallIntegerField(blank=True, default=None, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Stock Unit',
                'verbose_name_plural': 'Stock Units',
                'ordering': ['name', 'id'],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(available_quantity__lte=models.F('total_quantity')),
                        name='stockunit_available_within_total',
                    ),
                    models.CheckConstraint(
                        condition=(
                            models.Q(low_stock_threshold_percent__isnull=True)
                            | models.Q(low_stock_threshold_percent__lte=100)
                        ),
                        name='stockunit_threshold_percent_range',
                    ),
                    _archive_dates_paired('stockunit_archive_dates_paired'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Student',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                *_archive_fields(),
                *_borrower_fields(),
                ('student_id', models.CharField(max_length=50, unique=True)),
                ('course', models.CharField(blank=True, default='', max_length=100)),
                ('year_level', models.CharField(blank=True, default='', max_length=20)),
            ],
            options={
                'ordering': ['last_name', 'first_name'],
                'constraints': [_archive_dates_paired('student_archive_dates_paired')],
            },
        ),
        migrations.CreateModel(
            name='Employee',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                *_archive_fields(),
                *_borrower_fields(),
                ('emp_id', models.CharField(max_length=50, unique=True)),
                ('department', models.CharField(blank=True, default='', max_length=100)),
                ('position', models.CharField(blank=True, default='', max_length=100)),
            ],
            options={
                'ordering': ['last_name', 'first_name'],
                'constraints': [_archive_dates_paired('employee_archive_dates_paired')],
            },
        ),
        migrations.CreateModel(
            name='BorrowTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('transaction_id', models.CharField(default=lending.models._transaction_id, editable=False, max_length=20, unique=True)),
                ('borrower_type', models.CharField(choices=BORROWER_TYPE_CHOICES, max_length=20)),
                ('borrower_id', models.PositiveBigIntegerField()),
                ('borrower_name', models.CharField(max_length=255)),
                ('borrower_id_number', models.CharField(blank=True, default='', max_length=100)),
                ('borrower_email', models.EmailField(blank=True, default='', max_length=254)),
                ('borrower_contact', models.CharField(blank=True, default='', max_length=50)),
                ('item_name', models.CharField(max_length=255)),
                ('quantity', models.PositiveIntegerField()),
                ('borrow_date', models.DateField()),
                ('expected_return_date', models.DateField()),
                ('actual_return_date', models.DateField(blank=True, null=True)),
                ('purpose', models.TextField(blank=True, default='')),
                ('notes', models.TextField(blank=True, default='')),
                ('status', models.CharField(choices=[('pending', 'Pending Approval'), ('borrowed', 'Borrowed'), ('overdue', 'Overdue'), ('pending_return_verification', 'Pending Return Verification'), ('returned', 'Returned'), ('rejected', 'Rejected'), ('lost', 'Lost')], db_index=True, default='pending', max_length=30)),
                ('status_before_return', models.CharField(blank=True, default='', max_length=30)),
                ('approved_by', models.CharField(blank=True, default='', max_length=255)),
                ('approved_at', models.DateTimeField(blank=True, null=True)),
                ('rejection_reason', models.TextField(blank=True, default='')),
                ('due_soon_notification_sent_at', models.DateTimeField(blank=True, null=True)),
                ('due_today_notification_sent_at', models.DateTimeField(blank=True, null=True)),
                ('overdue_notification_sent_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('stock_unit', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='borrow_transactions', to='lending.stockunit')),
            ],
            options={
                'verbose_name': 'Borrow Transaction',
                'verbose_name_plural': 'Borrow Transactions',
                'ordering': ['-created_at', '-id'],
                'indexes': [models.Index(fields=['status', 'expected_return_date'], name='borrow_status_due_idx')],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(quantity__gte=1), name='borrow_quantity_positive'),
                    models.CheckConstraint(
                        condition=models.Q(expected_return_date__gte=models.F('borrow_date')),
                        name='borrow_return_not_before_borrow',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='StatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(max_length=30)),
                ('old_status', models.CharField(blank=True, default='', max_length=30)),
                ('new_status', models.CharField(max_length=30)),
                ('notes', models.TextField(blank=True, default='')),
                ('changed_at', models.DateTimeField(auto_now_add=True)),
                ('changed_by', models.CharField(blank=True, default='', max_length=255)),
                ('transaction', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='status_history', to='lending.borrowtransaction')),
            ],
            options={
                'ordering': ['-changed_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='ReturnVerification',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('verification_id', models.CharField(default=lending.models._verification_id, editable=False, max_length=20, unique=True)),
                ('borrower_type', models.CharField(choices=BORROWER_TYPE_CHOICES, max_length=20)),
                ('borrower_id', models.PositiveBigIntegerField()),
                ('borrower_name', models.CharField(max_length=255)),
                ('borrower_id_number', models.CharField(blank=True, default='', max_length=100)),
                ('borrower_email', models.EmailField(blank=True, default='', max_length=254)),
                ('borrower_contact', models.CharField(blank=True, default='', max_length=50)),
                ('item_name', models.CharField(max_length=255)),
                ('quantity_returned', models.PositiveIntegerField()),
                ('return_date', models.DateField()),
                ('returned_by', models.CharField(blank=True, default='', max_length=255)),
                ('return_notes', models.TextField(blank=True, default='')),
                ('verification_status', models.CharField(choices=[('pending_verification', 'Pending Verification'), ('verified', 'Verified'), ('rejected', 'Rejected')], db_index=True, default='pending_verification', max_length=30)),
                ('verified_by', models.CharField(blank=True, default='', max_length=255)),
                ('verified_at', models.DateTimeField(blank=True, null=True)),
                ('verification_notes', models.TextField(blank=True, default='')),
                ('rejection_reason', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('transaction', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='return_verifications', to='lending.borrowtransaction')),
                ('stock_unit', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='return_verifications', to='lending.stockunit')),
            ],
            options={
                'ordering': ['-created_at', '-id'],
                'constraints': [
                    models.UniqueConstraint(
                        condition=models.Q(verification_status='pending_verification'),
                        fields=('transaction',),
                        name='one_open_verification_per_transaction',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='ReturnRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('return_date', models.DateField()),
                ('received_by', models.CharField(blank=True, default='', max_length=255)),
                ('return_notes', models.TextField(blank=True, default='')),
                ('condition', models.CharField(default='good', max_length=30)),
                ('inspection_status', models.CharField(choices=[('pending_inspection', 'Pending Inspection'), ('good_condition', 'Good Condition'), ('minor_damage', 'Minor Damage'), ('major_damage', 'Major Damage'), ('lost', 'Lost'), ('unusable', 'Unusable')], db_index=True, default='pending_inspection', max_length=30)),
                ('damage_fee', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('inspected_by', models.CharField(blank=True, default='', max_length=255)),
                ('inspected_at', models.DateTimeField(blank=True, null=True)),
                ('inspection_notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('verification', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='return_record', to='lending.returnverification')),
                ('transaction', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='return_records', to='lending.borrowtransaction')),
            ],
            options={
                'ordering': ['-created_at', '-id'],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(damage_fee__gte=0), name='return_damage_fee_non_negative'),
                ],
            },
        ),
        migrations.CreateModel(
            name='StockAdjustment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('stock_in', 'Stock In'), ('capacity', 'Capacity Adjustment'), ('write_off', 'Loss Write-off')], max_length=20)),
                ('old_total', models.PositiveIntegerField()),
                ('new_total', models.PositiveIntegerField()),
                ('old_available', models.PositiveIntegerField()),
                ('new_available', models.PositiveIntegerField()),
                ('reason', models.TextField(blank=True, default='')),
                ('adjusted_by', models.CharField(blank=True, default='', max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('stock_unit', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='adjustments', to='lending.stockunit')),
                ('transaction', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='adjustments', to='lending.borrowtransaction')),
            ],
            options={
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='ActivityLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('activity_type', models.CharField(choices=[('archived', 'Archived'), ('restored', 'Restored'), ('purged', 'Permanently Deleted')], max_length=20)),
                ('entity_type', models.CharField(max_length=30)),
                ('entity_id', models.BigIntegerField()),
                ('entity_label', models.CharField(blank=True, default='', max_length=255)),
                ('actor', models.CharField(blank=True, default='', max_length=255)),
                ('details', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='NotificationLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('notification_type', models.CharField(choices=[('due_soon', 'Due Tomorrow'), ('due_today', 'Due Today'), ('overdue', 'Overdue'), ('overdue_digest', 'Overdue Digest'), ('auto_delete', 'Archived Record Deleted')], max_length=20)),
                ('message', models.TextField()),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('sent_to', models.CharField(blank=True, default='', max_length=500)),
                ('delivered', models.BooleanField(default=False)),
                ('sent_at', models.DateTimeField(auto_now_add=True)),
                ('transaction', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='notifications', to='lending.borrowtransaction')),
            ],
            options={
                'ordering': ['-sent_at', '-id'],
            },
        ),
    ]
