import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('orders', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('reference', models.CharField(max_length=64, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default='RWF', max_length=8)),
                ('payment_method', models.CharField(choices=[('mtn_momo', 'MTN Mobile Money'), ('airtel_money', 'Airtel Money'), ('visa_card', 'Visa Card'), ('mastercard', 'MasterCard'), ('spenn', 'SPENN')], max_length=32)),
                ('customer_name', models.CharField(blank=True, default='', max_length=128)),
                ('customer_email', models.EmailField(blank=True, default='', max_length=254)),
                ('customer_phone', models.CharField(blank=True, default='', max_length=20)),
                ('gateway_transaction_id', models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ('gateway_auth_key', models.CharField(blank=True, max_length=128, null=True)),
                ('gateway_return_code', models.IntegerField(blank=True, null=True)),
                ('gateway_response', models.JSONField(blank=True, null=True)),
                ('gateway_mom_transaction_id', models.CharField(blank=True, max_length=64, null=True)),
                ('gateway_pay_account', models.CharField(blank=True, max_length=64, null=True)),
                ('gateway_webhook_data', models.JSONField(blank=True, null=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('failed', 'Failed'), ('successful', 'Successful (legacy)')], db_index=True, default='pending', max_length=16)),
                ('failure_reason', models.TextField(blank=True, null=True)),
                ('client_timeout', models.BooleanField(default=False)),
                ('client_timeout_reason', models.CharField(blank=True, default='', max_length=255)),
                ('receipt_sent_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('order', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='orders.order')),
            ],
            options={
                'db_table': 'payments',
                'ordering': ('-created_at',),
            },
        ),
    ]
