from django.conf import settings
from django.db import models
from djmoney.models.fields import MoneyField

User = settings.AUTH_USER_MODEL
CURRENCY = settings.DEFAULT_CURRENCY

class Wallet(models.Model):
    ACTIVE = 'active'
    SUSPENDED = 'suspended'

    STATUS_CHOICES = (
        (ACTIVE, 'Active'),
        (SUSPENDED, 'Suspended'),
    )

    user = models.OneToOneField(User, on_delete=models.PROTECT, related_name='wallet')
    balance = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY, default=0)
    total_earnings = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY, default=0)
    total_withdrawals = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY, default=0)
    account_number = models.CharField(max_length=20, blank=True)
    bank_name = models.CharField(max_length=100, blank=True)
    account_reference = models.CharField(max_length=100, blank=True)
    provider_details = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Wallet {self.account_number} - {self.balance}"

class WalletTransaction(models.Model):
    DEPOSIT = 'deposit'
    WITHDRAWAL = 'withdrawal'
    PAYMENT_SENT = 'payment_sent'
    PAYMENT_RECEIVED = 'payment_received'
    ESCROW_FUNDING = 'escrow_funding'
    ESCROW_REFUND = 'escrow_refund'
    REFUND = 'refund'

    TRANSACTION_TYPES = (
        (DEPOSIT, 'Deposit'),
        (WITHDRAWAL, 'Withdrawal'),
        (PAYMENT_SENT, 'Payment Sent'),
        (PAYMENT_RECEIVED, 'Payment Received'),
        (ESCROW_FUNDING, 'Escrow Funding'),
        (ESCROW_REFUND, 'Escrow Refund'),
        (REFUND, 'Refund'),
    )

    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'

    STATUS_CHOICES = (
        (PENDING, 'Pending'),
        (COMPLETED, 'Completed'),
        (FAILED, 'Failed'),
    )

    # Fields that never change once the row exists
    IMMUTABLE_FIELDS = ('user_id', 'amount', 'transaction_type', 'reference')

    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name='transactions')
    # Signed: debits are negative, credits positive
    amount = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY)
    transaction_type = models.CharField(max_length=20, choices=TRANSACTION_TYPES)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=COMPLETED)
    reference = models.CharField(max_length=100, unique=True)
    description = models.CharField(max_length=255, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    payment_provider_ref = models.CharField(max_length=200, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"{self.transaction_type} - {self.amount} - {self.reference}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            original = WalletTransaction.objects.get(pk=self.pk)
            for field in self.IMMUTABLE_FIELDS:
                if getattr(original, field) != getattr(self, field):
                    raise ValueError(f"WalletTransaction.{field} is immutable")
        super().save(*args, **kwargs)

class Escrow(models.Model):
    HELD = 'held'
    RELEASED = 'released'
    REFUNDED = 'refunded'

    STATUS_CHOICES = (
        (HELD, 'Held'),
        (RELEASED, 'Released'),
        (REFUNDED, 'Refunded'),
    )

    job = models.OneToOneField('jobs.Job', on_delete=models.PROTECT, related_name='escrow')
    # Currently held; decreases with every release
    amount = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY)
    funded_amount = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=HELD)
    client = models.ForeignKey(User, on_delete=models.PROTECT, related_name='escrows_funded')
    freelancer = models.ForeignKey(User, on_delete=models.PROTECT, related_name='escrows_awarded')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    released_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"Escrow {self.status} - {self.amount} - job {self.job_id}"

class EscrowLedger(models.Model):
    FUNDING = 'funding'
    PAYOUT = 'payout'
    REFUND = 'refund'

    ENTRY_TYPES = (
        (FUNDING, 'Funding'),
        (PAYOUT, 'Payout'),
        (REFUND, 'Refund'),
    )

    escrow = models.ForeignKey(Escrow, on_delete=models.PROTECT, related_name='entries')
    amount = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY)
    transaction_type = models.CharField(max_length=20, choices=ENTRY_TYPES)
    reference = models.CharField(max_length=100)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"Escrow {self.transaction_type} - {self.amount} - job {self.escrow.job_id}"

class BankAccount(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='bank_accounts')
    bank_name = models.CharField(max_length=100)
    bank_code = models.CharField(max_length=10)
    account_number = models.CharField(max_length=20)
    account_name = models.CharField(max_length=100)
    is_primary = models.BooleanField(default=False)
    is_verified = models.BooleanField(default=False)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ['user', 'account_number']

    def __str__(self):
        return f"{self.account_name} - {self.bank_name}"

class PaymentIntent(models.Model):
    DEPOSIT = 'deposit'
    WITHDRAWAL = 'withdrawal'

    KIND_CHOICES = (
        (DEPOSIT, 'Deposit'),
        (WITHDRAWAL, 'Withdrawal'),
    )

    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'

    STATUS_CHOICES = (
        (PENDING, 'Pending'),
        (PROCESSING, 'Processing'),
        (COMPLETED, 'Completed'),
        (FAILED, 'Failed'),
    )

    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name='payment_intents')
    reference = models.CharField(max_length=100, unique=True)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    amount = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    checkout_url = models.URLField(max_length=500, blank=True)
    bank_account = models.ForeignKey(BankAccount, on_delete=models.SET_NULL, null=True, blank=True)
    provider_response = models.JSONField(default=dict, blank=True)
    error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.kind} {self.reference} - {self.status}"

class PaymentProviderLog(models.Model):
    provider = models.CharField(max_length=50)
    action = models.CharField(max_length=100)
    reference = models.CharField(max_length=100)
    request_data = models.JSONField(default=dict)
    response_data = models.JSONField(default=dict)
    status = models.CharField(max_length=20)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.provider} - {self.action} - {self.reference}"
