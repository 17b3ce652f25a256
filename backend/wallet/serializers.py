from django.conf import settings
from rest_framework import serializers
from .models import Wallet, WalletTransaction, BankAccount, Escrow, EscrowLedger, PaymentIntent

class WalletSerializer(serializers.ModelSerializer):
    class Meta:
        model = Wallet
        fields = ('id', 'user', 'balance', 'balance_currency', 'total_earnings', 'total_withdrawals',
                  'account_number', 'bank_name', 'account_reference', 'status', 'created_at', 'updated_at')
        read_only_fields = fields

class WalletTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = WalletTransaction
        fields = ('id', 'amount', 'amount_currency', 'transaction_type', 'status', 'reference',
                  'description', 'metadata', 'payment_provider_ref', 'created_at', 'completed_at')
        read_only_fields = fields

class BankAccountSerializer(serializers.ModelSerializer):
    class Meta:
        model = BankAccount
        fields = ('id', 'bank_name', 'bank_code', 'account_number', 'account_name',
                  'is_primary', 'is_verified', 'created_at')
        read_only_fields = ('is_verified', 'created_at')

    def validate_account_number(self, value):
        if not value.isdigit() or len(value) != 10:
            raise serializers.ValidationError("Account number must be 10 digits")
        return value

class EscrowLedgerSerializer(serializers.ModelSerializer):
    class Meta:
        model = EscrowLedger
        fields = ('id', 'amount', 'transaction_type', 'reference', 'metadata', 'created_at')

class EscrowSerializer(serializers.ModelSerializer):
    job_title = serializers.CharField(source='job.title', read_only=True)
    entries = EscrowLedgerSerializer(many=True, read_only=True)

    class Meta:
        model = Escrow
        fields = ('id', 'job', 'job_title', 'amount', 'funded_amount', 'status', 'client',
                  'freelancer', 'created_at', 'released_at', 'entries')

class PaymentIntentSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentIntent
        fields = ('id', 'reference', 'kind', 'amount', 'status', 'checkout_url', 'error',
                  'created_at', 'completed_at')

class WithdrawalRequestSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    bank_account_id = serializers.IntegerField()

    def validate_amount(self, value):
        if value < settings.MIN_WITHDRAWAL_AMOUNT:
            raise serializers.ValidationError(
                f"Minimum withdrawal is {settings.MIN_WITHDRAWAL_AMOUNT} {settings.DEFAULT_CURRENCY}"
            )
        return value

class FundingRequestSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2, min_value=1)
