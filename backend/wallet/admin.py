from django.contrib import admin
from .models import (
    Wallet, WalletTransaction, BankAccount, Escrow, EscrowLedger, PaymentIntent, PaymentProviderLog,
)

@admin.register(Wallet)
class WalletAdmin(admin.ModelAdmin):
    list_display = ('user', 'balance', 'total_earnings', 'total_withdrawals', 'account_number', 'status')
    list_filter = ('status',)
    search_fields = ('user__username', 'account_number', 'account_reference')
    # Balances only move through the ledger
    readonly_fields = ('balance', 'total_earnings', 'total_withdrawals', 'created_at', 'updated_at')

@admin.register(WalletTransaction)
class WalletTransactionAdmin(admin.ModelAdmin):
    list_display = ('user', 'amount', 'transaction_type', 'status', 'reference', 'created_at')
    list_filter = ('transaction_type', 'status', 'created_at')
    search_fields = ('user__username', 'reference', 'payment_provider_ref')
    readonly_fields = ('created_at', 'completed_at')

    def has_add_permission(self, request):
        return False  # Prevent manual creation of transactions

    def has_delete_permission(self, request, obj=None):
        return False

@admin.register(BankAccount)
class BankAccountAdmin(admin.ModelAdmin):
    list_display = ('user', 'bank_name', 'account_number', 'account_name', 'is_verified', 'is_primary')
    list_filter = ('bank_name', 'is_verified', 'is_primary')
    search_fields = ('user__username', 'account_number', 'account_name')
    readonly_fields = ('created_at',)

class EscrowLedgerInline(admin.TabularInline):
    model = EscrowLedger
    extra = 0
    readonly_fields = ('amount', 'transaction_type', 'reference', 'metadata', 'created_at')
    can_delete = False

@admin.register(Escrow)
class EscrowAdmin(admin.ModelAdmin):
    list_display = ('job', 'amount', 'funded_amount', 'status', 'client', 'freelancer', 'created_at')
    list_filter = ('status',)
    search_fields = ('job__title',)
    readonly_fields = ('amount', 'funded_amount', 'created_at', 'updated_at', 'released_at')
    inlines = [EscrowLedgerInline]

@admin.register(PaymentIntent)
class PaymentIntentAdmin(admin.ModelAdmin):
    list_display = ('reference', 'user', 'kind', 'amount', 'status', 'created_at')
    list_filter = ('kind', 'status', 'created_at')
    search_fields = ('reference', 'user__username')
    readonly_fields = ('created_at', 'updated_at', 'completed_at')

@admin.register(PaymentProviderLog)
class PaymentProviderLogAdmin(admin.ModelAdmin):
    list_display = ('provider', 'action', 'reference', 'status', 'created_at')
    list_filter = ('provider', 'status', 'created_at')
    search_fields = ('reference', 'action')
    readonly_fields = ('created_at',)

    def has_add_permission(self, request):
        return False
