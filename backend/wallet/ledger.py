"""
Wallet balances and the append-only transaction log.

Balances only ever move through adjust_balance(), which applies an F()
increment in the database and writes the matching WalletTransaction row in
the same atomic block. Debits are conditional on the stored balance, so two
concurrent debits can never take a wallet below zero.
"""
import logging
import random
import uuid
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from djmoney.money import Money

from marketplace.exceptions import (
    GatewayError, InsufficientFunds, NotFound, ValidationError,
)
from .models import Wallet, WalletTransaction

logger = logging.getLogger(__name__)

EARNING_TYPES = (WalletTransaction.PAYMENT_RECEIVED, WalletTransaction.DEPOSIT)

CENT = Decimal('0.01')


def as_money(value):
    """Normalise Money/Decimal/int/str into Money in the platform currency."""
    currency = settings.DEFAULT_CURRENCY
    if isinstance(value, Money):
        if str(value.currency) != currency:
            raise ValidationError(f"Unsupported currency {value.currency}")
        _check_precision(value.amount, value)
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    _check_precision(amount, value)
    return Money(amount, currency)


def _check_precision(amount, value):
    # Stored amounts have two decimal places; anything finer would be rounded away
    try:
        exact = amount == amount.quantize(CENT)
    except InvalidOperation:
        exact = False
    if not exact:
        raise ValidationError(f"Amount {value!r} has more than two decimal places")


def zero():
    return Money(0, settings.DEFAULT_CURRENCY)


def generate_reference(prefix):
    return f"{prefix}{uuid.uuid4().hex[:12].upper()}"


def get_wallet(user_id, for_update=False):
    queryset = Wallet.objects.select_for_update() if for_update else Wallet.objects
    try:
        return queryset.get(user_id=user_id)
    except Wallet.DoesNotExist:
        raise NotFound(f"Wallet not found for user {user_id}")


def get_balance(user_id):
    return get_wallet(user_id).balance


def record_transaction(user_id, amount, transaction_type, reference=None, description='',
                       status=WalletTransaction.COMPLETED, metadata=None):
    """Append a transaction row without moving any balance."""
    amount = as_money(amount)
    try:
        with transaction.atomic():
            return WalletTransaction.objects.create(
                user_id=user_id,
                amount=amount,
                transaction_type=transaction_type,
                status=status,
                reference=reference or generate_reference('TXN'),
                description=description or f"{transaction_type} transaction",
                metadata=metadata or {},
                completed_at=timezone.now() if status == WalletTransaction.COMPLETED else None,
            )
    except IntegrityError:
        raise ValidationError(f"Duplicate transaction reference {reference}")


def adjust_balance(user_id, delta, transaction_type, reference=None, description='',
                   status=WalletTransaction.COMPLETED, metadata=None):
    """
    Atomically add ``delta`` (signed) to a wallet and log it.

    Raises NotFound when the wallet is missing and InsufficientFunds when a
    debit would take the balance below zero. Returns the WalletTransaction.
    """
    delta = as_money(delta)
    if delta.amount == 0:
        raise ValidationError("Balance adjustment must be non-zero")

    with transaction.atomic():
        wallets = Wallet.objects.filter(user_id=user_id)
        updates = {'balance': F('balance') + delta, 'updated_at': timezone.now()}

        if delta.amount < 0:
            wallets = wallets.filter(balance__gte=-delta)
            if transaction_type == WalletTransaction.WITHDRAWAL:
                updates['total_withdrawals'] = F('total_withdrawals') - delta
        elif transaction_type in EARNING_TYPES:
            updates['total_earnings'] = F('total_earnings') + delta

        if not wallets.update(**updates):
            if not Wallet.objects.filter(user_id=user_id).exists():
                raise NotFound(f"Wallet not found for user {user_id}")
            logger.warning("Insufficient balance for user %s debit of %s", user_id, -delta)
            raise InsufficientFunds(f"Insufficient balance to debit {-delta}")

        entry = record_transaction(
            user_id, delta, transaction_type,
            reference=reference, description=description, status=status, metadata=metadata,
        )

    logger.info("Wallet %s adjusted by %s (%s, %s)", user_id, delta, transaction_type, entry.reference)
    return entry


def _placeholder_account_number():
    # 10 digits, leading 2, matching the shape of a reserved NUBAN
    return f"2{random.randint(0, 10 ** 9 - 1):09d}"


def create_wallet(user_id, display_name, email, gateway=None):
    """
    Return the user's wallet, creating it on first call.

    A reserved bank account is requested from the gateway; if that fails the
    wallet keeps a locally generated placeholder account number.
    """
    existing = Wallet.objects.filter(user_id=user_id).first()
    if existing is not None:
        return existing

    try:
        with transaction.atomic():
            wallet = Wallet.objects.create(
                user_id=user_id,
                account_number=_placeholder_account_number(),
                bank_name='Virtual Bank',
                account_reference=f"REF-{user_id}",
            )
    except IntegrityError:
        # Lost a creation race; the other wallet wins
        return Wallet.objects.get(user_id=user_id)

    if gateway is None:
        from .monnify_client import monnify_client
        gateway = monnify_client

    try:
        account = gateway.reserve_account(f"REF-{user_id}", display_name, email)
    except GatewayError as e:
        logger.warning("Account reservation failed for user %s, keeping placeholder: %s", user_id, e)
        return wallet

    wallet.account_number = account.get('account_number') or wallet.account_number
    wallet.bank_name = account.get('bank_name') or wallet.bank_name
    wallet.account_reference = account.get('account_reference') or wallet.account_reference
    wallet.provider_details = account.get('raw', {})
    wallet.save(update_fields=['account_number', 'bank_name', 'account_reference',
                               'provider_details', 'updated_at'])
    logger.info("Wallet created for user %s with account %s", user_id, wallet.account_number)
    return wallet
