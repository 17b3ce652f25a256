"""
Gateway-backed wallet flows: funding, verification and withdrawal.

A PaymentIntent is written before any external call so a crash after
initiation can be reconciled later by reference. Wallets are only credited
after the gateway confirms the payment.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from activity.services import queue_activity
from marketplace.exceptions import (
    GatewayError, NotFound, Unauthorized, ValidationError,
)
from .ledger import adjust_balance, as_money, generate_reference, get_wallet, zero
from .models import BankAccount, PaymentIntent, WalletTransaction
from .monnify_client import FAILED_STATUSES, PAID_STATUSES

logger = logging.getLogger(__name__)


def _gateway(gateway):
    if gateway is not None:
        return gateway
    from .monnify_client import monnify_client
    return monnify_client


def initialize_funding(user, amount, gateway=None):
    amount = as_money(amount)
    if amount.amount <= 0:
        raise ValidationError("Funding amount must be positive")
    get_wallet(user.id)

    intent = PaymentIntent.objects.create(
        user=user,
        reference=generate_reference('PAY'),
        kind=PaymentIntent.DEPOSIT,
        amount=amount,
    )

    try:
        result = _gateway(gateway).initialize_payment(
            amount.amount, intent.reference, user.email, customer_name=user.display_name,
        )
    except GatewayError as e:
        intent.status = PaymentIntent.FAILED
        intent.error = str(e.detail)
        intent.save(update_fields=['status', 'error', 'updated_at'])
        raise

    intent.checkout_url = result.get('checkout_url', '')
    intent.provider_response = result
    intent.save(update_fields=['checkout_url', 'provider_response', 'updated_at'])
    logger.info("Funding of %s initialised for user %s (%s)", amount, user.id, intent.reference)
    return {'checkout_url': intent.checkout_url, 'reference': intent.reference}


def confirm_funding(reference, gateway=None):
    """
    Verify a deposit with the gateway and credit the wallet once.

    Returns a dict with ``status`` of completed, pending or failed.
    """
    try:
        intent = PaymentIntent.objects.get(reference=reference, kind=PaymentIntent.DEPOSIT)
    except PaymentIntent.DoesNotExist:
        raise NotFound(f"Payment intent {reference} not found")

    if intent.status == PaymentIntent.COMPLETED:
        return {'status': PaymentIntent.COMPLETED, 'message': 'Payment already processed'}
    if intent.status == PaymentIntent.FAILED:
        return {'status': PaymentIntent.FAILED, 'message': intent.error or 'Payment failed'}

    body = _gateway(gateway).verify_payment(reference)
    payment_status = str(body.get('paymentStatus', '')).upper()

    if payment_status in PAID_STATUSES:
        with transaction.atomic():
            intent = PaymentIntent.objects.select_for_update().get(pk=intent.pk)
            if intent.status == PaymentIntent.COMPLETED:
                return {'status': PaymentIntent.COMPLETED, 'message': 'Payment already processed'}

            adjust_balance(
                intent.user_id, intent.amount, WalletTransaction.DEPOSIT,
                reference=intent.reference,
                description='Wallet funding',
                metadata={
                    'provider_reference': body.get('transactionReference'),
                    'payment_method': body.get('paymentMethod'),
                },
            )
            intent.status = PaymentIntent.COMPLETED
            intent.completed_at = timezone.now()
            intent.provider_response = body
            intent.save(update_fields=['status', 'completed_at', 'provider_response', 'updated_at'])
            queue_activity(
                intent.user_id, 'deposit', f"Funded wallet with {intent.amount}",
                amount=str(intent.amount.amount),
            )

        logger.info("Deposit %s credited to user %s", reference, intent.user_id)
        return {'status': PaymentIntent.COMPLETED, 'message': 'Payment processed successfully'}

    if payment_status in FAILED_STATUSES:
        with transaction.atomic():
            intent = PaymentIntent.objects.select_for_update().get(pk=intent.pk)
            if intent.status == PaymentIntent.COMPLETED:
                logger.warning("Deposit %s reported %s after it was credited", reference, payment_status)
                return {'status': PaymentIntent.COMPLETED, 'message': 'Payment already processed'}
            if intent.status == PaymentIntent.FAILED:
                return {'status': PaymentIntent.FAILED, 'message': intent.error or 'Payment failed'}

            intent.status = PaymentIntent.FAILED
            intent.error = f"Gateway reported {payment_status}"
            intent.provider_response = body
            intent.save(update_fields=['status', 'error', 'provider_response', 'updated_at'])

        logger.warning("Deposit %s failed at gateway: %s", reference, payment_status)
        return {'status': PaymentIntent.FAILED, 'message': intent.error}

    return {'status': PaymentIntent.PENDING, 'message': 'Payment is still pending'}


def request_withdrawal(user, amount, bank_account_id):
    """Debit the wallet now; the Celery task disburses or reverses it."""
    amount = as_money(amount)
    if amount.amount < settings.MIN_WITHDRAWAL_AMOUNT:
        raise ValidationError(f"Minimum withdrawal is {settings.MIN_WITHDRAWAL_AMOUNT}")

    try:
        bank_account = BankAccount.objects.get(id=bank_account_id, user=user)
    except BankAccount.DoesNotExist:
        raise NotFound("Bank account not found")
    if not bank_account.is_verified:
        raise Unauthorized("Bank account must be verified before withdrawal")

    with transaction.atomic():
        intent = PaymentIntent.objects.create(
            user=user,
            reference=generate_reference('WDR'),
            kind=PaymentIntent.WITHDRAWAL,
            amount=amount,
            bank_account=bank_account,
        )
        adjust_balance(
            user.id, -amount, WalletTransaction.WITHDRAWAL,
            reference=intent.reference,
            description='Withdrawal to bank account',
            status=WalletTransaction.PENDING,
            metadata={
                'bank_account_id': bank_account.id,
                'bank_name': bank_account.bank_name,
                'account_number': bank_account.account_number,
                'account_name': bank_account.account_name,
            },
        )
        transaction.on_commit(lambda: _enqueue_withdrawal(intent.id))

    logger.info("Withdrawal of %s requested by user %s (%s)", amount, user.id, intent.reference)
    return intent


def _enqueue_withdrawal(intent_id):
    from .tasks import process_withdrawal
    try:
        process_withdrawal.delay(intent_id)
    except Exception:
        # The reconciliation sweep picks the intent up later
        logger.exception("Could not enqueue withdrawal %s", intent_id)


def settle_withdrawal(intent, succeeded, provider_response=None, error=''):
    """Complete a withdrawal, or reverse the debit if the gateway refused it."""
    with transaction.atomic():
        intent = PaymentIntent.objects.select_for_update().get(pk=intent.pk)
        if intent.status in (PaymentIntent.COMPLETED, PaymentIntent.FAILED):
            return intent

        debit = WalletTransaction.objects.get(reference=intent.reference)
        now = timezone.now()
        if succeeded:
            intent.status = PaymentIntent.COMPLETED
            intent.completed_at = now
            debit.status = WalletTransaction.COMPLETED
            debit.completed_at = now
        else:
            intent.status = PaymentIntent.FAILED
            intent.error = error
            debit.status = WalletTransaction.FAILED
            adjust_balance(
                intent.user_id, intent.amount, WalletTransaction.REFUND,
                reference=f"{intent.reference}-REV",
                description='Failed withdrawal reversal',
                metadata={'withdrawal_reference': intent.reference, 'error': error},
            )
        if provider_response is not None:
            intent.provider_response = provider_response
            debit.payment_provider_ref = provider_response.get('transactionReference')
        intent.save()
        debit.save()
        queue_activity(
            intent.user_id, 'withdrawal',
            f"Withdrew {intent.amount} from wallet" if succeeded
            else f"Withdrawal of {intent.amount} failed and was refunded",
            amount=str(intent.amount.amount),
        )

    logger.info("Withdrawal %s settled: %s", intent.reference, intent.status)
    return intent


def get_transaction_history(user):
    return WalletTransaction.objects.filter(user=user)


def wallet_summary(user):
    wallet = get_wallet(user.id)
    transactions = WalletTransaction.objects.filter(user=user)
    pending_withdrawals = transactions.filter(
        transaction_type=WalletTransaction.WITHDRAWAL,
        status=WalletTransaction.PENDING,
    ).aggregate(total=Sum('amount'))['total']

    return {
        'wallet': wallet,
        'pending_withdrawals': -pending_withdrawals if pending_withdrawals else zero().amount,
        'recent_transactions': transactions[:5],
    }
