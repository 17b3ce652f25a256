import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

from marketplace.exceptions import GatewayError
from .models import PaymentIntent
from .monnify_client import FAILED_STATUSES, monnify_client
from .services import confirm_funding, settle_withdrawal

logger = logging.getLogger(__name__)

DISBURSEMENT_SUCCESS = ('SUCCESS', 'COMPLETED')

@shared_task
def process_withdrawal(intent_id):
    """
    Disburse a withdrawal through Monnify
    """
    try:
        intent = PaymentIntent.objects.select_related('bank_account').get(
            id=intent_id,
            kind=PaymentIntent.WITHDRAWAL,
            status=PaymentIntent.PENDING,
        )
    except PaymentIntent.DoesNotExist:
        return

    bank_account = intent.bank_account
    if bank_account is None:
        settle_withdrawal(intent, succeeded=False, error='Bank account not found')
        return

    # Mark before calling out so a retry re-queries instead of re-sending
    updated = PaymentIntent.objects.filter(
        pk=intent.pk, status=PaymentIntent.PENDING,
    ).update(status=PaymentIntent.PROCESSING, updated_at=timezone.now())
    if not updated:
        return

    try:
        response = monnify_client.disburse(
            amount=intent.amount.amount,
            reference=intent.reference,
            account_number=bank_account.account_number,
            bank_code=bank_account.bank_code,
            account_name=bank_account.account_name,
        )
    except GatewayError as e:
        settle_withdrawal(intent, succeeded=False, error=str(e.detail))
        return

    disbursement_status = str(response.get('status', '')).upper()
    if disbursement_status in DISBURSEMENT_SUCCESS:
        settle_withdrawal(intent, succeeded=True, provider_response=response)
    elif disbursement_status in FAILED_STATUSES:
        settle_withdrawal(intent, succeeded=False, provider_response=response,
                          error=f"Disbursement {disbursement_status}")
    else:
        PaymentIntent.objects.filter(pk=intent.pk).update(provider_response=response)

@shared_task
def reconcile_payment_intents(max_age_minutes=5):
    """
    Periodic task to re-query the gateway for intents that never settled
    """
    cutoff = timezone.now() - timedelta(minutes=max_age_minutes)
    stale = PaymentIntent.objects.filter(
        status__in=[PaymentIntent.PENDING, PaymentIntent.PROCESSING],
        updated_at__lt=cutoff,
    )

    for intent in stale:
        try:
            if intent.kind == PaymentIntent.DEPOSIT:
                confirm_funding(intent.reference)
            elif intent.status == PaymentIntent.PENDING:
                process_withdrawal(intent.id)
            else:
                response = monnify_client.get_disbursement_status(intent.reference)
                disbursement_status = str(response.get('status', '')).upper()
                if disbursement_status in DISBURSEMENT_SUCCESS:
                    settle_withdrawal(intent, succeeded=True, provider_response=response)
                elif disbursement_status in FAILED_STATUSES:
                    settle_withdrawal(intent, succeeded=False, provider_response=response,
                                      error=f"Disbursement {disbursement_status}")
        except GatewayError as e:
            logger.warning("Reconciliation of %s deferred: %s", intent.reference, e.detail)

@shared_task
def verify_bank_account(bank_account_id):
    """
    Resolve a bank account with Monnify and mark it verified
    """
    from .models import BankAccount

    try:
        bank_account = BankAccount.objects.get(id=bank_account_id)
    except BankAccount.DoesNotExist:
        return False

    try:
        body = monnify_client.validate_bank_account(bank_account.account_number, bank_account.bank_code)
    except GatewayError as e:
        logger.warning("Bank account %s could not be verified: %s", bank_account_id, e.detail)
        bank_account.metadata = {**bank_account.metadata, 'verification_error': str(e.detail)}
        bank_account.save(update_fields=['metadata'])
        return False

    bank_account.is_verified = True
    bank_account.account_name = body.get('accountName') or bank_account.account_name
    bank_account.metadata = {**bank_account.metadata, 'resolved': body}
    bank_account.save(update_fields=['is_verified', 'account_name', 'metadata'])
    return True
