"""
Per-job escrow holds.

Every function here expects to run inside (or opens) a transaction.atomic()
block and locks the escrow row before reading its amount.
"""
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from marketplace.exceptions import InsufficientEscrow, InvalidState, NotFound, ValidationError
from .ledger import adjust_balance, as_money, zero
from .models import Escrow, EscrowLedger, WalletTransaction

logger = logging.getLogger(__name__)


def get_escrow(job_id, for_update=False):
    queryset = Escrow.objects.select_for_update() if for_update else Escrow.objects
    try:
        return queryset.get(job_id=job_id)
    except Escrow.DoesNotExist:
        raise NotFound(f"Escrow not found for job {job_id}")


def create_escrow(job_id, amount, client_id, freelancer_id):
    """Debit the client's wallet and hold the funds against the job."""
    amount = as_money(amount)
    if amount.amount <= 0:
        raise ValidationError("Escrow amount must be positive")

    with transaction.atomic():
        if Escrow.objects.filter(job_id=job_id).exists():
            raise InvalidState(f"Escrow already exists for job {job_id}")

        reference = f"ESCROW-{job_id}"
        adjust_balance(
            client_id, -amount, WalletTransaction.ESCROW_FUNDING,
            reference=reference,
            description=f"Escrow hold for job {job_id}",
            metadata={'job_id': job_id, 'freelancer_id': freelancer_id},
        )
        escrow = Escrow.objects.create(
            job_id=job_id,
            amount=amount,
            funded_amount=amount,
            status=Escrow.HELD,
            client_id=client_id,
            freelancer_id=freelancer_id,
        )
        EscrowLedger.objects.create(
            escrow=escrow,
            amount=amount,
            transaction_type=EscrowLedger.FUNDING,
            reference=reference,
            metadata={'client_id': client_id},
        )

    logger.info("Escrow of %s held for job %s", amount, job_id)
    return escrow


def reduce_escrow(job_id, amount, reference='', metadata=None):
    """Take ``amount`` out of a held escrow. Returns the refreshed escrow."""
    amount = as_money(amount)
    if amount.amount <= 0:
        raise ValidationError("Release amount must be positive")

    with transaction.atomic():
        escrow = get_escrow(job_id, for_update=True)
        if escrow.status != Escrow.HELD:
            raise InvalidState(f"Escrow for job {job_id} is {escrow.status}")
        if amount > escrow.amount:
            logger.warning("Escrow for job %s holds %s, cannot release %s", job_id, escrow.amount, amount)
            raise InsufficientEscrow(f"Escrow holds {escrow.amount}, cannot release {amount}")

        Escrow.objects.filter(pk=escrow.pk).update(amount=F('amount') - amount, updated_at=timezone.now())
        EscrowLedger.objects.create(
            escrow=escrow,
            amount=amount,
            transaction_type=EscrowLedger.PAYOUT,
            reference=reference,
            metadata=metadata or {},
        )
        escrow.refresh_from_db()

    return escrow


def mark_released(job_id, force=False, reference=''):
    """
    Close a held escrow.

    Without ``force`` the escrow must already be empty. With ``force`` any
    remainder is paid out here and returned so the caller can credit it.
    """
    with transaction.atomic():
        escrow = get_escrow(job_id, for_update=True)
        if escrow.status != Escrow.HELD:
            raise InvalidState(f"Escrow for job {job_id} is {escrow.status}")

        remainder = escrow.amount
        if remainder.amount > 0:
            if not force:
                raise InvalidState(f"Escrow for job {job_id} still holds {remainder}")
            EscrowLedger.objects.create(
                escrow=escrow,
                amount=remainder,
                transaction_type=EscrowLedger.PAYOUT,
                reference=reference,
                metadata={'full_release': True},
            )

        escrow.amount = zero()
        escrow.status = Escrow.RELEASED
        escrow.released_at = timezone.now()
        escrow.save(update_fields=['amount', 'amount_currency', 'status', 'released_at', 'updated_at'])

    logger.info("Escrow for job %s released", job_id)
    return remainder


def refund_escrow(job_id):
    """Return whatever is still held to the client."""
    with transaction.atomic():
        escrow = get_escrow(job_id, for_update=True)
        if escrow.status != Escrow.HELD:
            raise InvalidState(f"Escrow for job {job_id} is {escrow.status}")

        remainder = escrow.amount
        reference = f"ESCROW-REFUND-{job_id}"
        if remainder.amount > 0:
            adjust_balance(
                escrow.client_id, remainder, WalletTransaction.ESCROW_REFUND,
                reference=reference,
                description=f"Escrow refund for job {job_id}",
                metadata={'job_id': job_id},
            )
            EscrowLedger.objects.create(
                escrow=escrow,
                amount=remainder,
                transaction_type=EscrowLedger.REFUND,
                reference=reference,
            )

        escrow.amount = zero()
        escrow.status = Escrow.REFUNDED
        escrow.released_at = timezone.now()
        escrow.save(update_fields=['amount', 'amount_currency', 'status', 'released_at', 'updated_at'])

    logger.info("Escrow for job %s refunded %s to client %s", job_id, remainder, escrow.client_id)
    return remainder
