"""
Escrow and milestone orchestration.

Each public function here is one transaction.atomic() unit: preconditions
(authorisation, escrow balance, paid/completed/reviewed flags) are read on
locked rows and checked in the same block that writes, so a rejected call
leaves no trace. Activity and notification events are written to the outbox
inside the block and delivered only after commit.
"""
import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from activity.services import queue_activity, queue_notification
from marketplace.exceptions import (
    AlreadyPaid, AlreadyReviewed, InvalidState, NotAJobParticipant, NotFound,
    Unauthorized, ValidationError,
)
from milestones.models import Milestone
from milestones.services import create_milestones, get_milestone, mark_complete
from wallet.escrow import create_escrow, get_escrow, mark_released, reduce_escrow, refund_escrow
from wallet.ledger import adjust_balance, as_money, record_transaction
from wallet.models import WalletTransaction
from .models import PER_MILESTONE, Job, Proposal
from .services import get_job

logger = logging.getLogger(__name__)

User = get_user_model()

REVIEW_ROLES = [Job.CLIENT_ROLE, Job.FREELANCER_ROLE]


def _check_parties(job, client_id, freelancer_id):
    if client_id is not None and client_id != job.client_id:
        raise Unauthorized("Only the job's client can release payment")
    if freelancer_id is not None and freelancer_id != job.awarded_to_id:
        raise ValidationError(f"User {freelancer_id} is not the freelancer on job {job.id}")


def _transfer(job, amount, reference, description, metadata):
    """Move ``amount`` already taken out of escrow into the freelancer's wallet."""
    adjust_balance(
        job.awarded_to_id, amount, WalletTransaction.PAYMENT_RECEIVED,
        reference=reference,
        description=description,
        metadata=metadata,
    )
    # Client side of the transfer; the client's balance moved at escrow funding
    record_transaction(
        job.client_id, -amount, WalletTransaction.PAYMENT_SENT,
        reference=f"{reference}-C",
        description=description,
        metadata=metadata,
    )


def _complete_job(job):
    now = timezone.now()
    job.status = Job.COMPLETED
    job.completed_at = now
    job.pending_reviews = list(REVIEW_ROLES)
    job.reviews = {}
    job.save(update_fields=['status', 'completed_at', 'pending_reviews', 'reviews', 'updated_at'])

    for user_id in (job.client_id, job.awarded_to_id):
        queue_notification(
            user_id, 'job_completed', 'Job completed',
            f'"{job.title}" is complete. Please leave a review.',
            job_id=job.id,
        )
    logger.info("Job %s completed", job.id)


def accept_proposal(proposal_id, job_id, actor=None):
    """
    Award a job: hold escrow, accept one proposal, reject the rest, and
    seed the milestones, all in one transaction.
    """
    with transaction.atomic():
        job = get_job(job_id, for_update=True)
        if actor is not None and actor.id != job.client_id:
            raise Unauthorized("Only the job's client can accept proposals")

        proposals = list(Proposal.objects.select_for_update().filter(job_id=job_id))
        target = next((p for p in proposals if p.id == proposal_id), None)
        if target is None:
            raise NotFound(f"Proposal {proposal_id} not found on job {job_id}")
        if job.status != Job.OPEN:
            raise InvalidState(f"Job {job_id} is {job.status}")
        if target.status != Proposal.PENDING:
            raise InvalidState(f"Proposal {proposal_id} is {target.status}")

        create_escrow(job.id, target.proposed_amount, job.client_id, target.freelancer_id)

        Proposal.objects.filter(job_id=job_id).exclude(pk=target.pk).update(status=Proposal.REJECTED)
        Proposal.objects.filter(pk=target.pk).update(status=Proposal.ACCEPTED)

        job.status = Job.IN_PROGRESS
        job.awarded_to_id = target.freelancer_id
        job.accepted_amount = target.proposed_amount
        job.accepted_duration = target.completion_weeks
        job.payment_preference = target.payment_preference
        job.milestone_snapshot = target.milestones
        job.awarded_at = timezone.now()
        job.save()

        create_milestones(job, target.milestones)

        queue_activity(
            job.client_id, 'proposal_accepted',
            f'Accepted a proposal for "{job.title}"', job_id=job.id,
            amount=str(target.proposed_amount.amount),
        )
        queue_activity(
            target.freelancer_id, 'job_awarded',
            f'You were hired for "{job.title}"', job_id=job.id,
            amount=str(target.proposed_amount.amount),
        )
        queue_notification(
            target.freelancer_id, 'proposal_accepted', 'Proposal accepted',
            f'Your proposal for "{job.title}" was accepted',
            job_id=job.id, sender_id=job.client_id, proposal_id=target.id,
        )
        for other in proposals:
            if other.pk != target.pk and other.status == Proposal.PENDING:
                queue_notification(
                    other.freelancer_id, 'proposal_rejected', 'Proposal not selected',
                    f'Another proposal was chosen for "{job.title}"',
                    job_id=job.id, proposal_id=other.id,
                )

    logger.info("Proposal %s accepted for job %s", proposal_id, job_id)
    return job


def release_milestone_payment(job_id, milestone_id, amount=None, client_id=None, freelancer_id=None):
    """
    Pay one milestone out of escrow to the freelancer.

    ``amount`` defaults to the milestone amount and must match it when given.
    Completes the job when this was the last unpaid milestone.
    """
    with transaction.atomic():
        job = get_job(job_id, for_update=True)
        _check_parties(job, client_id, freelancer_id)
        milestone = get_milestone(job_id, milestone_id, for_update=True)

        if milestone.is_paid:
            logger.warning("Duplicate release for milestone %s on job %s", milestone_id, job_id)
            raise AlreadyPaid(f"Milestone {milestone_id} has already been paid")
        if job.status != Job.IN_PROGRESS:
            raise InvalidState(f"Job {job_id} is {job.status}")
        if milestone.status == Milestone.DISPUTED:
            raise InvalidState(f"Milestone {milestone_id} is disputed")
        if amount is not None and as_money(amount) != milestone.amount:
            raise ValidationError(f"Release amount must equal the milestone amount {milestone.amount}")
        if settings.ENFORCE_SEQUENTIAL_MILESTONES and job.milestones.filter(
                sequence__lt=milestone.sequence).exclude(payment_status=Milestone.PAID).exists():
            raise InvalidState("Earlier milestones must be paid first")

        reference = f"MSP{milestone.id}"
        metadata = {'job_id': job.id, 'milestone_id': milestone.id}
        reduce_escrow(job.id, milestone.amount, reference=reference, metadata=metadata)
        _transfer(job, milestone.amount, reference,
                  f'Payment for milestone "{milestone.name}"', metadata)

        now = timezone.now()
        milestone.payment_status = Milestone.PAID
        milestone.paid_at = now
        if milestone.status != Milestone.COMPLETED:
            milestone.status = Milestone.COMPLETED
            milestone.progress = 100
            milestone.completed_at = milestone.completed_at or now
        milestone.save()

        queue_activity(
            job.awarded_to_id, 'payment_received',
            f'Received {milestone.amount} for "{milestone.name}"', job_id=job.id,
            amount=str(milestone.amount.amount),
        )
        queue_activity(
            job.client_id, 'payment_sent',
            f'Released {milestone.amount} for "{milestone.name}"', job_id=job.id,
            amount=str(milestone.amount.amount),
        )

        if not job.milestones.exclude(payment_status=Milestone.PAID).exists():
            mark_released(job.id, reference=reference)
            _complete_job(job)

    logger.info("Milestone %s on job %s paid %s", milestone_id, job_id, milestone.amount)
    return milestone


def release_job_payment(job_id, amount=None, client_id=None, freelancer_id=None):
    """
    Release everything still held for a job in one step and complete it.

    ``amount`` defaults to the remaining escrow and must match it when given.
    """
    with transaction.atomic():
        job = get_job(job_id, for_update=True)
        _check_parties(job, client_id, freelancer_id)

        if job.status == Job.COMPLETED:
            raise AlreadyPaid(f"Job {job_id} has already been paid")
        if job.status != Job.IN_PROGRESS:
            raise InvalidState(f"Job {job_id} is {job.status}")

        milestones = list(Milestone.objects.select_for_update().filter(job_id=job_id))
        if any(m.status == Milestone.DISPUTED for m in milestones):
            raise InvalidState(f"Job {job_id} has a disputed milestone")

        escrow = get_escrow(job_id, for_update=True)
        remainder = escrow.amount
        if remainder.amount <= 0:
            raise InvalidState(f"Escrow for job {job_id} holds nothing")
        if amount is not None and as_money(amount) != remainder:
            raise ValidationError(f"Release amount must equal the remaining escrow {remainder}")

        reference = f"JOBPAY{job.id}"
        mark_released(job.id, force=True, reference=reference)
        metadata = {'job_id': job.id, 'full_release': True}
        _transfer(job, remainder, reference, f'Payment for "{job.title}"', metadata)

        now = timezone.now()
        for milestone in milestones:
            if milestone.is_paid:
                continue
            milestone.payment_status = Milestone.PAID
            milestone.paid_at = now
            milestone.status = Milestone.COMPLETED
            milestone.progress = 100
            milestone.completed_at = milestone.completed_at or now
            milestone.save()

        queue_activity(
            job.awarded_to_id, 'payment_received',
            f'Received {remainder} for "{job.title}"', job_id=job.id,
            amount=str(remainder.amount),
        )
        queue_activity(
            job.client_id, 'payment_sent',
            f'Released {remainder} for "{job.title}"', job_id=job.id,
            amount=str(remainder.amount),
        )
        _complete_job(job)

    logger.info("Job %s paid in full: %s", job_id, remainder)
    return job


def complete_milestone(job_id, milestone_id, actor):
    """
    Client approval of a milestone, followed by the payout it triggers:
    the milestone itself for per-milestone jobs, or the whole remaining
    escrow once every milestone of a completion-preference job is done.
    """
    with transaction.atomic():
        job = get_job(job_id, for_update=True)
        if job.status != Job.IN_PROGRESS:
            raise InvalidState(f"Job {job_id} is {job.status}")

        milestone = mark_complete(job_id, milestone_id, actor)

        if job.payment_preference == PER_MILESTONE:
            milestone = release_milestone_payment(job.id, milestone.id, client_id=actor.id)
        elif not job.milestones.exclude(status=Milestone.COMPLETED).exists():
            release_job_payment(job.id, client_id=actor.id)
            milestone.refresh_from_db()

    return milestone


def submit_job_review(job_id, reviewer_id, rating, comment=''):
    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise ValidationError("Rating must be a whole number")
    if not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")

    with transaction.atomic():
        job = get_job(job_id, for_update=True)
        role = job.role_of(reviewer_id)
        if role is None:
            raise NotAJobParticipant()
        if job.status != Job.COMPLETED:
            raise InvalidState(f"Job {job_id} is {job.status}")
        if role in job.reviews:
            raise AlreadyReviewed(f"The {role} has already reviewed job {job_id}")

        reviewee_id = job.awarded_to_id if role == Job.CLIENT_ROLE else job.client_id
        reviewee = User.objects.select_for_update().get(pk=reviewee_id)
        count = reviewee.total_reviews
        reviewee.rating = (reviewee.rating * count + rating) / (count + 1)
        reviewee.total_reviews = count + 1
        reviewee.save(update_fields=['rating', 'total_reviews', 'updated_at'])

        reviews = dict(job.reviews)
        reviews[role] = {
            'rating': rating,
            'comment': comment or '',
            'reviewer_id': reviewer_id,
            'created_at': timezone.now().isoformat(),
        }
        job.reviews = reviews
        job.pending_reviews = [r for r in job.pending_reviews if r != role]
        job.save(update_fields=['reviews', 'pending_reviews', 'updated_at'])

        queue_notification(
            reviewee_id, 'review_received', 'New review',
            f'You received a {rating}-star review for "{job.title}"',
            job_id=job.id, sender_id=reviewer_id,
        )

    return job


def cancel_job(job_id, actor):
    """
    Cancel an open job, or an awarded one before any work or payment.

    Escrow still held is refunded to the client's wallet.
    """
    with transaction.atomic():
        job = get_job(job_id, for_update=True)
        if actor.id != job.client_id:
            raise Unauthorized("Only the job's client can cancel it")

        refunded = None
        if job.status == Job.OPEN:
            Proposal.objects.filter(job_id=job_id, status=Proposal.PENDING).update(status=Proposal.REJECTED)
        elif job.status == Job.IN_PROGRESS:
            if Milestone.objects.filter(job_id=job_id).exclude(
                    status=Milestone.PENDING, payment_status='').exists():
                raise InvalidState("Work has started on this job; raise a dispute instead")
            refunded = refund_escrow(job.id)
        else:
            raise InvalidState(f"Job {job_id} is {job.status}")

        job.status = Job.CANCELLED
        job.cancelled_at = timezone.now()
        job.save(update_fields=['status', 'cancelled_at', 'updated_at'])

        queue_activity(job.client_id, 'job_cancelled', f'Cancelled "{job.title}"', job_id=job.id)
        if job.awarded_to_id:
            queue_notification(
                job.awarded_to_id, 'job_cancelled', 'Job cancelled',
                f'"{job.title}" was cancelled by the client',
                job_id=job.id, sender_id=actor.id,
            )

    logger.info("Job %s cancelled by client %s (refunded %s)", job_id, actor.id, refunded)
    return job
