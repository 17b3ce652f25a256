import logging

from django.db import IntegrityError, transaction

from activity.services import queue_activity, queue_notification
from marketplace.exceptions import (
    InsufficientFunds, InvalidState, NotFound, Unauthorized, ValidationError,
)
from milestones.services import normalize_milestone_plan
from wallet.ledger import as_money, get_balance
from .models import COMPLETION, PER_MILESTONE, Job, Proposal

logger = logging.getLogger(__name__)


def get_job(job_id, for_update=False):
    queryset = Job.objects.select_for_update() if for_update else Job.objects
    try:
        return queryset.get(id=job_id)
    except Job.DoesNotExist:
        raise NotFound(f"Job {job_id} not found")


def get_proposal(proposal_id, for_update=False):
    queryset = Proposal.objects.select_for_update() if for_update else Proposal.objects
    try:
        return queryset.get(id=proposal_id)
    except Proposal.DoesNotExist:
        raise NotFound(f"Proposal {proposal_id} not found")


def create_job(client, title, description, budget, duration_weeks=1):
    """Post a job. The client's wallet must already cover the budget."""
    if client.role != client.CLIENT:
        raise Unauthorized("Only clients can post jobs")

    budget = as_money(budget)
    if budget.amount <= 0:
        raise ValidationError("Budget must be positive")
    if not title or not title.strip():
        raise ValidationError("Title is required")

    balance = get_balance(client.id)
    if balance < budget:
        raise InsufficientFunds(f"Wallet balance {balance} does not cover the budget {budget}")

    with transaction.atomic():
        job = Job.objects.create(
            client=client,
            title=title.strip(),
            description=description,
            budget=budget,
            duration_weeks=duration_weeks,
        )
        queue_activity(client.id, 'job_posted', f'Posted job "{job.title}"', job_id=job.id)

    logger.info("Job %s posted by client %s", job.id, client.id)
    return job


def create_proposal(job, freelancer, proposed_amount, payment_preference,
                    milestones=None, completion_weeks=1, cover_letter=''):
    if job.status != Job.OPEN:
        raise InvalidState(f"Job {job.id} is not accepting proposals")
    if freelancer.id == job.client_id:
        raise Unauthorized("You cannot bid on your own job")
    if freelancer.role != freelancer.FREELANCER:
        raise Unauthorized("Only freelancers can submit proposals")

    proposed_amount = as_money(proposed_amount)
    if proposed_amount.amount <= 0:
        raise ValidationError("Proposed amount must be positive")

    if payment_preference == PER_MILESTONE:
        plan = normalize_milestone_plan(milestones or [], proposed_amount)
    elif payment_preference == COMPLETION:
        plan = []
    else:
        raise ValidationError("Payment preference must be per_milestone or completion")

    try:
        with transaction.atomic():
            proposal = Proposal.objects.create(
                job=job,
                freelancer=freelancer,
                client_id=job.client_id,
                proposed_amount=proposed_amount,
                payment_preference=payment_preference,
                milestones=plan,
                completion_weeks=completion_weeks or 1,
                cover_letter=cover_letter or '',
            )
            queue_notification(
                job.client_id, 'new_proposal', 'New proposal',
                f'{freelancer.display_name} submitted a proposal for "{job.title}"',
                job_id=job.id, sender_id=freelancer.id, proposal_id=proposal.id,
            )
    except IntegrityError:
        raise ValidationError("You have already submitted a proposal for this job")

    return proposal


def decline_proposal(proposal, actor):
    if actor.id != proposal.client_id:
        raise Unauthorized("Only the job's client can decline proposals")

    with transaction.atomic():
        updated = Proposal.objects.filter(pk=proposal.pk, status=Proposal.PENDING).update(
            status=Proposal.REJECTED,
        )
        if not updated:
            raise InvalidState(f"Proposal {proposal.id} is not pending")
        queue_notification(
            proposal.freelancer_id, 'proposal_declined', 'Proposal declined',
            'Your proposal was declined',
            job_id=proposal.job_id, sender_id=actor.id, proposal_id=proposal.id,
        )

    proposal.refresh_from_db()
    return proposal


def withdraw_proposal(proposal, actor):
    if actor.id != proposal.freelancer_id:
        raise Unauthorized("Only the freelancer who submitted a proposal can withdraw it")

    updated = Proposal.objects.filter(pk=proposal.pk, status=Proposal.PENDING).update(
        status=Proposal.WITHDRAWN,
    )
    if not updated:
        raise InvalidState(f"Proposal {proposal.id} is not pending")

    proposal.refresh_from_db()
    return proposal
