"""
Milestone store: per-job ordered milestones, progress, attachments and
disputes. Payment state is only ever changed by jobs.workflow.
"""
import logging
import os
import uuid
from decimal import Decimal

from django.core.files.storage import default_storage
from django.db import transaction
from django.utils import timezone

from activity.services import queue_activity, queue_notification
from jobs.models import COMPLETION, PER_MILESTONE, Job
from marketplace.exceptions import (
    AlreadyCompleted, InvalidState, NotAJobParticipant, NotFound, Unauthorized, ValidationError,
)
from wallet.ledger import as_money
from .models import Milestone

logger = logging.getLogger(__name__)


def normalize_milestone_plan(milestones, total_amount):
    """
    Validate a proposal's milestone list against its total.

    Returns a JSON-safe list of {name, description, amount, duration_weeks}.
    """
    total_amount = as_money(total_amount)
    if not milestones:
        raise ValidationError("At least one milestone is required for per-milestone payment")

    plan = []
    running = Decimal('0')
    for index, item in enumerate(milestones, start=1):
        name = (item.get('name') or '').strip()
        if not name:
            raise ValidationError(f"Milestone {index} needs a name")
        amount = as_money(item.get('amount'))
        if amount.amount <= 0:
            raise ValidationError(f"Milestone {index} amount must be positive")
        try:
            duration = int(item.get('duration_weeks') or item.get('duration') or 1)
        except (TypeError, ValueError):
            raise ValidationError(f"Milestone {index} has an invalid duration")
        if duration < 1:
            raise ValidationError(f"Milestone {index} duration must be at least one week")

        running += amount.amount
        plan.append({
            'name': name,
            'description': item.get('description', ''),
            'amount': str(amount.amount),
            'duration_weeks': duration,
        })

    if running != total_amount.amount:
        raise ValidationError(
            f"Milestone amounts total {running} but the proposal is for {total_amount.amount}"
        )
    return plan


def create_milestones(job, snapshot):
    """
    Seed the milestone store from an accepted proposal.

    Completion-preference jobs get one milestone covering the whole amount.
    """
    if job.milestones.exists():
        raise InvalidState(f"Job {job.id} already has milestones")

    if job.payment_preference == COMPLETION:
        snapshot = [{
            'name': 'Project Completion',
            'description': 'Full project delivery',
            'amount': str(job.accepted_amount.amount),
            'duration_weeks': job.accepted_duration or job.duration_weeks,
        }]
    elif job.payment_preference == PER_MILESTONE:
        snapshot = normalize_milestone_plan(snapshot, job.accepted_amount)
    else:
        raise ValidationError(f"Unknown payment preference {job.payment_preference!r}")

    return Milestone.objects.bulk_create([
        Milestone(
            job=job,
            sequence=sequence,
            name=item['name'],
            description=item.get('description', ''),
            amount=as_money(item['amount']),
            duration_weeks=item.get('duration_weeks') or 1,
        )
        for sequence, item in enumerate(snapshot, start=1)
    ])


def get_milestone(job_id, milestone_id, for_update=False):
    queryset = Milestone.objects.select_for_update() if for_update else Milestone.objects
    try:
        return queryset.get(job_id=job_id, id=milestone_id)
    except Milestone.DoesNotExist:
        raise NotFound(f"Milestone {milestone_id} not found on job {job_id}")


def _get_job(job_id):
    try:
        return Job.objects.get(id=job_id)
    except Job.DoesNotExist:
        raise NotFound(f"Job {job_id} not found")


def _require_freelancer(job, actor):
    if job.role_of(actor) != Job.FREELANCER_ROLE:
        raise Unauthorized("Only the awarded freelancer can do this")


def _require_active(job):
    if job.status != Job.IN_PROGRESS:
        raise InvalidState(f"Job {job.id} is {job.status}")


def start_milestone(job_id, milestone_id, actor):
    job = _get_job(job_id)
    _require_freelancer(job, actor)
    _require_active(job)

    with transaction.atomic():
        milestone = get_milestone(job_id, milestone_id, for_update=True)
        if milestone.status != Milestone.PENDING:
            raise InvalidState(f"Milestone {milestone.id} is {milestone.status}")

        milestone.status = Milestone.IN_PROGRESS
        milestone.start_date = timezone.now()
        milestone.save(update_fields=['status', 'start_date', 'updated_at'])
        queue_notification(
            job.client_id, 'milestone_started', 'Milestone started',
            f'Work has started on "{milestone.name}"',
            job_id=job.id, sender_id=actor.id, milestone_id=milestone.id,
        )

    return milestone


def update_progress(job_id, milestone_id, progress, actor):
    try:
        progress = int(progress)
    except (TypeError, ValueError):
        raise ValidationError("Progress must be a whole number")
    if not 0 <= progress <= 100:
        raise ValidationError("Progress must be between 0 and 100")

    job = _get_job(job_id)
    _require_freelancer(job, actor)
    _require_active(job)

    with transaction.atomic():
        milestone = get_milestone(job_id, milestone_id, for_update=True)
        if milestone.status in (Milestone.COMPLETED, Milestone.DISPUTED):
            raise InvalidState(f"Milestone {milestone.id} is {milestone.status}")

        milestone.progress = progress
        fields = ['progress', 'updated_at']
        if milestone.status == Milestone.PENDING and progress > 0:
            milestone.status = Milestone.IN_PROGRESS
            milestone.start_date = milestone.start_date or timezone.now()
            fields += ['status', 'start_date']
        milestone.save(update_fields=fields)

    return milestone


def mark_complete(job_id, milestone_id, actor):
    """
    Client sign-off on a milestone. Resolves any open dispute on it.

    Must run inside the caller's atomic block when payment follows.
    """
    job = _get_job(job_id)
    if job.role_of(actor) != Job.CLIENT_ROLE:
        logger.warning("User %s tried to complete milestone %s on job %s",
                       getattr(actor, 'id', actor), milestone_id, job_id)
        raise Unauthorized("Only the client can mark a milestone complete")

    with transaction.atomic():
        milestone = get_milestone(job_id, milestone_id, for_update=True)
        if milestone.status == Milestone.COMPLETED:
            raise AlreadyCompleted(f"Milestone {milestone.id} is already completed")

        if milestone.status == Milestone.DISPUTED:
            from admin_dashboard.models import DisputeCase
            milestone.disputes.filter(status__in=[DisputeCase.OPEN, DisputeCase.UNDER_REVIEW]).update(
                status=DisputeCase.RESOLVED,
                resolution_notes='Accepted by client',
                resolved_by=actor,
                resolved_at=timezone.now(),
            )

        milestone.status = Milestone.COMPLETED
        milestone.progress = 100
        milestone.completed_at = timezone.now()
        milestone.save(update_fields=['status', 'progress', 'completed_at', 'updated_at'])
        queue_notification(
            job.awarded_to_id, 'milestone_completed', 'Milestone approved',
            f'The client approved "{milestone.name}"',
            job_id=job.id, sender_id=job.client_id, milestone_id=milestone.id,
        )

    return milestone


def attach_file(job_id, milestone_id, file_ref, uploader):
    job = _get_job(job_id)
    if not job.is_participant(uploader):
        raise NotAJobParticipant()

    entry = dict(file_ref)
    entry.setdefault('id', uuid.uuid4().hex)
    entry.setdefault('uploaded_by', getattr(uploader, 'id', uploader))
    entry.setdefault('uploaded_at', timezone.now().isoformat())

    with transaction.atomic():
        milestone = get_milestone(job_id, milestone_id, for_update=True)
        milestone.attachments = list(milestone.attachments) + [entry]
        milestone.save(update_fields=['attachments', 'updated_at'])

    return entry


def upload_attachment(job_id, milestone_id, uploaded_file, uploader):
    """Store a file and record it on the milestone."""
    job = _get_job(job_id)
    if not job.is_participant(uploader):
        raise NotAJobParticipant()
    get_milestone(job_id, milestone_id)

    _, ext = os.path.splitext(uploaded_file.name)
    file_id = uuid.uuid4().hex
    path = f"jobs/{job_id}/milestones/{milestone_id}/attachments/{file_id}{ext.lower()}"
    stored_path = default_storage.save(path, uploaded_file)

    return attach_file(job_id, milestone_id, {
        'id': file_id,
        'name': uploaded_file.name,
        'path': stored_path,
        'url': default_storage.url(stored_path),
        'size': uploaded_file.size,
        'content_type': getattr(uploaded_file, 'content_type', '') or '',
    }, uploader)


def delete_attachment(job_id, milestone_id, attachment_id, actor):
    """Remove an attachment from the milestone and from storage."""
    job = _get_job(job_id)
    if not job.is_participant(actor):
        raise NotAJobParticipant()

    with transaction.atomic():
        milestone = get_milestone(job_id, milestone_id, for_update=True)
        entry = next((a for a in milestone.attachments if a.get('id') == attachment_id), None)
        if entry is None:
            raise NotFound(f"Attachment {attachment_id} not found on milestone {milestone_id}")

        milestone.attachments = [a for a in milestone.attachments if a.get('id') != attachment_id]
        milestone.save(update_fields=['attachments', 'updated_at'])
        queue_activity(
            actor.id, 'delete_attachment', f'Removed "{entry.get("name", "file")}" from "{milestone.name}"',
            job_id=job.id, milestone_id=milestone.id, attachment_id=attachment_id,
        )

        path = entry.get('path')
        if path:
            transaction.on_commit(lambda: default_storage.delete(path))

    return entry


def raise_dispute(job_id, milestone_id, actor, reason):
    from admin_dashboard.models import DisputeCase

    reason = (reason or '').strip()
    if not reason:
        raise ValidationError("A reason is required to raise a dispute")

    job = _get_job(job_id)
    role = job.role_of(actor)
    if role is None:
        raise NotAJobParticipant()
    _require_active(job)

    with transaction.atomic():
        milestone = get_milestone(job_id, milestone_id, for_update=True)
        if milestone.is_paid or milestone.status == Milestone.COMPLETED:
            raise InvalidState(f"Milestone {milestone.id} is already completed")
        if milestone.status == Milestone.DISPUTED:
            raise InvalidState(f"Milestone {milestone.id} is already disputed")

        milestone.status = Milestone.DISPUTED
        milestone.save(update_fields=['status', 'updated_at'])
        case = DisputeCase.objects.create(
            title=f'Dispute on "{milestone.name}"',
            description=reason,
            job=job,
            milestone=milestone,
            raised_by=actor,
        )

        other_party = job.awarded_to_id if role == Job.CLIENT_ROLE else job.client_id
        queue_notification(
            other_party, 'milestone_disputed', 'Milestone disputed',
            f'A dispute was raised on "{milestone.name}"',
            job_id=job.id, sender_id=actor.id, milestone_id=milestone.id,
        )
        queue_activity(actor.id, 'dispute', f'Raised a dispute on "{milestone.name}"', job_id=job.id)

    logger.info("Dispute %s opened on milestone %s by user %s", case.id, milestone.id, actor.id)
    return case
