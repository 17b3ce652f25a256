import logging

from celery import shared_task
from django.db.models import Sum

from .models import SystemAlert

logger = logging.getLogger(__name__)

def raise_alert(alert_type, job, title, description, severity=SystemAlert.HIGH, **metadata):
    """Create an alert unless an unresolved one of the same type is open for the job"""
    if SystemAlert.objects.filter(alert_type=alert_type, job=job, is_resolved=False).exists():
        return None

    logger.error("%s: %s", title, description)
    return SystemAlert.objects.create(
        title=title,
        description=description,
        alert_type=alert_type,
        severity=severity,
        job=job,
        metadata=metadata,
    )

@shared_task
def check_escrow_consistency():
    """
    Periodic task: every held escrow must equal the accepted amount minus
    the paid milestones, and every awarded job must have milestones.
    """
    from jobs.models import Job
    from milestones.models import Milestone
    from wallet.models import Escrow

    alerts = 0

    for escrow in Escrow.objects.filter(status=Escrow.HELD).select_related('job'):
        job = escrow.job
        paid = Milestone.objects.filter(job=job, payment_status=Milestone.PAID).aggregate(
            total=Sum('amount'))['total'] or 0
        accepted = job.accepted_amount.amount if job.accepted_amount is not None else 0
        expected = accepted - paid

        if escrow.amount.amount != expected:
            created = raise_alert(
                SystemAlert.ESCROW_MISMATCH, job,
                f'Escrow mismatch on job {job.id}',
                f'Escrow holds {escrow.amount.amount} but accepted amount {accepted} '
                f'less paid milestones {paid} is {expected}',
                severity=SystemAlert.CRITICAL,
                escrow_amount=str(escrow.amount.amount),
                expected=str(expected),
            )
            alerts += created is not None

    awarded_without_milestones = Job.objects.filter(
        status=Job.IN_PROGRESS, milestones__isnull=True,
    ).distinct()
    for job in awarded_without_milestones:
        created = raise_alert(
            SystemAlert.MISSING_MILESTONES, job,
            f'Job {job.id} has no milestones',
            f'Job "{job.title}" is in progress but no milestones were created',
        )
        alerts += created is not None

    return alerts
