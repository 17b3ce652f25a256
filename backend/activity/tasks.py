import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from .models import OutboxEvent
from .services import deliver

logger = logging.getLogger(__name__)

@shared_task
def deliver_event(event_id):
    try:
        event = OutboxEvent.objects.get(id=event_id)
    except OutboxEvent.DoesNotExist:
        return False
    return deliver(event)

@shared_task
def dispatch_pending_events(batch_size=200):
    """
    Periodic sweep for events whose post-commit dispatch never ran or failed
    """
    delivered = 0
    for event in OutboxEvent.objects.filter(status=OutboxEvent.PENDING)[:batch_size]:
        if deliver(event):
            delivered += 1
    return delivered

@shared_task
def prune_delivered_events(retention_days=None):
    """
    Periodic cleanup of delivered outbox rows older than the retention window
    """
    days = settings.OUTBOX_RETENTION_DAYS if retention_days is None else retention_days
    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = OutboxEvent.objects.filter(
        status=OutboxEvent.DELIVERED, delivered_at__lt=cutoff,
    ).delete()
    if deleted:
        logger.info("Pruned %s delivered outbox events", deleted)
    return deleted
