"""
Activity feed and notification emission.

Callers inside a financial transaction only write OutboxEvent rows; delivery
into the Activity/Notification tables happens after commit in a Celery task
that catches its own failures. Nothing here can undo a committed payment.
"""
import logging

from django.db import transaction
from django.utils import timezone

from .models import Activity, Notification, OutboxEvent

logger = logging.getLogger(__name__)


def _queue(kind, payload):
    event = OutboxEvent.objects.create(kind=kind, payload=payload)
    transaction.on_commit(lambda: _enqueue_delivery(event.id))
    return event


def _enqueue_delivery(event_id):
    from .tasks import deliver_event
    try:
        deliver_event.delay(event_id)
    except Exception:
        # Left pending for the periodic sweep
        logger.exception("Could not enqueue outbox event %s", event_id)


def queue_activity(user_id, activity_type, text, job_id=None, **metadata):
    return _queue(OutboxEvent.ACTIVITY, {
        'user_id': user_id,
        'activity_type': activity_type,
        'text': text,
        'job_id': job_id,
        'metadata': metadata,
    })


def queue_notification(user_id, notification_type, title, message, job_id=None, sender_id=None, **data):
    return _queue(OutboxEvent.NOTIFICATION, {
        'user_id': user_id,
        'notification_type': notification_type,
        'title': title,
        'message': message,
        'job_id': job_id,
        'sender_id': sender_id,
        'data': data,
    })


def record_activity(entry):
    return Activity.objects.create(
        user_id=entry['user_id'],
        activity_type=entry['activity_type'],
        text=entry['text'],
        job_id=entry.get('job_id'),
        metadata=entry.get('metadata') or {},
    )


def send_notification(entry):
    return Notification.objects.create(
        user_id=entry['user_id'],
        notification_type=entry['notification_type'],
        title=entry['title'],
        message=entry['message'],
        job_id=entry.get('job_id'),
        sender_id=entry.get('sender_id'),
        data=entry.get('data') or {},
    )


SINKS = {
    OutboxEvent.ACTIVITY: record_activity,
    OutboxEvent.NOTIFICATION: send_notification,
}


def deliver(event):
    """Push one outbox event into its sink. Returns True once delivered."""
    if event.status != OutboxEvent.PENDING:
        return event.status == OutboxEvent.DELIVERED

    try:
        with transaction.atomic():
            SINKS[event.kind](event.payload)
            updated = OutboxEvent.objects.filter(pk=event.pk, status=OutboxEvent.PENDING).update(
                status=OutboxEvent.DELIVERED,
                attempts=event.attempts + 1,
                delivered_at=timezone.now(),
            )
            if not updated:
                # Another worker delivered it first
                transaction.set_rollback(True)
                return True
    except Exception as e:
        attempts = event.attempts + 1
        status = OutboxEvent.FAILED if attempts >= OutboxEvent.MAX_ATTEMPTS else OutboxEvent.PENDING
        OutboxEvent.objects.filter(pk=event.pk).update(attempts=attempts, status=status, last_error=str(e))
        logger.error("Delivery of %s event %s failed (attempt %s): %s", event.kind, event.pk, attempts, e)
        return False

    return True


def mark_notification_read(notification):
    if not notification.read:
        notification.read = True
        notification.read_at = timezone.now()
        notification.save(update_fields=['read', 'read_at'])
    return notification
