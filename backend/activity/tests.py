from datetime import timedelta
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from .models import Activity, Notification, OutboxEvent
from .services import queue_activity, queue_notification
from .tasks import deliver_event, dispatch_pending_events, prune_delivered_events

User = get_user_model()


class OutboxTestCase(TestCase):
    """Test outbox delivery into the activity and notification sinks"""

    def setUp(self):
        self.user = User.objects.create_user(username='test_user', password='testpass123')

    def test_queue_only_writes_outbox(self):
        queue_activity(self.user.id, 'deposit', 'Funded wallet', amount='500.00')

        self.assertEqual(OutboxEvent.objects.filter(status=OutboxEvent.PENDING).count(), 1)
        self.assertFalse(Activity.objects.exists())

    def test_enqueue_after_commit(self):
        with patch('activity.tasks.deliver_event.delay') as mock_delay:
            with self.captureOnCommitCallbacks(execute=True):
                event = queue_notification(self.user.id, 'new_proposal', 'New proposal', 'Someone bid')

        mock_delay.assert_called_once_with(event.id)

    def test_enqueue_failure_is_logged_not_raised(self):
        with patch('activity.tasks.deliver_event.delay', side_effect=ConnectionError('broker down')):
            with self.assertLogs('activity.services', level='ERROR'):
                with self.captureOnCommitCallbacks(execute=True):
                    queue_activity(self.user.id, 'deposit', 'Funded wallet')

        self.assertEqual(OutboxEvent.objects.get().status, OutboxEvent.PENDING)

    def test_deliver_event(self):
        event = queue_notification(self.user.id, 'new_proposal', 'New proposal', 'Someone bid', proposal_id=3)

        result = deliver_event.apply(args=(event.id,))
        self.assertTrue(result.result)

        event.refresh_from_db()
        notification = Notification.objects.get(user=self.user)
        self.assertEqual(event.status, OutboxEvent.DELIVERED)
        self.assertEqual(notification.data, {'proposal_id': 3})

        # Redelivery is a no-op
        deliver_event.apply(args=(event.id,))
        self.assertEqual(Notification.objects.count(), 1)

    def test_failed_delivery_stays_pending_then_gives_up(self):
        event = queue_activity(self.user.id, 'deposit', 'Funded wallet')
        failing_sink = Mock(side_effect=RuntimeError('sink down'))

        with patch.dict('activity.services.SINKS', {OutboxEvent.ACTIVITY: failing_sink}):
            self.assertFalse(deliver_event.apply(args=(event.id,)).result)
            event.refresh_from_db()
            self.assertEqual(event.status, OutboxEvent.PENDING)

            for _ in range(OutboxEvent.MAX_ATTEMPTS - 1):
                deliver_event.apply(args=(event.id,))

        event.refresh_from_db()
        self.assertFalse(Activity.objects.exists())
        self.assertEqual(event.status, OutboxEvent.FAILED)
        self.assertEqual(event.attempts, OutboxEvent.MAX_ATTEMPTS)
        self.assertTrue(event.last_error)

    def test_sweep_delivers_pending(self):
        queue_activity(self.user.id, 'deposit', 'One')
        queue_activity(self.user.id, 'withdrawal', 'Two')

        result = dispatch_pending_events.apply()

        self.assertEqual(result.result, 2)
        self.assertEqual(Activity.objects.filter(user=self.user).count(), 2)

    @override_settings(OUTBOX_RETENTION_DAYS=7)
    def test_prune_only_old_delivered_events(self):
        old = queue_activity(self.user.id, 'deposit', 'Old')
        recent = queue_activity(self.user.id, 'deposit', 'Recent')
        pending = queue_activity(self.user.id, 'deposit', 'Pending')
        dispatch_pending_events.apply()
        OutboxEvent.objects.filter(pk__in=[old.pk, pending.pk]).update(
            delivered_at=timezone.now() - timedelta(days=30),
        )
        OutboxEvent.objects.filter(pk=pending.pk).update(status=OutboxEvent.PENDING)

        result = prune_delivered_events.apply()

        self.assertEqual(result.result, 1)
        self.assertEqual(
            set(OutboxEvent.objects.values_list('pk', flat=True)), {recent.pk, pending.pk},
        )
        # Pruning the outbox leaves the materialised feed alone
        self.assertEqual(Activity.objects.filter(user=self.user).count(), 3)


class ActivityAPITestCase(TestCase):
    """Test the feed endpoints"""

    def setUp(self):
        self.user = User.objects.create_user(username='test_user', password='testpass123')
        self.other = User.objects.create_user(username='other', password='testpass123')
        self.api = APIClient()
        self.api.force_authenticate(self.user)

    def test_mark_notification_read(self):
        notification = Notification.objects.create(
            user=self.user, notification_type='job_completed', title='Done', message='Job done'
        )

        response = self.api.post(reverse('notification-read', args=[notification.id]))

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['read'])
        self.assertIsNotNone(response.data['read_at'])

    def test_cannot_read_someone_elses_notification(self):
        notification = Notification.objects.create(
            user=self.other, notification_type='job_completed', title='Done', message='Job done'
        )

        response = self.api.post(reverse('notification-read', args=[notification.id]))

        self.assertEqual(response.status_code, 404)

    def test_activity_feed_is_per_user(self):
        Activity.objects.create(user=self.user, activity_type='deposit', text='Mine')
        Activity.objects.create(user=self.other, activity_type='deposit', text='Theirs')

        response = self.api.get(reverse('activities'))

        self.assertEqual([a['text'] for a in response.data], ['Mine'])
