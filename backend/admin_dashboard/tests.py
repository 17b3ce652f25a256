from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from djmoney.money import Money
from rest_framework.test import APIClient

from jobs.models import Job, Proposal, COMPLETION
from jobs.workflow import accept_proposal
from wallet.models import Escrow, Wallet
from .models import SystemAlert
from .tasks import check_escrow_consistency

User = get_user_model()


def ngn(amount):
    return Money(amount, 'NGN')


class EscrowConsistencyTestCase(TestCase):
    """Test the periodic escrow consistency monitor"""

    def setUp(self):
        self.client_user = User.objects.create_user(username='client', password='testpass123', role='client')
        self.freelancer = User.objects.create_user(username='freelancer', password='testpass123', role='freelancer')
        Wallet.objects.create(user=self.client_user, balance=ngn(10000))
        Wallet.objects.create(user=self.freelancer)
        self.job = Job.objects.create(
            client=self.client_user, title='Copywriting', description='Ten posts', budget=ngn(10000),
        )
        proposal = Proposal.objects.create(
            job=self.job, freelancer=self.freelancer, client=self.client_user,
            proposed_amount=ngn(10000), payment_preference=COMPLETION,
        )
        accept_proposal(proposal.id, self.job.id)

    def test_consistent_state_raises_nothing(self):
        self.assertEqual(check_escrow_consistency.apply().result, 0)
        self.assertFalse(SystemAlert.objects.exists())

    def test_mismatch_is_flagged_once(self):
        Escrow.objects.filter(job=self.job).update(amount=ngn(4000))

        self.assertEqual(check_escrow_consistency.apply().result, 1)
        self.assertEqual(check_escrow_consistency.apply().result, 0)

        alert = SystemAlert.objects.get()
        self.assertEqual(alert.alert_type, SystemAlert.ESCROW_MISMATCH)
        self.assertEqual(alert.severity, SystemAlert.CRITICAL)
        self.assertEqual(alert.job, self.job)

    def test_job_without_milestones_is_flagged(self):
        self.job.milestones.all().delete()

        check_escrow_consistency.apply()

        self.assertTrue(SystemAlert.objects.filter(
            alert_type=SystemAlert.MISSING_MILESTONES, job=self.job,
        ).exists())


class SystemAlertAPITestCase(TestCase):
    """Test alert listing and resolution"""

    def setUp(self):
        self.admin = User.objects.create_user(username='admin', password='testpass123', role='admin')
        self.user = User.objects.create_user(username='user', password='testpass123', role='client')
        self.alert = SystemAlert.objects.create(
            title='Escrow mismatch', description='Off by 10', alert_type=SystemAlert.ESCROW_MISMATCH,
            severity=SystemAlert.CRITICAL,
        )
        self.api = APIClient()

    def test_admin_only(self):
        self.api.force_authenticate(self.user)
        self.assertEqual(self.api.get(reverse('system-alerts')).status_code, 403)

    def test_resolve_alert(self):
        self.api.force_authenticate(self.admin)

        response = self.api.patch(
            reverse('system-alert-detail', args=[self.alert.id]), {'is_resolved': True}, format='json'
        )

        self.assertEqual(response.status_code, 200)
        self.alert.refresh_from_db()
        self.assertTrue(self.alert.is_resolved)
        self.assertEqual(self.alert.resolved_by, self.admin)
        self.assertIsNotNone(self.alert.resolved_at)
