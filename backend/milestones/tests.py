import shutil
import tempfile

from django.contrib.auth import get_user_model
from django.core.files.storage import default_storage
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import TestCase, override_settings
from django.urls import reverse
from djmoney.money import Money
from rest_framework.test import APIClient

from activity.models import OutboxEvent
from admin_dashboard.models import DisputeCase
from jobs.models import COMPLETION, PER_MILESTONE, Job
from marketplace.exceptions import (
    InvalidState, NotAJobParticipant, NotFound, Unauthorized, ValidationError,
)
from .models import Milestone
from .services import (
    attach_file, create_milestones, delete_attachment, mark_complete, normalize_milestone_plan,
    raise_dispute, start_milestone, update_progress, upload_attachment,
)

User = get_user_model()

MEDIA_ROOT = tempfile.mkdtemp()


def ngn(amount):
    return Money(amount, 'NGN')


class MilestoneStoreTestCase(TestCase):
    """Test milestone progress, attachments and disputes"""

    def setUp(self):
        self.client_user = User.objects.create_user(username='client', password='testpass123', role='client')
        self.freelancer = User.objects.create_user(username='freelancer', password='testpass123', role='freelancer')
        self.outsider = User.objects.create_user(username='outsider', password='testpass123', role='freelancer')
        self.job = Job.objects.create(
            client=self.client_user,
            title='Mobile app',
            description='Two screens',
            budget=ngn(30000),
            status=Job.IN_PROGRESS,
            awarded_to=self.freelancer,
            accepted_amount=ngn(30000),
            payment_preference=PER_MILESTONE,
        )
        self.first, self.second = create_milestones(self.job, [
            {'name': 'Screens', 'amount': '10000', 'duration_weeks': 1},
            {'name': 'API', 'amount': '20000', 'duration_weeks': 2},
        ])

    def test_create_milestones_seeds_pending_sequence(self):
        milestones = list(Milestone.objects.filter(job=self.job))

        self.assertEqual([m.sequence for m in milestones], [1, 2])
        self.assertEqual([m.status for m in milestones], [Milestone.PENDING, Milestone.PENDING])
        self.assertEqual(milestones[1].amount, ngn(20000))

        with self.assertRaises(InvalidState):
            create_milestones(self.job, [])

    def test_completion_job_gets_synthetic_milestone(self):
        job = Job.objects.create(
            client=self.client_user, title='Essay', description='One essay', budget=ngn(5000),
            status=Job.IN_PROGRESS, awarded_to=self.freelancer, accepted_amount=ngn(5000),
            accepted_duration=2, payment_preference=COMPLETION,
        )

        milestones = create_milestones(job, [])

        self.assertEqual(len(milestones), 1)
        self.assertEqual(milestones[0].amount, ngn(5000))
        self.assertEqual(milestones[0].duration_weeks, 2)

    def test_normalize_rejects_bad_items(self):
        with self.assertRaises(ValidationError):
            normalize_milestone_plan([{'name': '', 'amount': '100'}], ngn(100))
        with self.assertRaises(ValidationError):
            normalize_milestone_plan([{'name': 'A', 'amount': '-100'}], ngn(-100))
        with self.assertRaises(ValidationError):
            normalize_milestone_plan([{'name': 'A', 'amount': 'abc'}], ngn(100))

    def test_progress_bounds(self):
        for value in (-1, 101, 'lots'):
            with self.assertRaises(ValidationError):
                update_progress(self.job.id, self.first.id, value, self.freelancer)

    def test_progress_moves_pending_to_in_progress(self):
        milestone = update_progress(self.job.id, self.first.id, 40, self.freelancer)

        self.assertEqual(milestone.progress, 40)
        self.assertEqual(milestone.status, Milestone.IN_PROGRESS)
        self.assertIsNotNone(milestone.start_date)

    def test_only_freelancer_updates_progress(self):
        with self.assertRaises(Unauthorized):
            update_progress(self.job.id, self.first.id, 40, self.client_user)

    def test_start_milestone(self):
        milestone = start_milestone(self.job.id, self.first.id, self.freelancer)
        self.assertEqual(milestone.status, Milestone.IN_PROGRESS)

        with self.assertRaises(InvalidState):
            start_milestone(self.job.id, self.first.id, self.freelancer)

    def test_mark_complete_is_client_only(self):
        with self.assertRaises(Unauthorized):
            mark_complete(self.job.id, self.first.id, self.freelancer)

        milestone = mark_complete(self.job.id, self.first.id, self.client_user)
        self.assertEqual(milestone.status, Milestone.COMPLETED)
        self.assertEqual(milestone.progress, 100)

    def test_attach_file_keeps_status(self):
        attach_file(self.job.id, self.first.id, {'name': 'brief.pdf', 'url': '/media/brief.pdf'}, self.client_user)

        self.first.refresh_from_db()
        self.assertEqual(len(self.first.attachments), 1)
        self.assertEqual(self.first.attachments[0]['uploaded_by'], self.client_user.id)
        self.assertEqual(self.first.status, Milestone.PENDING)

        with self.assertRaises(NotAJobParticipant):
            attach_file(self.job.id, self.first.id, {'name': 'x'}, self.outsider)

    @override_settings(MEDIA_ROOT=MEDIA_ROOT)
    def test_upload_attachment_path(self):
        upload = SimpleUploadedFile('Design.PNG', b'fake-image', content_type='image/png')

        entry = upload_attachment(self.job.id, self.first.id, upload, self.freelancer)

        self.assertTrue(entry['path'].startswith(f'jobs/{self.job.id}/milestones/{self.first.id}/attachments/'))
        self.assertTrue(entry['path'].endswith('.png'))
        self.assertEqual(entry['name'], 'Design.PNG')
        self.assertEqual(entry['content_type'], 'image/png')

    @override_settings(MEDIA_ROOT=MEDIA_ROOT)
    def test_delete_attachment_removes_entry_and_file(self):
        upload = SimpleUploadedFile('notes.txt', b'draft', content_type='text/plain')
        entry = upload_attachment(self.job.id, self.first.id, upload, self.freelancer)
        self.assertTrue(default_storage.exists(entry['path']))

        with self.assertRaises(NotAJobParticipant):
            delete_attachment(self.job.id, self.first.id, entry['id'], self.outsider)

        with self.captureOnCommitCallbacks(execute=True):
            delete_attachment(self.job.id, self.first.id, entry['id'], self.client_user)

        self.first.refresh_from_db()
        self.assertEqual(self.first.attachments, [])
        self.assertFalse(default_storage.exists(entry['path']))
        self.assertTrue(OutboxEvent.objects.filter(payload__activity_type='delete_attachment').exists())

        with self.assertRaises(NotFound):
            delete_attachment(self.job.id, self.first.id, entry['id'], self.client_user)

    def test_raise_dispute(self):
        case = raise_dispute(self.job.id, self.first.id, self.freelancer, 'Requirements changed')

        self.first.refresh_from_db()
        self.assertEqual(self.first.status, Milestone.DISPUTED)
        self.assertEqual(case.status, DisputeCase.OPEN)
        self.assertEqual(case.raised_by, self.freelancer)

        with self.assertRaises(InvalidState):
            raise_dispute(self.job.id, self.first.id, self.client_user, 'Again')
        with self.assertRaises(InvalidState):
            update_progress(self.job.id, self.first.id, 50, self.freelancer)

    def test_outsider_cannot_dispute(self):
        with self.assertRaises(NotAJobParticipant):
            raise_dispute(self.job.id, self.first.id, self.outsider, 'Spam')

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(MEDIA_ROOT, ignore_errors=True)
        super().tearDownClass()


class MilestoneAPITestCase(TestCase):
    """Test the milestone endpoints"""

    def setUp(self):
        self.client_user = User.objects.create_user(username='client', password='testpass123', role='client')
        self.freelancer = User.objects.create_user(username='freelancer', password='testpass123', role='freelancer')
        self.outsider = User.objects.create_user(username='outsider', password='testpass123', role='freelancer')
        self.job = Job.objects.create(
            client=self.client_user, title='Mobile app', description='Two screens', budget=ngn(30000),
            status=Job.IN_PROGRESS, awarded_to=self.freelancer, accepted_amount=ngn(30000),
            payment_preference=PER_MILESTONE,
        )
        self.first, self.second = create_milestones(self.job, [
            {'name': 'Screens', 'amount': '10000'},
            {'name': 'API', 'amount': '20000'},
        ])
        self.api = APIClient()

    def test_list_for_participants_only(self):
        self.api.force_authenticate(self.freelancer)
        response = self.api.get(reverse('milestone-list', args=[self.job.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 2)

        self.api.force_authenticate(self.outsider)
        response = self.api.get(reverse('milestone-list', args=[self.job.id]))
        self.assertEqual(response.status_code, 403)

    def test_progress_endpoint(self):
        self.api.force_authenticate(self.freelancer)
        response = self.api.post(
            reverse('milestone-progress', args=[self.job.id, self.first.id]), {'progress': 60}, format='json'
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'in_progress')

    def test_complete_endpoint_rejects_freelancer(self):
        self.api.force_authenticate(self.freelancer)
        response = self.api.post(reverse('milestone-complete', args=[self.job.id, self.first.id]))

        self.assertEqual(response.status_code, 403)
        self.first.refresh_from_db()
        self.assertEqual(self.first.status, Milestone.PENDING)

    def test_delete_attachment_endpoint(self):
        entry = attach_file(self.job.id, self.first.id, {'name': 'brief.pdf', 'url': '/media/brief.pdf'}, self.client_user)
        url = reverse('milestone-attachment-delete', args=[self.job.id, self.first.id, entry['id']])

        self.api.force_authenticate(self.outsider)
        self.assertEqual(self.api.delete(url).status_code, 403)

        self.api.force_authenticate(self.freelancer)
        self.assertEqual(self.api.delete(url).status_code, 204)
        self.assertEqual(self.api.delete(url).status_code, 404)

        self.first.refresh_from_db()
        self.assertEqual(self.first.attachments, [])
