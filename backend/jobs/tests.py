from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db.models import Sum
from django.test import TestCase, override_settings
from django.urls import reverse
from djmoney.money import Money
from rest_framework.test import APIClient

from activity.models import OutboxEvent
from marketplace.exceptions import (
    AlreadyCompleted, AlreadyPaid, AlreadyReviewed, InsufficientFunds, InvalidState,
    NotAJobParticipant, NotFound, Unauthorized, ValidationError,
)
from milestones.models import Milestone
from milestones.services import raise_dispute, start_milestone
from wallet.ledger import get_balance
from wallet.models import Escrow, Wallet, WalletTransaction
from .models import COMPLETION, PER_MILESTONE, Job, Proposal
from .services import create_job, create_proposal, decline_proposal, withdraw_proposal
from .workflow import (
    accept_proposal, cancel_job, complete_milestone, release_job_payment,
    release_milestone_payment, submit_job_review,
)

User = get_user_model()


def ngn(amount):
    return Money(amount, 'NGN')


class MarketplaceTestMixin:
    def setUp(self):
        self.client_user = User.objects.create_user(
            username='test_client',
            email='client@test.com',
            password='testpass123',
            role='client'
        )
        self.freelancer = User.objects.create_user(
            username='test_freelancer',
            email='freelancer@test.com',
            password='testpass123',
            role='freelancer'
        )
        self.other_freelancer = User.objects.create_user(
            username='other_freelancer',
            email='other@test.com',
            password='testpass123',
            role='freelancer'
        )
        Wallet.objects.create(user=self.client_user, balance=ngn(50000))
        Wallet.objects.create(user=self.freelancer)
        Wallet.objects.create(user=self.other_freelancer)

        self.job = create_job(self.client_user, 'Company website', 'Five page site', ngn(50000), 4)

    def per_milestone_proposal(self, freelancer=None):
        return create_proposal(
            self.job, freelancer or self.freelancer, ngn(50000), PER_MILESTONE,
            milestones=[
                {'name': 'Design', 'amount': '20000', 'duration_weeks': 1},
                {'name': 'Build', 'amount': '30000', 'duration_weeks': 3},
            ],
            completion_weeks=4,
        )

    def completion_proposal(self, freelancer=None):
        return create_proposal(
            self.job, freelancer or self.freelancer, ngn(50000), COMPLETION, completion_weeks=4,
        )

    def assert_escrow_consistent(self):
        job = Job.objects.get(pk=self.job.pk)
        paid = Milestone.objects.filter(job=job, payment_status=Milestone.PAID).aggregate(
            total=Sum('amount'))['total'] or Decimal('0')
        escrow = Escrow.objects.get(job=job)
        self.assertEqual(escrow.amount.amount, job.accepted_amount.amount - paid)


class JobServiceTestCase(MarketplaceTestMixin, TestCase):
    """Test job posting and proposal submission"""

    def test_create_job_requires_budget_in_wallet(self):
        with self.assertRaises(InsufficientFunds):
            create_job(self.client_user, 'Big job', 'Too expensive', ngn(60000))

    def test_only_clients_post_jobs(self):
        with self.assertRaises(Unauthorized):
            create_job(self.freelancer, 'Job', 'Desc', ngn(100))

    def test_milestones_must_sum_to_proposal_amount(self):
        with self.assertRaises(ValidationError):
            create_proposal(
                self.job, self.freelancer, ngn(50000), PER_MILESTONE,
                milestones=[
                    {'name': 'Design', 'amount': '20000'},
                    {'name': 'Build', 'amount': '20000'},
                ],
            )
        self.assertFalse(Proposal.objects.exists())

    def test_sub_cent_milestone_amounts_rejected(self):
        with self.assertRaises(ValidationError):
            create_proposal(
                self.job, self.freelancer, '100', PER_MILESTONE,
                milestones=[
                    {'name': 'One', 'amount': '33.333'},
                    {'name': 'Two', 'amount': '33.333'},
                    {'name': 'Three', 'amount': '33.334'},
                ],
            )
        with self.assertRaises(ValidationError):
            create_proposal(self.job, self.freelancer, '100.005', COMPLETION)
        self.assertFalse(Proposal.objects.exists())

    def test_three_way_split_pays_out_fully(self):
        proposal = create_proposal(
            self.job, self.freelancer, '100', PER_MILESTONE,
            milestones=[
                {'name': 'One', 'amount': '33.33'},
                {'name': 'Two', 'amount': '33.33'},
                {'name': 'Three', 'amount': '33.34'},
            ],
        )
        accept_proposal(proposal.id, self.job.id)

        for milestone in Milestone.objects.filter(job=self.job):
            release_milestone_payment(self.job.id, milestone.id)

        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.COMPLETED)
        self.assertEqual(Escrow.objects.get(job=self.job).amount, ngn(0))
        self.assertEqual(get_balance(self.freelancer.id), ngn(100))

    def test_per_milestone_requires_milestones(self):
        with self.assertRaises(ValidationError):
            create_proposal(self.job, self.freelancer, ngn(50000), PER_MILESTONE, milestones=[])

    def test_invalid_preference(self):
        with self.assertRaises(ValidationError):
            create_proposal(self.job, self.freelancer, ngn(50000), 'upfront')

    def test_client_cannot_bid_on_own_job(self):
        with self.assertRaises(Unauthorized):
            self.completion_proposal(freelancer=self.client_user)

    def test_duplicate_proposal(self):
        self.completion_proposal()
        with self.assertRaises(ValidationError):
            self.completion_proposal()

    def test_decline_and_withdraw(self):
        first = self.completion_proposal()
        second = self.completion_proposal(freelancer=self.other_freelancer)

        with self.assertRaises(Unauthorized):
            decline_proposal(first, self.freelancer)

        self.assertEqual(decline_proposal(first, self.client_user).status, Proposal.REJECTED)
        self.assertEqual(withdraw_proposal(second, self.other_freelancer).status, Proposal.WITHDRAWN)

        with self.assertRaises(InvalidState):
            withdraw_proposal(second, self.other_freelancer)


class AcceptProposalTestCase(MarketplaceTestMixin, TestCase):
    """Test awarding a job"""

    def test_accept_rejects_siblings_and_holds_escrow(self):
        target = self.per_milestone_proposal()
        sibling = self.completion_proposal(freelancer=self.other_freelancer)

        accept_proposal(target.id, self.job.id, actor=self.client_user)

        target.refresh_from_db()
        sibling.refresh_from_db()
        self.job.refresh_from_db()
        self.assertEqual(target.status, Proposal.ACCEPTED)
        self.assertEqual(sibling.status, Proposal.REJECTED)
        self.assertEqual(Proposal.objects.filter(job=self.job, status=Proposal.ACCEPTED).count(), 1)

        self.assertEqual(self.job.status, Job.IN_PROGRESS)
        self.assertEqual(self.job.awarded_to, self.freelancer)
        self.assertEqual(self.job.accepted_amount, ngn(50000))
        self.assertEqual(self.job.lifecycle_state, 'awarded')

        escrow = Escrow.objects.get(job=self.job)
        self.assertEqual(escrow.amount, ngn(50000))
        self.assertEqual(get_balance(self.client_user.id), ngn(0))

        milestones = list(self.job.milestones.all())
        self.assertEqual([m.amount for m in milestones], [ngn(20000), ngn(30000)])
        self.assertTrue(all(m.status == Milestone.PENDING and m.progress == 0 for m in milestones))
        self.assertTrue(OutboxEvent.objects.filter(kind=OutboxEvent.ACTIVITY).exists())

    def test_completion_preference_gets_single_milestone(self):
        proposal = self.completion_proposal()

        accept_proposal(proposal.id, self.job.id)

        milestones = list(Milestone.objects.filter(job=self.job))
        self.assertEqual(len(milestones), 1)
        self.assertEqual(milestones[0].amount, ngn(50000))

    def test_unknown_proposal(self):
        with self.assertRaises(NotFound):
            accept_proposal(99999, self.job.id)

    def test_accepting_twice(self):
        first = self.completion_proposal()
        second = self.completion_proposal(freelancer=self.other_freelancer)
        accept_proposal(first.id, self.job.id)

        with self.assertRaises(InvalidState):
            accept_proposal(second.id, self.job.id)

        self.assertEqual(Escrow.objects.filter(job=self.job).count(), 1)

    def test_insufficient_balance_rolls_back_everything(self):
        Wallet.objects.filter(user=self.client_user).update(balance=ngn(10000))
        proposal = self.completion_proposal()

        with self.assertRaises(InsufficientFunds):
            accept_proposal(proposal.id, self.job.id)

        proposal.refresh_from_db()
        self.job.refresh_from_db()
        self.assertEqual(proposal.status, Proposal.PENDING)
        self.assertEqual(self.job.status, Job.OPEN)
        self.assertFalse(Escrow.objects.exists())
        self.assertFalse(Milestone.objects.exists())
        self.assertEqual(get_balance(self.client_user.id), ngn(10000))

    def test_only_client_can_accept(self):
        proposal = self.completion_proposal()
        with self.assertRaises(Unauthorized):
            accept_proposal(proposal.id, self.job.id, actor=self.freelancer)


class ReleasePaymentTestCase(MarketplaceTestMixin, TestCase):
    """Test escrow releases and job completion"""

    def test_per_milestone_releases_complete_the_job(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first, second = Milestone.objects.filter(job=self.job)

        release_milestone_payment(self.job.id, first.id, client_id=self.client_user.id)

        self.assertEqual(Escrow.objects.get(job=self.job).amount, ngn(30000))
        self.assertEqual(get_balance(self.freelancer.id), ngn(20000))
        self.assert_escrow_consistent()
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.IN_PROGRESS)

        release_milestone_payment(self.job.id, second.id, ngn(30000), self.client_user.id, self.freelancer.id)

        escrow = Escrow.objects.get(job=self.job)
        self.job.refresh_from_db()
        self.assertEqual(escrow.amount, ngn(0))
        self.assertEqual(escrow.status, Escrow.RELEASED)
        self.assertEqual(get_balance(self.freelancer.id), ngn(50000))
        self.assertEqual(self.job.status, Job.COMPLETED)
        self.assertEqual(self.job.pending_reviews, ['client', 'freelancer'])
        self.assertEqual(self.job.reviews, {})
        self.assertEqual(self.job.lifecycle_state, 'completed')

    def test_release_writes_both_sides(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()

        release_milestone_payment(self.job.id, first.id)

        received = WalletTransaction.objects.get(reference=f'MSP{first.id}')
        sent = WalletTransaction.objects.get(reference=f'MSP{first.id}-C')
        self.assertEqual(received.user, self.freelancer)
        self.assertEqual(received.transaction_type, WalletTransaction.PAYMENT_RECEIVED)
        self.assertEqual(received.amount, ngn(20000))
        self.assertEqual(sent.user, self.client_user)
        self.assertEqual(sent.transaction_type, WalletTransaction.PAYMENT_SENT)
        self.assertEqual(sent.amount, ngn(-20000))

    def test_second_release_is_rejected(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()
        release_milestone_payment(self.job.id, first.id)

        with self.assertRaises(AlreadyPaid):
            release_milestone_payment(self.job.id, first.id)

        self.assertEqual(get_balance(self.freelancer.id), ngn(20000))
        self.assertEqual(Escrow.objects.get(job=self.job).amount, ngn(30000))
        self.assertEqual(WalletTransaction.objects.filter(user=self.freelancer).count(), 1)

    def test_out_of_order_release_is_allowed_by_default(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        second = Milestone.objects.get(job=self.job, sequence=2)

        release_milestone_payment(self.job.id, second.id)

        self.assert_escrow_consistent()

    @override_settings(ENFORCE_SEQUENTIAL_MILESTONES=True)
    def test_sequential_release_when_enforced(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first, second = Milestone.objects.filter(job=self.job)

        with self.assertRaises(InvalidState):
            release_milestone_payment(self.job.id, second.id)

        release_milestone_payment(self.job.id, first.id)
        release_milestone_payment(self.job.id, second.id)

    def test_release_amount_must_match_milestone(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()

        with self.assertRaises(ValidationError):
            release_milestone_payment(self.job.id, first.id, amount=ngn(25000))

        self.assertEqual(Escrow.objects.get(job=self.job).amount, ngn(50000))

    def test_only_client_can_release(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()

        with self.assertRaises(Unauthorized):
            release_milestone_payment(self.job.id, first.id, client_id=self.freelancer.id)

    def test_disputed_milestone_cannot_be_paid(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()
        raise_dispute(self.job.id, first.id, self.freelancer, 'Scope changed')

        with self.assertRaises(InvalidState):
            release_milestone_payment(self.job.id, first.id)

        self.assertEqual(get_balance(self.freelancer.id), ngn(0))

    def test_full_release_for_completion_job(self):
        accept_proposal(self.completion_proposal().id, self.job.id)
        self.assertEqual(get_balance(self.client_user.id), ngn(0))

        release_job_payment(self.job.id, ngn(50000), self.client_user.id, self.freelancer.id)

        escrow = Escrow.objects.get(job=self.job)
        self.job.refresh_from_db()
        self.assertEqual(get_balance(self.freelancer.id), ngn(50000))
        self.assertEqual(escrow.status, Escrow.RELEASED)
        self.assertEqual(escrow.amount, ngn(0))
        self.assertEqual(self.job.status, Job.COMPLETED)
        self.assertEqual(self.job.pending_reviews, ['client', 'freelancer'])
        self.assertTrue(all(m.is_paid for m in Milestone.objects.filter(job=self.job)))
        self.assert_escrow_consistent()

        with self.assertRaises(AlreadyPaid):
            release_job_payment(self.job.id)

    def test_full_release_after_partial_payment(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()
        release_milestone_payment(self.job.id, first.id)

        with self.assertRaises(ValidationError):
            release_job_payment(self.job.id, amount=ngn(50000))

        release_job_payment(self.job.id)

        self.assertEqual(get_balance(self.freelancer.id), ngn(50000))
        self.assertEqual(Job.objects.get(pk=self.job.pk).status, Job.COMPLETED)


class CompleteMilestoneTestCase(MarketplaceTestMixin, TestCase):
    """Test client sign-off and the payout it triggers"""

    def test_freelancer_cannot_mark_complete(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()

        with self.assertRaises(Unauthorized):
            complete_milestone(self.job.id, first.id, self.freelancer)

        first.refresh_from_db()
        self.assertEqual(first.status, Milestone.PENDING)
        self.assertEqual(first.payment_status, '')

    def test_complete_pays_per_milestone_job(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()
        start_milestone(self.job.id, first.id, self.freelancer)
        self.assertEqual(Job.objects.get(pk=self.job.pk).lifecycle_state, 'in_progress')

        milestone = complete_milestone(self.job.id, first.id, self.client_user)

        self.assertEqual(milestone.status, Milestone.COMPLETED)
        self.assertTrue(milestone.is_paid)
        self.assertEqual(get_balance(self.freelancer.id), ngn(20000))

        with self.assertRaises(AlreadyCompleted):
            complete_milestone(self.job.id, first.id, self.client_user)

    def test_complete_releases_completion_job(self):
        accept_proposal(self.completion_proposal().id, self.job.id)
        only = Milestone.objects.get(job=self.job)

        complete_milestone(self.job.id, only.id, self.client_user)

        self.assertEqual(get_balance(self.freelancer.id), ngn(50000))
        self.assertEqual(Job.objects.get(pk=self.job.pk).status, Job.COMPLETED)

    def test_completing_disputed_milestone_resolves_it(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()
        case = raise_dispute(self.job.id, first.id, self.client_user, 'Late delivery')

        complete_milestone(self.job.id, first.id, self.client_user)

        case.refresh_from_db()
        self.assertEqual(case.status, 'resolved')
        self.assertEqual(get_balance(self.freelancer.id), ngn(20000))


class ReviewTestCase(MarketplaceTestMixin, TestCase):
    """Test review gating after completion"""

    def setUp(self):
        super().setUp()
        accept_proposal(self.completion_proposal().id, self.job.id)

    def test_review_before_completion(self):
        with self.assertRaises(InvalidState):
            submit_job_review(self.job.id, self.client_user.id, 5)

    def test_reviews_update_running_average(self):
        self.freelancer.rating = 4.0
        self.freelancer.total_reviews = 1
        self.freelancer.save()
        release_job_payment(self.job.id)

        submit_job_review(self.job.id, self.client_user.id, 5, 'Great work')
        job = submit_job_review(self.job.id, self.freelancer.id, 3, 'Slow feedback')

        self.freelancer.refresh_from_db()
        self.client_user.refresh_from_db()
        self.assertAlmostEqual(self.freelancer.rating, 4.5)
        self.assertEqual(self.freelancer.total_reviews, 2)
        self.assertEqual(self.client_user.rating, 3.0)
        self.assertEqual(job.pending_reviews, [])
        self.assertEqual(job.reviews['client']['rating'], 5)
        self.assertEqual(job.lifecycle_state, 'reviewed')

    def test_second_review_is_rejected(self):
        release_job_payment(self.job.id)
        submit_job_review(self.job.id, self.client_user.id, 5)

        with self.assertRaises(AlreadyReviewed):
            submit_job_review(self.job.id, self.client_user.id, 1)

        self.freelancer.refresh_from_db()
        self.assertEqual(self.freelancer.rating, 5.0)
        self.assertEqual(self.freelancer.total_reviews, 1)

    def test_outsider_cannot_review(self):
        release_job_payment(self.job.id)
        with self.assertRaises(NotAJobParticipant):
            submit_job_review(self.job.id, self.other_freelancer.id, 4)

    def test_rating_bounds(self):
        release_job_payment(self.job.id)
        with self.assertRaises(ValidationError):
            submit_job_review(self.job.id, self.client_user.id, 6)


class CancelJobTestCase(MarketplaceTestMixin, TestCase):
    """Test cancellation and escrow refunds"""

    def test_cancel_open_job(self):
        proposal = self.completion_proposal()

        cancel_job(self.job.id, self.client_user)

        proposal.refresh_from_db()
        self.assertEqual(Job.objects.get(pk=self.job.pk).status, Job.CANCELLED)
        self.assertEqual(proposal.status, Proposal.REJECTED)

    def test_cancel_awarded_job_refunds_escrow(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)

        cancel_job(self.job.id, self.client_user)

        self.assertEqual(get_balance(self.client_user.id), ngn(50000))
        self.assertEqual(Escrow.objects.get(job=self.job).status, Escrow.REFUNDED)
        self.assertEqual(Job.objects.get(pk=self.job.pk).lifecycle_state, 'cancelled')

    def test_cannot_cancel_after_work_started(self):
        accept_proposal(self.per_milestone_proposal().id, self.job.id)
        first = Milestone.objects.filter(job=self.job).first()
        start_milestone(self.job.id, first.id, self.freelancer)

        with self.assertRaises(InvalidState):
            cancel_job(self.job.id, self.client_user)

        self.assertEqual(Escrow.objects.get(job=self.job).status, Escrow.HELD)

    def test_only_client_cancels(self):
        with self.assertRaises(Unauthorized):
            cancel_job(self.job.id, self.freelancer)


class JobAPITestCase(MarketplaceTestMixin, TestCase):
    """Test the job endpoints end to end"""

    def setUp(self):
        super().setUp()
        self.api = APIClient()

    def test_hire_and_pay_flow(self):
        self.api.force_authenticate(self.freelancer)
        response = self.api.post(reverse('job-proposals', args=[self.job.id]), {
            'proposed_amount': '50000',
            'payment_preference': 'completion',
            'completion_weeks': 4,
            'cover_letter': 'I can do this',
        }, format='json')
        self.assertEqual(response.status_code, 201)
        proposal_id = response.data['id']

        self.api.force_authenticate(self.client_user)
        response = self.api.post(reverse('accept-proposal', args=[self.job.id, proposal_id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['job']['status'], 'in_progress')

        response = self.api.post(reverse('release-payment', args=[self.job.id]), {}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['job']['status'], 'completed')

        response = self.api.post(reverse('job-reviews', args=[self.job.id]), {'rating': 5}, format='json')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['pending_reviews'], ['freelancer'])

    def test_typed_errors_reach_the_client(self):
        proposal = self.completion_proposal()

        self.api.force_authenticate(self.freelancer)
        response = self.api.post(reverse('accept-proposal', args=[self.job.id, proposal.id]))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data['detail'].code, 'unauthorized')

    def test_bad_milestone_plan(self):
        self.api.force_authenticate(self.freelancer)
        response = self.api.post(reverse('job-proposals', args=[self.job.id]), {
            'proposed_amount': '50000',
            'payment_preference': 'per_milestone',
            'milestones': [{'name': 'Only part', 'amount': '10000'}],
        }, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['detail'].code, 'validation_error')
