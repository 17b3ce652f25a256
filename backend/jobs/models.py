from django.conf import settings
from django.db import models
from djmoney.models.fields import MoneyField

User = settings.AUTH_USER_MODEL
CURRENCY = settings.DEFAULT_CURRENCY

PER_MILESTONE = 'per_milestone'
COMPLETION = 'completion'

PAYMENT_PREFERENCE_CHOICES = (
    (PER_MILESTONE, 'Per Milestone'),
    (COMPLETION, 'On Completion'),
)

class Job(models.Model):
    OPEN = 'open'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    STATUS_CHOICES = (
        (OPEN, 'Open'),
        (IN_PROGRESS, 'In Progress'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
    )

    CLIENT_ROLE = 'client'
    FREELANCER_ROLE = 'freelancer'

    client = models.ForeignKey(User, on_delete=models.PROTECT, related_name='jobs_posted')
    title = models.CharField(max_length=255)
    description = models.TextField()
    budget = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY)
    duration_weeks = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=OPEN)

    # Set when a proposal is accepted
    awarded_to = models.ForeignKey(User, on_delete=models.PROTECT, null=True, blank=True, related_name='jobs_awarded')
    accepted_amount = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY, null=True, blank=True)
    accepted_duration = models.PositiveIntegerField(null=True, blank=True)
    payment_preference = models.CharField(max_length=20, choices=PAYMENT_PREFERENCE_CHOICES, blank=True)
    milestone_snapshot = models.JSONField(default=list, blank=True)

    # Roles that still owe a review, and role -> {rating, comment}
    pending_reviews = models.JSONField(default=list, blank=True)
    reviews = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    awarded_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.title} - {self.status}"

    def role_of(self, user):
        """'client', 'freelancer' or None for anyone else"""
        user_id = getattr(user, 'id', user)
        if user_id is None:
            return None
        if user_id == self.client_id:
            return self.CLIENT_ROLE
        if self.awarded_to_id is not None and user_id == self.awarded_to_id:
            return self.FREELANCER_ROLE
        return None

    def is_participant(self, user):
        return self.role_of(user) is not None

    @property
    def lifecycle_state(self):
        """
        Payment lifecycle derived from the stored status:
        open, awarded, in_progress, completed, reviewed or cancelled.
        """
        if self.status == self.IN_PROGRESS:
            started = self.milestones.exclude(status='pending').exists()
            return 'in_progress' if started else 'awarded'
        if self.status == self.COMPLETED:
            return 'reviewed' if not self.pending_reviews else 'completed'
        return self.status

class Proposal(models.Model):
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    WITHDRAWN = 'withdrawn'

    STATUS_CHOICES = (
        (PENDING, 'Pending'),
        (ACCEPTED, 'Accepted'),
        (REJECTED, 'Rejected'),
        (WITHDRAWN, 'Withdrawn'),
    )

    job = models.ForeignKey(Job, on_delete=models.CASCADE, related_name='proposals')
    freelancer = models.ForeignKey(User, on_delete=models.CASCADE, related_name='proposals')
    client = models.ForeignKey(User, on_delete=models.CASCADE, related_name='proposals_received')
    proposed_amount = MoneyField(max_digits=14, decimal_places=2, default_currency=CURRENCY)
    payment_preference = models.CharField(max_length=20, choices=PAYMENT_PREFERENCE_CHOICES)
    # [{name, description, amount, duration_weeks}] used to seed milestones on acceptance
    milestones = models.JSONField(default=list, blank=True)
    completion_weeks = models.PositiveIntegerField(default=1)
    cover_letter = models.TextField(blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        unique_together = ['job', 'freelancer']
        constraints = [
            models.UniqueConstraint(
                fields=['job'],
                condition=models.Q(status='accepted'),
                name='one_accepted_proposal_per_job',
            ),
        ]

    def __str__(self):
        return f"Proposal by {self.freelancer_id} on {self.job_id} - {self.status}"
