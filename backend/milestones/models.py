from django.conf import settings
from django.db import models
from djmoney.models.fields import MoneyField

class Milestone(models.Model):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    DISPUTED = 'disputed'

    STATUS_CHOICES = (
        (PENDING, 'Pending'),
        (IN_PROGRESS, 'In Progress'),
        (COMPLETED, 'Completed'),
        (DISPUTED, 'Disputed'),
    )

    PAID = 'paid'

    PAYMENT_STATUS_CHOICES = (
        ('', 'Unpaid'),
        (PAID, 'Paid'),
    )

    job = models.ForeignKey('jobs.Job', on_delete=models.CASCADE, related_name='milestones')
    sequence = models.PositiveIntegerField()
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    amount = MoneyField(max_digits=14, decimal_places=2, default_currency=settings.DEFAULT_CURRENCY)
    duration_weeks = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    progress = models.PositiveSmallIntegerField(default=0)
    payment_status = models.CharField(max_length=10, choices=PAYMENT_STATUS_CHOICES, default='', blank=True)
    attachments = models.JSONField(default=list, blank=True)
    start_date = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['sequence']
        unique_together = ['job', 'sequence']

    def __str__(self):
        return f"Milestone {self.sequence} - {self.name}"

    @property
    def is_paid(self):
        return self.payment_status == self.PAID
