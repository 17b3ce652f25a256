from django.conf import settings
from django.db import models

User = settings.AUTH_USER_MODEL

class SystemAlert(models.Model):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'

    SEVERITY_CHOICES = (
        (LOW, 'Low'),
        (MEDIUM, 'Medium'),
        (HIGH, 'High'),
        (CRITICAL, 'Critical'),
    )

    ESCROW_MISMATCH = 'escrow_mismatch'
    MISSING_MILESTONES = 'missing_milestones'
    PAYMENT_ISSUE = 'payment_issue'
    SYSTEM_ERROR = 'system_error'

    ALERT_TYPES = (
        (ESCROW_MISMATCH, 'Escrow Mismatch'),
        (MISSING_MILESTONES, 'Missing Milestones'),
        (PAYMENT_ISSUE, 'Payment Issue'),
        (SYSTEM_ERROR, 'System Error'),
    )

    title = models.CharField(max_length=200)
    description = models.TextField()
    alert_type = models.CharField(max_length=50, choices=ALERT_TYPES)
    severity = models.CharField(max_length=20, choices=SEVERITY_CHOICES)
    job = models.ForeignKey('jobs.Job', on_delete=models.CASCADE, null=True, blank=True, related_name='alerts')
    is_resolved = models.BooleanField(default=False)
    resolved_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='resolved_alerts')
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.get_severity_display()}: {self.title}"

class DisputeCase(models.Model):
    OPEN = 'open'
    UNDER_REVIEW = 'under_review'
    RESOLVED = 'resolved'

    STATUS_CHOICES = (
        (OPEN, 'Open'),
        (UNDER_REVIEW, 'Under Review'),
        (RESOLVED, 'Resolved'),
    )

    title = models.CharField(max_length=200)
    description = models.TextField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=OPEN)

    # Related entities
    job = models.ForeignKey('jobs.Job', on_delete=models.CASCADE, related_name='disputes')
    milestone = models.ForeignKey('milestones.Milestone', on_delete=models.CASCADE, related_name='disputes')
    raised_by = models.ForeignKey(User, on_delete=models.CASCADE, related_name='disputes_raised')

    # Resolution details
    resolution_notes = models.TextField(blank=True)
    resolved_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='resolved_disputes')
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Dispute: {self.title} ({self.status})"
