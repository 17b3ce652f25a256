from django.contrib import admin
from .models import Job, Proposal

class ProposalInline(admin.TabularInline):
    model = Proposal
    extra = 0
    fields = ('freelancer', 'proposed_amount', 'payment_preference', 'status')
    readonly_fields = fields

@admin.register(Job)
class JobAdmin(admin.ModelAdmin):
    list_display = ('title', 'client', 'budget', 'status', 'awarded_to', 'accepted_amount', 'created_at')
    list_filter = ('status', 'payment_preference', 'created_at')
    search_fields = ('title', 'client__username', 'awarded_to__username')
    # Award and payment fields only move through the workflow
    readonly_fields = ('awarded_to', 'accepted_amount', 'accepted_duration', 'payment_preference',
                       'milestone_snapshot', 'pending_reviews', 'reviews', 'created_at', 'updated_at',
                       'awarded_at', 'completed_at', 'cancelled_at')
    inlines = [ProposalInline]

@admin.register(Proposal)
class ProposalAdmin(admin.ModelAdmin):
    list_display = ('job', 'freelancer', 'proposed_amount', 'payment_preference', 'status', 'created_at')
    list_filter = ('status', 'payment_preference')
    search_fields = ('job__title', 'freelancer__username')
    readonly_fields = ('created_at', 'updated_at')
