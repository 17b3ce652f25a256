from django.contrib import admin
from .models import Milestone

@admin.register(Milestone)
class MilestoneAdmin(admin.ModelAdmin):
    list_display = ('job', 'sequence', 'name', 'amount', 'status', 'progress', 'payment_status')
    list_filter = ('status', 'payment_status')
    search_fields = ('name', 'job__title')
    # Payment state only moves through the release workflow
    readonly_fields = ('amount', 'payment_status', 'paid_at', 'created_at', 'updated_at')
