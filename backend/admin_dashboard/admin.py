from django.contrib import admin
from .models import SystemAlert, DisputeCase

@admin.register(SystemAlert)
class SystemAlertAdmin(admin.ModelAdmin):
    list_display = ('title', 'alert_type', 'severity', 'job', 'is_resolved', 'created_at')
    list_filter = ('alert_type', 'severity', 'is_resolved', 'created_at')
    search_fields = ('title', 'description')
    readonly_fields = ('created_at', 'resolved_at')

    def save_model(self, request, obj, form, change):
        if obj.is_resolved and not obj.resolved_by:
            obj.resolved_by = request.user
        super().save_model(request, obj, form, change)

@admin.register(DisputeCase)
class DisputeCaseAdmin(admin.ModelAdmin):
    list_display = ('title', 'status', 'job', 'milestone', 'raised_by', 'created_at')
    list_filter = ('status', 'created_at')
    search_fields = ('title', 'description', 'raised_by__username')
    readonly_fields = ('created_at', 'resolved_at')

    def save_model(self, request, obj, form, change):
        if obj.status == DisputeCase.RESOLVED and not obj.resolved_by:
            obj.resolved_by = request.user
        super().save_model(request, obj, form, change)
