from django.contrib import admin
from .models import Activity, Notification, OutboxEvent

@admin.register(Activity)
class ActivityAdmin(admin.ModelAdmin):
    list_display = ('user', 'activity_type', 'text', 'job', 'created_at')
    list_filter = ('activity_type', 'created_at')
    search_fields = ('user__username', 'text')

@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('user', 'notification_type', 'title', 'read', 'created_at')
    list_filter = ('notification_type', 'read', 'created_at')
    search_fields = ('user__username', 'title', 'message')

@admin.register(OutboxEvent)
class OutboxEventAdmin(admin.ModelAdmin):
    list_display = ('id', 'kind', 'status', 'attempts', 'created_at', 'delivered_at')
    list_filter = ('kind', 'status')
    readonly_fields = ('payload', 'created_at', 'delivered_at', 'last_error')
