from rest_framework import serializers
from .models import Activity, Notification

class ActivitySerializer(serializers.ModelSerializer):
    class Meta:
        model = Activity
        fields = ('id', 'activity_type', 'text', 'job', 'metadata', 'created_at')

class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = ('id', 'notification_type', 'title', 'message', 'job', 'sender', 'data',
                  'read', 'read_at', 'created_at')
        read_only_fields = fields
