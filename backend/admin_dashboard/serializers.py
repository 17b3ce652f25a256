from rest_framework import serializers
from .models import SystemAlert, DisputeCase

class SystemAlertSerializer(serializers.ModelSerializer):
    resolved_by_username = serializers.CharField(source='resolved_by.username', read_only=True, allow_null=True)

    class Meta:
        model = SystemAlert
        fields = '__all__'
        read_only_fields = ('title', 'description', 'alert_type', 'severity', 'job', 'metadata',
                            'resolved_by', 'created_at', 'resolved_at')

class DisputeCaseSerializer(serializers.ModelSerializer):
    raised_by_username = serializers.CharField(source='raised_by.username', read_only=True)
    resolved_by_username = serializers.CharField(source='resolved_by.username', read_only=True, allow_null=True)
    job_title = serializers.CharField(source='job.title', read_only=True)
    milestone_name = serializers.CharField(source='milestone.name', read_only=True)

    class Meta:
        model = DisputeCase
        fields = '__all__'
        read_only_fields = ('job', 'milestone', 'raised_by', 'resolved_by', 'created_at', 'resolved_at')
