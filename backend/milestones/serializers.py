from rest_framework import serializers
from .models import Milestone

class MilestoneSerializer(serializers.ModelSerializer):
    class Meta:
        model = Milestone
        fields = ('id', 'job', 'sequence', 'name', 'description', 'amount', 'amount_currency',
                  'duration_weeks', 'status', 'progress', 'payment_status', 'attachments',
                  'start_date', 'completed_at', 'paid_at', 'created_at', 'updated_at')
        read_only_fields = fields

class ProgressSerializer(serializers.Serializer):
    progress = serializers.IntegerField(min_value=0, max_value=100)

class ReleaseSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2, required=False)

class AttachmentUploadSerializer(serializers.Serializer):
    file = serializers.FileField()

class DisputeSerializer(serializers.Serializer):
    reason = serializers.CharField()
