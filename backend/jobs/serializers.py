from rest_framework import serializers
from users.serializers import PublicUserSerializer
from .models import Job, Proposal, PAYMENT_PREFERENCE_CHOICES

class JobSerializer(serializers.ModelSerializer):
    client = PublicUserSerializer(read_only=True)
    awarded_to = PublicUserSerializer(read_only=True)
    lifecycle_state = serializers.CharField(read_only=True)
    proposal_count = serializers.SerializerMethodField()

    class Meta:
        model = Job
        fields = ('id', 'client', 'title', 'description', 'budget', 'budget_currency', 'duration_weeks',
                  'status', 'lifecycle_state', 'awarded_to', 'accepted_amount', 'accepted_duration',
                  'payment_preference', 'pending_reviews', 'reviews', 'proposal_count',
                  'created_at', 'updated_at', 'awarded_at', 'completed_at', 'cancelled_at')
        read_only_fields = fields

    def get_proposal_count(self, obj):
        return obj.proposals.count()

class JobCreateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    description = serializers.CharField()
    budget = serializers.DecimalField(max_digits=14, decimal_places=2, min_value=1)
    duration_weeks = serializers.IntegerField(min_value=1, default=1)

class ProposalSerializer(serializers.ModelSerializer):
    freelancer = PublicUserSerializer(read_only=True)
    job_title = serializers.CharField(source='job.title', read_only=True)

    class Meta:
        model = Proposal
        fields = ('id', 'job', 'job_title', 'freelancer', 'client', 'proposed_amount',
                  'proposed_amount_currency', 'payment_preference', 'milestones', 'completion_weeks',
                  'cover_letter', 'status', 'created_at', 'updated_at')
        read_only_fields = fields

class MilestonePlanSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    duration_weeks = serializers.IntegerField(min_value=1, default=1)

class ProposalCreateSerializer(serializers.Serializer):
    proposed_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    payment_preference = serializers.ChoiceField(choices=PAYMENT_PREFERENCE_CHOICES)
    milestones = MilestonePlanSerializer(many=True, required=False, default=list)
    completion_weeks = serializers.IntegerField(min_value=1, default=1)
    cover_letter = serializers.CharField(required=False, allow_blank=True, default='')

class ReleasePaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2, required=False)

class ReviewSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=1, max_value=5)
    comment = serializers.CharField(required=False, allow_blank=True, default='')
