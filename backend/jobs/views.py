from rest_framework import generics, status, permissions
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from django.db.models import Q

from marketplace.exceptions import NotAJobParticipant
from . import services, workflow
from .models import Job, Proposal
from .serializers import (
    JobSerializer, JobCreateSerializer, ProposalSerializer, ProposalCreateSerializer,
    ReleasePaymentSerializer, ReviewSerializer,
)

class JobListView(generics.ListCreateAPIView):
    permission_classes = (permissions.IsAuthenticated,)

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return JobCreateSerializer
        return JobSerializer

    def get_queryset(self):
        user = self.request.user
        queryset = Job.objects.select_related('client', 'awarded_to')

        if self.request.query_params.get('mine'):
            return queryset.filter(Q(client=user) | Q(awarded_to=user))
        if user.role == 'admin':
            # Admins see all jobs
            return queryset
        # Everyone else sees the open board plus their own jobs
        return queryset.filter(Q(status=Job.OPEN) | Q(client=user) | Q(awarded_to=user))

    def create(self, request, *args, **kwargs):
        serializer = JobCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        job = services.create_job(request.user, **serializer.validated_data)
        return Response(JobSerializer(job).data, status=status.HTTP_201_CREATED)

class JobDetailView(generics.RetrieveAPIView):
    serializer_class = JobSerializer
    permission_classes = (permissions.IsAuthenticated,)
    queryset = Job.objects.select_related('client', 'awarded_to')

class ProposalListView(generics.ListCreateAPIView):
    permission_classes = (permissions.IsAuthenticated,)

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return ProposalCreateSerializer
        return ProposalSerializer

    def get_queryset(self):
        job = services.get_job(self.kwargs['job_id'])
        queryset = Proposal.objects.filter(job=job).select_related('freelancer', 'job')

        if self.request.user.id == job.client_id:
            return queryset
        # Freelancers only see their own bid
        return queryset.filter(freelancer=self.request.user)

    def create(self, request, *args, **kwargs):
        serializer = ProposalCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        job = services.get_job(self.kwargs['job_id'])
        proposal = services.create_proposal(job, request.user, **serializer.validated_data)
        return Response(ProposalSerializer(proposal).data, status=status.HTTP_201_CREATED)

class MyProposalListView(generics.ListAPIView):
    serializer_class = ProposalSerializer
    permission_classes = (permissions.IsAuthenticated,)

    def get_queryset(self):
        return Proposal.objects.filter(freelancer=self.request.user).select_related('job', 'freelancer')

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def accept_proposal(request, job_id, proposal_id):
    """
    Hire a freelancer: escrow the proposal amount and start the job
    """
    job = workflow.accept_proposal(proposal_id, job_id, actor=request.user)

    return Response({
        "message": "Proposal accepted",
        "job": JobSerializer(job).data,
    })

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def decline_proposal(request, proposal_id):
    proposal = services.decline_proposal(services.get_proposal(proposal_id), request.user)
    return Response(ProposalSerializer(proposal).data)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def withdraw_proposal(request, proposal_id):
    proposal = services.withdraw_proposal(services.get_proposal(proposal_id), request.user)
    return Response(ProposalSerializer(proposal).data)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def release_payment(request, job_id):
    """
    Release everything still held in escrow to the freelancer
    """
    serializer = ReleasePaymentSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    job = workflow.release_job_payment(
        job_id,
        amount=serializer.validated_data.get('amount'),
        client_id=request.user.id,
    )

    return Response({
        "message": "Payment released",
        "job": JobSerializer(job).data,
    })

@api_view(['GET', 'POST'])
@permission_classes([permissions.IsAuthenticated])
def job_reviews(request, job_id):
    if request.method == 'GET':
        job = services.get_job(job_id)
        if not job.is_participant(request.user):
            raise NotAJobParticipant()
        return Response({'reviews': job.reviews, 'pending_reviews': job.pending_reviews})

    serializer = ReviewSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    job = workflow.submit_job_review(
        job_id, request.user.id,
        serializer.validated_data['rating'],
        serializer.validated_data['comment'],
    )
    return Response({'reviews': job.reviews, 'pending_reviews': job.pending_reviews},
                    status=status.HTTP_201_CREATED)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def cancel_job(request, job_id):
    job = workflow.cancel_job(job_id, request.user)
    return Response(JobSerializer(job).data)
