from rest_framework import generics, status, permissions
from rest_framework.decorators import api_view, permission_classes, parser_classes
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response

from jobs import workflow
from jobs.services import get_job
from marketplace.exceptions import NotAJobParticipant
from . import services
from .models import Milestone
from .serializers import (
    AttachmentUploadSerializer, DisputeSerializer, MilestoneSerializer, ProgressSerializer,
    ReleaseSerializer,
)

class ParticipantMixin:
    def get_queryset(self):
        job = get_job(self.kwargs['job_id'])
        if not job.is_participant(self.request.user) and self.request.user.role != 'admin':
            raise NotAJobParticipant()
        return Milestone.objects.filter(job=job)

class MilestoneListView(ParticipantMixin, generics.ListAPIView):
    serializer_class = MilestoneSerializer
    permission_classes = (permissions.IsAuthenticated,)

class MilestoneDetailView(ParticipantMixin, generics.RetrieveAPIView):
    serializer_class = MilestoneSerializer
    permission_classes = (permissions.IsAuthenticated,)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def start_milestone(request, job_id, pk):
    milestone = services.start_milestone(job_id, pk, request.user)
    return Response(MilestoneSerializer(milestone).data)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def update_progress(request, job_id, pk):
    serializer = ProgressSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    milestone = services.update_progress(job_id, pk, serializer.validated_data['progress'], request.user)
    return Response(MilestoneSerializer(milestone).data)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def complete_milestone(request, job_id, pk):
    """
    Client approval; pays the milestone out of escrow when the job pays per milestone
    """
    milestone = workflow.complete_milestone(job_id, pk, request.user)
    return Response(MilestoneSerializer(milestone).data)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def release_milestone(request, job_id, pk):
    serializer = ReleaseSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    milestone = workflow.release_milestone_payment(
        job_id, pk,
        amount=serializer.validated_data.get('amount'),
        client_id=request.user.id,
    )
    return Response(MilestoneSerializer(milestone).data)

@api_view(['GET', 'POST'])
@permission_classes([permissions.IsAuthenticated])
@parser_classes([MultiPartParser, FormParser])
def milestone_attachments(request, job_id, pk):
    if request.method == 'GET':
        job = get_job(job_id)
        if not job.is_participant(request.user):
            raise NotAJobParticipant()
        return Response(services.get_milestone(job_id, pk).attachments)

    serializer = AttachmentUploadSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    entry = services.upload_attachment(job_id, pk, serializer.validated_data['file'], request.user)
    return Response(entry, status=status.HTTP_201_CREATED)

@api_view(['DELETE'])
@permission_classes([permissions.IsAuthenticated])
def delete_attachment(request, job_id, pk, attachment_id):
    services.delete_attachment(job_id, pk, attachment_id, request.user)
    return Response(status=status.HTTP_204_NO_CONTENT)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def raise_dispute(request, job_id, pk):
    serializer = DisputeSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    case = services.raise_dispute(job_id, pk, request.user, serializer.validated_data['reason'])
    return Response({
        "message": "Dispute opened",
        "dispute_id": case.id,
        "milestone": MilestoneSerializer(case.milestone).data,
    }, status=status.HTTP_201_CREATED)
