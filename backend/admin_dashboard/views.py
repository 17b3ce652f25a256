from rest_framework import generics, permissions
from django.utils import timezone

from .models import SystemAlert, DisputeCase
from .serializers import SystemAlertSerializer, DisputeCaseSerializer

class IsAdminUser(permissions.BasePermission):
    """
    Custom permission to only allow admin users to access the view.
    """
    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and
                    (request.user.role == 'admin' or request.user.is_staff))

class SystemAlertListView(generics.ListAPIView):
    serializer_class = SystemAlertSerializer
    permission_classes = [IsAdminUser]

    def get_queryset(self):
        queryset = SystemAlert.objects.all()
        resolved = self.request.query_params.get('resolved')
        if resolved is not None:
            queryset = queryset.filter(is_resolved=resolved.lower() in ('1', 'true', 'yes'))
        return queryset.order_by('-created_at')

class SystemAlertDetailView(generics.RetrieveUpdateAPIView):
    serializer_class = SystemAlertSerializer
    permission_classes = [IsAdminUser]

    def get_queryset(self):
        return SystemAlert.objects.all()

    def perform_update(self, serializer):
        alert = serializer.save()
        if alert.is_resolved and alert.resolved_at is None:
            alert.resolved_by = self.request.user
            alert.resolved_at = timezone.now()
            alert.save(update_fields=['resolved_by', 'resolved_at'])

class DisputeCaseListView(generics.ListAPIView):
    serializer_class = DisputeCaseSerializer
    permission_classes = [IsAdminUser]

    def get_queryset(self):
        status_filter = self.request.query_params.get('status', None)
        queryset = DisputeCase.objects.select_related('job', 'milestone', 'raised_by')

        if status_filter:
            queryset = queryset.filter(status=status_filter)

        return queryset.order_by('-created_at')
