from rest_framework import generics, permissions
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from marketplace.exceptions import NotFound
from .models import Activity, Notification
from .serializers import ActivitySerializer, NotificationSerializer
from .services import mark_notification_read

class ActivityListView(generics.ListAPIView):
    serializer_class = ActivitySerializer
    permission_classes = (permissions.IsAuthenticated,)

    def get_queryset(self):
        return Activity.objects.filter(user=self.request.user)

class NotificationListView(generics.ListAPIView):
    serializer_class = NotificationSerializer
    permission_classes = (permissions.IsAuthenticated,)

    def get_queryset(self):
        queryset = Notification.objects.filter(user=self.request.user)
        if self.request.query_params.get('unread'):
            queryset = queryset.filter(read=False)
        return queryset

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def mark_read(request, pk):
    try:
        notification = Notification.objects.get(pk=pk, user=request.user)
    except Notification.DoesNotExist:
        raise NotFound("Notification not found")

    return Response(NotificationSerializer(mark_notification_read(notification)).data)
