from django.urls import path
from . import views

urlpatterns = [
    path('activities/', views.ActivityListView.as_view(), name='activities'),
    path('notifications/', views.NotificationListView.as_view(), name='notifications'),
    path('notifications/<int:pk>/read/', views.mark_read, name='notification-read'),
]
