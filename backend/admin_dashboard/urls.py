from django.urls import path
from . import views

urlpatterns = [
    # System alerts
    path('alerts/', views.SystemAlertListView.as_view(), name='system-alerts'),
    path('alerts/<int:pk>/', views.SystemAlertDetailView.as_view(), name='system-alert-detail'),

    # Dispute cases
    path('disputes/', views.DisputeCaseListView.as_view(), name='dispute-cases'),
]
