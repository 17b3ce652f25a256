from django.urls import path
from . import views

urlpatterns = [
    path('', views.MilestoneListView.as_view(), name='milestone-list'),
    path('<int:pk>/', views.MilestoneDetailView.as_view(), name='milestone-detail'),
    path('<int:pk>/start/', views.start_milestone, name='milestone-start'),
    path('<int:pk>/progress/', views.update_progress, name='milestone-progress'),
    path('<int:pk>/complete/', views.complete_milestone, name='milestone-complete'),
    path('<int:pk>/release/', views.release_milestone, name='milestone-release'),
    path('<int:pk>/attachments/', views.milestone_attachments, name='milestone-attachments'),
    path('<int:pk>/attachments/<str:attachment_id>/', views.delete_attachment, name='milestone-attachment-delete'),
    path('<int:pk>/dispute/', views.raise_dispute, name='milestone-dispute'),
]
