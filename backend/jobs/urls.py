from django.urls import path
from . import views

urlpatterns = [
    path('', views.JobListView.as_view(), name='job-list'),
    path('<int:pk>/', views.JobDetailView.as_view(), name='job-detail'),
    path('<int:job_id>/proposals/', views.ProposalListView.as_view(), name='job-proposals'),
    path('<int:job_id>/proposals/<int:proposal_id>/accept/', views.accept_proposal, name='accept-proposal'),
    path('<int:job_id>/release-payment/', views.release_payment, name='release-payment'),
    path('<int:job_id>/reviews/', views.job_reviews, name='job-reviews'),
    path('<int:job_id>/cancel/', views.cancel_job, name='cancel-job'),
    path('proposals/mine/', views.MyProposalListView.as_view(), name='my-proposals'),
    path('proposals/<int:proposal_id>/decline/', views.decline_proposal, name='decline-proposal'),
    path('proposals/<int:proposal_id>/withdraw/', views.withdraw_proposal, name='withdraw-proposal'),
]
