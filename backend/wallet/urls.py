from django.urls import path
from . import views

urlpatterns = [
    path('summary/', views.wallet_summary, name='wallet-summary'),
    path('transactions/', views.WalletTransactionListView.as_view(), name='wallet-transactions'),
    path('bank-accounts/', views.BankAccountListView.as_view(), name='bank-accounts'),
    path('bank-accounts/<int:pk>/', views.BankAccountDetailView.as_view(), name='bank-account-detail'),
    path('fund/', views.fund_wallet, name='fund-wallet'),
    path('verify/<str:reference>/', views.verify_funding, name='verify-funding'),
    path('webhook/monnify/', views.monnify_webhook, name='monnify-webhook'),
    path('withdraw/', views.request_withdrawal, name='request-withdrawal'),
    path('supported-banks/', views.get_supported_banks, name='supported-banks'),
    path('escrow/<int:job_id>/', views.escrow_detail, name='escrow-detail'),
]
