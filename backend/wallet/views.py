import json
import logging

from rest_framework import generics, status, permissions
from rest_framework.decorators import api_view, permission_classes, authentication_classes
from rest_framework.response import Response

from marketplace.exceptions import NotAJobParticipant, NotFound
from .escrow import get_escrow
from .models import BankAccount, WalletTransaction
from .serializers import (
    BankAccountSerializer, EscrowSerializer, FundingRequestSerializer, WalletSerializer,
    WalletTransactionSerializer, WithdrawalRequestSerializer,
)
from . import services
from .tasks import verify_bank_account

logger = logging.getLogger(__name__)

class WalletTransactionListView(generics.ListAPIView):
    serializer_class = WalletTransactionSerializer
    permission_classes = (permissions.IsAuthenticated,)

    def get_queryset(self):
        queryset = services.get_transaction_history(self.request.user)
        transaction_type = self.request.query_params.get('type')
        if transaction_type:
            queryset = queryset.filter(transaction_type=transaction_type)
        return queryset

class BankAccountListView(generics.ListCreateAPIView):
    serializer_class = BankAccountSerializer
    permission_classes = (permissions.IsAuthenticated,)

    def get_queryset(self):
        return BankAccount.objects.filter(user=self.request.user)

    def perform_create(self, serializer):
        bank_account = serializer.save(user=self.request.user)

        # Resolve the account name with the gateway before it can receive withdrawals
        verify_bank_account.delay(bank_account.id)

class BankAccountDetailView(generics.RetrieveDestroyAPIView):
    serializer_class = BankAccountSerializer
    permission_classes = (permissions.IsAuthenticated,)

    def get_queryset(self):
        return BankAccount.objects.filter(user=self.request.user)

@api_view(['GET'])
@permission_classes([permissions.IsAuthenticated])
def wallet_summary(request):
    """
    Get wallet summary including balance and recent transactions
    """
    summary = services.wallet_summary(request.user)

    return Response({
        'wallet': WalletSerializer(summary['wallet']).data,
        'pending_withdrawals': summary['pending_withdrawals'],
        'recent_transactions': WalletTransactionSerializer(summary['recent_transactions'], many=True).data,
    })

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def fund_wallet(request):
    """
    Start a Monnify checkout to fund the wallet
    """
    serializer = FundingRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    result = services.initialize_funding(request.user, serializer.validated_data['amount'])

    return Response({
        "message": "Payment initialized",
        "checkout_url": result['checkout_url'],
        "reference": result['reference'],
    }, status=status.HTTP_201_CREATED)

@api_view(['GET'])
@permission_classes([permissions.IsAuthenticated])
def verify_funding(request, reference):
    """
    Browser return path after checkout; the wallet is only credited once Monnify confirms
    """
    if not request.user.payment_intents.filter(reference=reference).exists():
        raise NotFound(f"Payment intent {reference} not found")

    return Response(services.confirm_funding(reference))

@api_view(['POST'])
@authentication_classes([])
@permission_classes([permissions.AllowAny])
def monnify_webhook(request):
    """
    Monnify transaction notifications. The payload is only a hint: the
    reference is re-verified with the gateway before any credit.
    """
    from .monnify_client import monnify_client

    signature = request.headers.get('monnify-signature', '')
    if not monnify_client.verify_webhook_signature(request.body, signature):
        logger.warning("Rejected Monnify webhook with invalid signature")
        return Response({"error": "Invalid signature"}, status=status.HTTP_400_BAD_REQUEST)

    try:
        payload = json.loads(request.body)
    except ValueError:
        return Response({"error": "Invalid payload"}, status=status.HTTP_400_BAD_REQUEST)

    event_data = payload.get('eventData') or {}
    reference = event_data.get('paymentReference')
    if payload.get('eventType') != 'SUCCESSFUL_TRANSACTION' or not reference:
        return Response({"status": "ignored"})

    try:
        result = services.confirm_funding(reference)
    except NotFound:
        logger.warning("Monnify webhook for unknown reference %s", reference)
        return Response({"status": "ignored"})

    return Response(result)

@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def request_withdrawal(request):
    serializer = WithdrawalRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    data = serializer.validated_data
    intent = services.request_withdrawal(request.user, data['amount'], data['bank_account_id'])

    return Response({
        "message": "Withdrawal request submitted",
        "reference": intent.reference,
        "status": intent.status,
    }, status=status.HTTP_202_ACCEPTED)

@api_view(['GET'])
@permission_classes([permissions.IsAuthenticated])
def get_supported_banks(request):
    """
    Get list of supported banks from Monnify
    """
    from .monnify_client import monnify_client

    banks = [
        {'name': bank.get('name'), 'code': bank.get('code')}
        for bank in monnify_client.list_banks()
    ]
    return Response(banks)

@api_view(['GET'])
@permission_classes([permissions.IsAuthenticated])
def escrow_detail(request, job_id):
    escrow = get_escrow(job_id)
    if request.user.id not in (escrow.client_id, escrow.freelancer_id) and not request.user.is_staff:
        raise NotAJobParticipant()

    return Response(EscrowSerializer(escrow).data)
