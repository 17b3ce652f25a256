import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import patch, MagicMock

import requests
from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.urls import reverse
from djmoney.money import Money
from rest_framework.test import APIClient

from jobs.models import Job
from marketplace.exceptions import (
    GatewayError, InsufficientEscrow, InsufficientFunds, InvalidState, NotFound, Unauthorized,
    ValidationError,
)
from .escrow import create_escrow, mark_released, reduce_escrow, refund_escrow
from .ledger import adjust_balance, create_wallet, get_balance
from .models import BankAccount, Escrow, EscrowLedger, PaymentIntent, PaymentProviderLog, Wallet, WalletTransaction
from .monnify_client import MonnifyClient
from .services import confirm_funding, initialize_funding, request_withdrawal
from .tasks import process_withdrawal, reconcile_payment_intents, verify_bank_account

User = get_user_model()


def ngn(amount):
    return Money(amount, 'NGN')


class LedgerTestCase(TestCase):
    """Test wallet balances and the transaction log"""

    def setUp(self):
        self.user = User.objects.create_user(
            username='test_client',
            email='client@test.com',
            password='testpass123',
            role='client'
        )
        self.wallet = Wallet.objects.create(user=self.user, balance=ngn(1000))

    def test_credit_and_debit_write_signed_rows(self):
        adjust_balance(self.user.id, ngn(500), WalletTransaction.DEPOSIT, reference='DEP1')
        adjust_balance(self.user.id, ngn(-300), WalletTransaction.WITHDRAWAL, reference='WDR1')

        self.assertEqual(get_balance(self.user.id), ngn(1200))
        self.assertEqual(WalletTransaction.objects.get(reference='DEP1').amount, ngn(500))
        self.assertEqual(WalletTransaction.objects.get(reference='WDR1').amount, ngn(-300))

        self.wallet.refresh_from_db()
        self.assertEqual(self.wallet.total_earnings, ngn(500))
        self.assertEqual(self.wallet.total_withdrawals, ngn(300))

    def test_debit_beyond_balance_is_rejected(self):
        with self.assertRaises(InsufficientFunds):
            adjust_balance(self.user.id, ngn(-1500), WalletTransaction.WITHDRAWAL, reference='WDR1')

        self.assertEqual(get_balance(self.user.id), ngn(1000))
        self.assertFalse(WalletTransaction.objects.filter(reference='WDR1').exists())

    def test_missing_wallet(self):
        other = User.objects.create_user(username='nowallet', password='testpass123')
        with self.assertRaises(NotFound):
            adjust_balance(other.id, ngn(10), WalletTransaction.DEPOSIT)

    def test_duplicate_reference_rolls_back_balance(self):
        adjust_balance(self.user.id, ngn(100), WalletTransaction.DEPOSIT, reference='DUP')

        with self.assertRaises(ValidationError):
            adjust_balance(self.user.id, ngn(100), WalletTransaction.DEPOSIT, reference='DUP')

        self.assertEqual(get_balance(self.user.id), ngn(1100))

    def test_foreign_currency_rejected(self):
        with self.assertRaises(ValidationError):
            adjust_balance(self.user.id, Money(10, 'USD'), WalletTransaction.DEPOSIT)

    def test_transactions_are_immutable(self):
        entry = adjust_balance(self.user.id, ngn(100), WalletTransaction.DEPOSIT, reference='DEP1')
        entry.amount = ngn(1000000)

        with self.assertRaises(ValueError):
            entry.save()

    def test_create_wallet_is_idempotent(self):
        gateway = MagicMock()
        gateway.reserve_account.return_value = {
            'account_number': '5000000001',
            'bank_name': 'Wema Bank',
            'account_reference': 'REF-x',
            'raw': {},
        }
        user = User.objects.create_user(username='fresh', email='fresh@test.com', password='testpass123')

        first = create_wallet(user.id, 'Fresh User', user.email, gateway=gateway)
        second = create_wallet(user.id, 'Fresh User', user.email, gateway=gateway)

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.account_number, '5000000001')
        self.assertEqual(second.balance, ngn(0))
        gateway.reserve_account.assert_called_once()

    def test_create_wallet_survives_gateway_outage(self):
        gateway = MagicMock()
        gateway.reserve_account.side_effect = GatewayError('timeout')
        user = User.objects.create_user(username='fresh', email='fresh@test.com', password='testpass123')

        wallet = create_wallet(user.id, 'Fresh User', user.email, gateway=gateway)

        self.assertEqual(len(wallet.account_number), 10)
        self.assertTrue(wallet.account_number.startswith('2'))
        self.assertEqual(wallet.account_reference, f'REF-{user.id}')


class EscrowTestCase(TestCase):
    """Test escrow holds against jobs"""

    def setUp(self):
        self.client_user = User.objects.create_user(username='client', password='testpass123', role='client')
        self.freelancer = User.objects.create_user(username='freelancer', password='testpass123', role='freelancer')
        Wallet.objects.create(user=self.client_user, balance=ngn(50000))
        Wallet.objects.create(user=self.freelancer)
        self.job = Job.objects.create(
            client=self.client_user,
            title='Logo design',
            description='A new logo',
            budget=ngn(50000),
        )

    def test_create_escrow_debits_client(self):
        escrow = create_escrow(self.job.id, ngn(50000), self.client_user.id, self.freelancer.id)

        self.assertEqual(escrow.amount, ngn(50000))
        self.assertEqual(escrow.status, Escrow.HELD)
        self.assertEqual(get_balance(self.client_user.id), ngn(0))
        self.assertTrue(EscrowLedger.objects.filter(escrow=escrow, transaction_type=EscrowLedger.FUNDING).exists())

    def test_create_escrow_without_funds_leaves_nothing(self):
        with self.assertRaises(InsufficientFunds):
            create_escrow(self.job.id, ngn(60000), self.client_user.id, self.freelancer.id)

        self.assertFalse(Escrow.objects.filter(job=self.job).exists())
        self.assertEqual(get_balance(self.client_user.id), ngn(50000))

    def test_reduce_escrow_beyond_hold(self):
        create_escrow(self.job.id, ngn(20000), self.client_user.id, self.freelancer.id)
        reduce_escrow(self.job.id, ngn(15000), reference='P1')

        with self.assertRaises(InsufficientEscrow):
            reduce_escrow(self.job.id, ngn(10000), reference='P2')

        self.assertEqual(Escrow.objects.get(job=self.job).amount, ngn(5000))

    def test_mark_released_requires_empty_escrow(self):
        create_escrow(self.job.id, ngn(20000), self.client_user.id, self.freelancer.id)

        with self.assertRaises(InvalidState):
            mark_released(self.job.id)

        remainder = mark_released(self.job.id, force=True, reference='FULL')
        escrow = Escrow.objects.get(job=self.job)
        self.assertEqual(remainder, ngn(20000))
        self.assertEqual(escrow.amount, ngn(0))
        self.assertEqual(escrow.status, Escrow.RELEASED)

    def test_refund_returns_hold_to_client(self):
        create_escrow(self.job.id, ngn(20000), self.client_user.id, self.freelancer.id)

        refund_escrow(self.job.id)

        self.assertEqual(get_balance(self.client_user.id), ngn(50000))
        self.assertEqual(Escrow.objects.get(job=self.job).status, Escrow.REFUNDED)
        self.assertTrue(WalletTransaction.objects.filter(
            reference=f'ESCROW-REFUND-{self.job.id}',
            transaction_type=WalletTransaction.ESCROW_REFUND,
        ).exists())


class FundingTestCase(TestCase):
    """Test gateway-backed wallet funding"""

    def setUp(self):
        self.user = User.objects.create_user(
            username='test_client', email='client@test.com', password='testpass123', role='client'
        )
        Wallet.objects.create(user=self.user)
        self.gateway = MagicMock()

    def test_initialize_funding_persists_intent(self):
        self.gateway.initialize_payment.return_value = {
            'checkout_url': 'https://sandbox.monnify.com/checkout/abc',
            'reference': 'ignored',
            'transaction_reference': 'MNFY|1',
        }

        result = initialize_funding(self.user, '5000', gateway=self.gateway)

        intent = PaymentIntent.objects.get(reference=result['reference'])
        self.assertEqual(intent.status, PaymentIntent.PENDING)
        self.assertEqual(intent.amount, ngn(5000))
        self.assertEqual(result['checkout_url'], 'https://sandbox.monnify.com/checkout/abc')
        # No credit until the gateway confirms
        self.assertEqual(get_balance(self.user.id), ngn(0))

    def test_initialize_funding_gateway_failure_marks_intent_failed(self):
        self.gateway.initialize_payment.side_effect = GatewayError('down')

        with self.assertRaises(GatewayError):
            initialize_funding(self.user, '5000', gateway=self.gateway)

        intent = PaymentIntent.objects.get(user=self.user)
        self.assertEqual(intent.status, PaymentIntent.FAILED)

    def test_confirm_funding_credits_once(self):
        intent = PaymentIntent.objects.create(
            user=self.user, reference='PAY1', kind=PaymentIntent.DEPOSIT, amount=ngn(5000)
        )
        self.gateway.verify_payment.return_value = {'paymentStatus': 'PAID', 'transactionReference': 'MNFY|1'}

        first = confirm_funding(intent.reference, gateway=self.gateway)
        second = confirm_funding(intent.reference, gateway=self.gateway)

        self.assertEqual(first['status'], 'completed')
        self.assertEqual(second['status'], 'completed')
        self.assertEqual(get_balance(self.user.id), ngn(5000))
        self.assertEqual(WalletTransaction.objects.filter(user=self.user).count(), 1)
        self.gateway.verify_payment.assert_called_once()

    def test_confirm_funding_pending_and_failed(self):
        intent = PaymentIntent.objects.create(
            user=self.user, reference='PAY1', kind=PaymentIntent.DEPOSIT, amount=ngn(5000)
        )

        self.gateway.verify_payment.return_value = {'paymentStatus': 'PENDING'}
        self.assertEqual(confirm_funding(intent.reference, gateway=self.gateway)['status'], 'pending')

        self.gateway.verify_payment.return_value = {'paymentStatus': 'EXPIRED'}
        self.assertEqual(confirm_funding(intent.reference, gateway=self.gateway)['status'], 'failed')

        intent.refresh_from_db()
        self.assertEqual(intent.status, PaymentIntent.FAILED)
        self.assertEqual(get_balance(self.user.id), ngn(0))

    def test_late_failure_does_not_undo_completed_deposit(self):
        intent = PaymentIntent.objects.create(
            user=self.user, reference='PAY1', kind=PaymentIntent.DEPOSIT, amount=ngn(5000)
        )

        def completed_elsewhere(reference):
            # A concurrent confirmation credits the deposit while this one waits on the gateway
            confirm_funding(reference, gateway=MagicMock(**{
                'verify_payment.return_value': {'paymentStatus': 'PAID'},
            }))
            return {'paymentStatus': 'FAILED'}

        self.gateway.verify_payment.side_effect = completed_elsewhere

        result = confirm_funding(intent.reference, gateway=self.gateway)

        intent.refresh_from_db()
        self.assertEqual(result['status'], 'completed')
        self.assertEqual(intent.status, PaymentIntent.COMPLETED)
        self.assertEqual(get_balance(self.user.id), ngn(5000))


class WithdrawalTestCase(TestCase):
    """Test withdrawal requests and the disbursement task"""

    def setUp(self):
        self.user = User.objects.create_user(
            username='test_freelancer', email='f@test.com', password='testpass123', role='freelancer'
        )
        Wallet.objects.create(user=self.user, balance=ngn(10000))
        self.bank_account = BankAccount.objects.create(
            user=self.user,
            account_name='Test User',
            account_number='1234567890',
            bank_code='058',
            bank_name='GTBank',
            is_verified=True
        )

    def test_request_withdrawal_debits_pending(self):
        intent = request_withdrawal(self.user, '4000', self.bank_account.id)

        debit = WalletTransaction.objects.get(reference=intent.reference)
        self.assertEqual(debit.status, WalletTransaction.PENDING)
        self.assertEqual(debit.amount, ngn(-4000))
        self.assertEqual(get_balance(self.user.id), ngn(6000))

    def test_request_withdrawal_rules(self):
        with self.assertRaises(ValidationError):
            request_withdrawal(self.user, '50', self.bank_account.id)
        with self.assertRaises(InsufficientFunds):
            request_withdrawal(self.user, '20000', self.bank_account.id)
        with self.assertRaises(NotFound):
            request_withdrawal(self.user, '1000', 99999)

        self.bank_account.is_verified = False
        self.bank_account.save()
        with self.assertRaises(Unauthorized):
            request_withdrawal(self.user, '1000', self.bank_account.id)

        self.assertFalse(PaymentIntent.objects.exists())
        self.assertEqual(get_balance(self.user.id), ngn(10000))

    @patch('wallet.tasks.monnify_client')
    def test_process_withdrawal_success(self, mock_client):
        """Test successful withdrawal processing"""
        mock_client.disburse.return_value = {'status': 'SUCCESS', 'transactionReference': 'MFDS|1'}
        intent = request_withdrawal(self.user, '4000', self.bank_account.id)

        result = process_withdrawal.apply(args=(intent.id,))
        self.assertTrue(result.successful())

        intent.refresh_from_db()
        debit = WalletTransaction.objects.get(reference=intent.reference)
        self.assertEqual(intent.status, PaymentIntent.COMPLETED)
        self.assertEqual(debit.status, WalletTransaction.COMPLETED)
        self.assertEqual(debit.payment_provider_ref, 'MFDS|1')
        self.assertEqual(get_balance(self.user.id), ngn(6000))

    @patch('wallet.tasks.monnify_client')
    def test_process_withdrawal_failure_reverses_debit(self, mock_client):
        """Test withdrawal processing failure"""
        mock_client.disburse.side_effect = GatewayError('Invalid account')
        intent = request_withdrawal(self.user, '4000', self.bank_account.id)

        process_withdrawal.apply(args=(intent.id,))

        intent.refresh_from_db()
        self.assertEqual(intent.status, PaymentIntent.FAILED)
        self.assertIn('Invalid account', intent.error)
        self.assertEqual(WalletTransaction.objects.get(reference=intent.reference).status, WalletTransaction.FAILED)
        self.assertTrue(WalletTransaction.objects.filter(
            reference=f'{intent.reference}-REV', transaction_type=WalletTransaction.REFUND,
        ).exists())
        self.assertEqual(get_balance(self.user.id), ngn(10000))

    @patch('wallet.tasks.monnify_client')
    def test_process_withdrawal_is_not_sent_twice(self, mock_client):
        mock_client.disburse.return_value = {'status': 'PENDING'}
        intent = request_withdrawal(self.user, '4000', self.bank_account.id)

        process_withdrawal.apply(args=(intent.id,))
        process_withdrawal.apply(args=(intent.id,))

        mock_client.disburse.assert_called_once()
        intent.refresh_from_db()
        self.assertEqual(intent.status, PaymentIntent.PROCESSING)

    def test_task_error_handling(self):
        """Test with non-existent intent"""
        result = process_withdrawal.apply(args=(99999,))
        self.assertTrue(result.successful())

    @patch('wallet.tasks.monnify_client')
    def test_reconcile_settles_processing_withdrawal(self, mock_client):
        mock_client.get_disbursement_status.return_value = {'status': 'SUCCESS'}
        intent = request_withdrawal(self.user, '4000', self.bank_account.id)
        PaymentIntent.objects.filter(pk=intent.pk).update(status=PaymentIntent.PROCESSING)

        reconcile_payment_intents.apply(kwargs={'max_age_minutes': -1})

        intent.refresh_from_db()
        self.assertEqual(intent.status, PaymentIntent.COMPLETED)

    @patch('wallet.tasks.monnify_client')
    def test_verify_bank_account_success(self, mock_client):
        """Test successful bank account verification"""
        mock_client.validate_bank_account.return_value = {'accountName': 'Verified User'}
        self.bank_account.is_verified = False
        self.bank_account.save()

        result = verify_bank_account.apply(args=(self.bank_account.id,))
        self.assertTrue(result.result)

        self.bank_account.refresh_from_db()
        self.assertTrue(self.bank_account.is_verified)
        self.assertEqual(self.bank_account.account_name, 'Verified User')


@override_settings(MONNIFY_SECRET_KEY='sk_test', MONNIFY_API_KEY='pk_test', MONNIFY_CONTRACT_CODE='123')
class MonnifyClientTestCase(TestCase):
    """Test the Monnify adapter"""

    def setUp(self):
        self.gateway = MonnifyClient()

    def _response(self, payload, status_code=200):
        response = MagicMock(status_code=status_code)
        response.json.return_value = payload
        return response

    @patch('wallet.monnify_client.requests.request')
    def test_verify_payment_uses_cached_token(self, mock_request):
        mock_request.side_effect = [
            self._response({'requestSuccessful': True, 'responseBody': {'accessToken': 'tok', 'expiresIn': 3600}}),
            self._response({'requestSuccessful': True, 'responseBody': {'paymentStatus': 'PAID'}}),
            self._response({'requestSuccessful': True, 'responseBody': {'paymentStatus': 'PAID'}}),
        ]

        self.assertEqual(self.gateway.verify_payment('PAY1')['paymentStatus'], 'PAID')
        self.assertEqual(self.gateway.verify_payment('PAY1')['paymentStatus'], 'PAID')

        self.assertEqual(mock_request.call_count, 3)
        self.assertEqual(mock_request.call_args.kwargs['headers']['Authorization'], 'Bearer tok')
        self.assertEqual(PaymentProviderLog.objects.count(), 3)

    @patch('wallet.monnify_client.requests.request')
    def test_rejected_request_raises_gateway_error(self, mock_request):
        mock_request.return_value = self._response(
            {'requestSuccessful': False, 'responseMessage': 'Invalid credentials'}, status_code=401
        )

        with self.assertRaises(GatewayError):
            self.gateway.list_banks()

        self.assertEqual(PaymentProviderLog.objects.get().status, 'failed')

    @patch('wallet.monnify_client.requests.request')
    def test_transport_error_raises_gateway_error(self, mock_request):
        mock_request.side_effect = requests.exceptions.Timeout('timed out')

        with self.assertRaises(GatewayError):
            self.gateway.verify_payment('PAY1')

    def test_webhook_signature(self):
        body = b'{"eventType": "SUCCESSFUL_TRANSACTION"}'
        signature = hmac.new(b'sk_test', body, hashlib.sha512).hexdigest()

        self.assertTrue(self.gateway.verify_webhook_signature(body, signature))
        self.assertFalse(self.gateway.verify_webhook_signature(body, 'bad'))
        self.assertFalse(self.gateway.verify_webhook_signature(body, ''))


class WalletAPITestCase(TestCase):
    """Test the wallet endpoints"""

    def setUp(self):
        self.api = APIClient()
        self.user = User.objects.create_user(
            username='test_client', email='client@test.com', password='testpass123', role='client'
        )
        Wallet.objects.create(user=self.user, balance=ngn(2500), account_number='2000000001')
        self.api.force_authenticate(self.user)

    def test_summary(self):
        response = self.api.get(reverse('wallet-summary'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.data['wallet']['balance']), Decimal('2500'))
        self.assertEqual(response.data['wallet']['account_number'], '2000000001')

    def test_withdraw_reports_insufficient_balance(self):
        bank_account = BankAccount.objects.create(
            user=self.user, account_name='Test', account_number='1234567890',
            bank_code='058', bank_name='GTBank', is_verified=True,
        )

        response = self.api.post(reverse('request-withdrawal'), {
            'amount': '5000', 'bank_account_id': bank_account.id,
        }, format='json')

        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.data['detail'].code, 'insufficient_funds')

    @override_settings(MONNIFY_SECRET_KEY='sk_test')
    def test_webhook_rejects_bad_signature(self):
        body = json.dumps({'eventType': 'SUCCESSFUL_TRANSACTION', 'eventData': {'paymentReference': 'PAY1'}})

        response = APIClient().post(
            reverse('monnify-webhook'), body, content_type='application/json',
            HTTP_MONNIFY_SIGNATURE='forged',
        )

        self.assertEqual(response.status_code, 400)

    @patch('wallet.views.services.confirm_funding')
    def test_webhook_routes_to_verification(self, mock_confirm):
        mock_confirm.return_value = {'status': 'completed', 'message': 'ok'}
        body = json.dumps({'eventType': 'SUCCESSFUL_TRANSACTION', 'eventData': {'paymentReference': 'PAY1'}})

        with patch('wallet.monnify_client.monnify_client.verify_webhook_signature', return_value=True):
            response = APIClient().post(
                reverse('monnify-webhook'), body, content_type='application/json',
                HTTP_MONNIFY_SIGNATURE='sig',
            )

        self.assertEqual(response.status_code, 200)
        mock_confirm.assert_called_once_with('PAY1')
