import base64
import hashlib
import hmac
import logging
import time
from decimal import Decimal

import requests
from django.conf import settings

from marketplace.exceptions import GatewayError

logger = logging.getLogger(__name__)

PAID_STATUSES = ('PAID', 'COMPLETED', 'OVERPAID')
FAILED_STATUSES = ('FAILED', 'EXPIRED', 'CANCELLED', 'REVERSED', 'ABANDONED')

class MonnifyClient:
    """Thin wrapper over the Monnify REST API.

    Every call is logged to PaymentProviderLog. Unsuccessful responses and
    transport errors raise GatewayError; all initiating calls carry a caller
    supplied reference so they can be re-queried after a crash.
    """

    provider = 'monnify'

    def __init__(self, api_key=None, secret_key=None, contract_code=None, base_url=None,
                 source_account=None, timeout=None):
        self.api_key = api_key if api_key is not None else settings.MONNIFY_API_KEY
        self.secret_key = secret_key if secret_key is not None else settings.MONNIFY_SECRET_KEY
        self.contract_code = contract_code if contract_code is not None else settings.MONNIFY_CONTRACT_CODE
        self.base_url = (base_url or settings.MONNIFY_BASE_URL).rstrip('/')
        self.source_account = source_account if source_account is not None else settings.MONNIFY_SOURCE_ACCOUNT
        self.timeout = timeout or settings.MONNIFY_TIMEOUT_SECONDS
        self._token = None
        self._token_expires_at = 0

    def _basic_auth(self):
        credentials = f"{self.api_key}:{self.secret_key}".encode()
        return f"Basic {base64.b64encode(credentials).decode()}"

    def _access_token(self):
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        body = self._make_request(
            'POST', '/api/v1/auth/login',
            headers={'Authorization': self._basic_auth()},
        )
        self._token = body['accessToken']
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(body.get('expiresIn', 0)) - 60, 0)
        return self._token

    def _log(self, action, reference, request_data, response_data, status):
        from .models import PaymentProviderLog
        PaymentProviderLog.objects.create(
            provider=self.provider,
            action=action,
            reference=reference or '',
            request_data=request_data or {},
            response_data=response_data,
            status=status,
        )

    def _make_request(self, method, endpoint, data=None, params=None, headers=None, reference=''):
        url = f"{self.base_url}{endpoint}"
        if headers is None:
            headers = {'Authorization': f"Bearer {self._access_token()}"}
        headers = {'Content-Type': 'application/json', **headers}

        try:
            response = requests.request(
                method, url, headers=headers, json=data, params=params, timeout=self.timeout,
            )
            response_data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            self._log(endpoint, reference, data or params, {'error': str(e)}, 'failed')
            logger.warning("Monnify %s %s failed: %s", method, endpoint, e)
            raise GatewayError(f"Payment provider unreachable: {e}") from e

        successful = bool(response_data.get('requestSuccessful'))
        self._log(endpoint, reference, data or params, response_data, 'success' if successful else 'failed')

        if not successful:
            message = response_data.get('responseMessage') or f"HTTP {response.status_code}"
            logger.warning("Monnify %s %s rejected: %s", method, endpoint, message)
            raise GatewayError(message)

        return response_data.get('responseBody') or {}

    def initialize_payment(self, amount, reference, customer_email, customer_name=None,
                           description='Wallet funding'):
        """Start a hosted checkout; returns checkout_url and reference."""
        body = self._make_request('POST', '/api/v1/merchant/transactions/init-transaction', data={
            'amount': str(Decimal(amount)),
            'customerName': customer_name or customer_email,
            'customerEmail': customer_email,
            'paymentReference': reference,
            'paymentDescription': description,
            'currencyCode': settings.DEFAULT_CURRENCY,
            'contractCode': self.contract_code,
            'redirectUrl': settings.PAYMENT_REDIRECT_URL,
            'paymentMethods': ['CARD', 'ACCOUNT_TRANSFER'],
        }, reference=reference)
        return {
            'checkout_url': body.get('checkoutUrl', ''),
            'reference': reference,
            'transaction_reference': body.get('transactionReference'),
        }

    def verify_payment(self, reference):
        """Query a payment by our reference; returns the provider body."""
        body = self._make_request(
            'GET', '/api/v1/merchant/transactions/query',
            params={'paymentReference': reference}, reference=reference,
        )
        body.setdefault('paymentStatus', 'PENDING')
        return body

    def disburse(self, amount, reference, account_number, bank_code, account_name, narration=None):
        """Send funds to a bank account."""
        body = self._make_request('POST', '/api/v2/disbursements/single', data={
            'amount': str(Decimal(amount)),
            'reference': reference,
            'narration': narration or 'Withdrawal from wallet',
            'destinationBankCode': bank_code,
            'destinationAccountNumber': account_number,
            'destinationAccountName': account_name,
            'currency': settings.DEFAULT_CURRENCY,
            'sourceAccountNumber': self.source_account,
        }, reference=reference)
        body.setdefault('status', 'PENDING')
        return body

    def get_disbursement_status(self, reference):
        body = self._make_request(
            'GET', '/api/v2/disbursements/single/summary',
            params={'reference': reference}, reference=reference,
        )
        body.setdefault('status', 'PENDING')
        return body

    def reserve_account(self, account_reference, account_name, customer_email):
        """Reserve a dedicated virtual account for a wallet."""
        body = self._make_request('POST', '/api/v2/bank-transfer/reserved-accounts', data={
            'accountReference': account_reference,
            'accountName': account_name,
            'customerEmail': customer_email,
            'customerName': account_name,
            'currencyCode': settings.DEFAULT_CURRENCY,
            'contractCode': self.contract_code,
            'getAllAvailableBanks': False,
            'preferredBanks': ['035'],
        }, reference=account_reference)

        accounts = body.get('accounts') or []
        first = accounts[0] if accounts else {}
        return {
            'account_number': body.get('accountNumber') or first.get('accountNumber', ''),
            'bank_name': body.get('bankName') or first.get('bankName', ''),
            'account_reference': body.get('accountReference', account_reference),
            'raw': body,
        }

    def list_banks(self):
        return self._make_request('GET', '/api/v1/banks')

    def validate_bank_account(self, account_number, bank_code):
        return self._make_request(
            'GET', '/api/v1/disbursements/account/validate',
            params={'accountNumber': account_number, 'bankCode': bank_code},
        )

    def verify_webhook_signature(self, raw_body, signature):
        expected = hmac.new(self.secret_key.encode(), raw_body, hashlib.sha512).hexdigest()
        return bool(signature) and hmac.compare_digest(expected, signature)

# Singleton instance
monnify_client = MonnifyClient()
