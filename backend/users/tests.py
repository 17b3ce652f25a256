from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APIClient

from marketplace.exceptions import GatewayError
from wallet.models import Wallet

User = get_user_model()


class RegistrationTestCase(TestCase):
    """Test signup and its wallet"""

    def setUp(self):
        self.api = APIClient()
        self.payload = {
            'username': 'ada',
            'email': 'ada@test.com',
            'first_name': 'Ada',
            'last_name': 'Obi',
            'password': 'Str0ng-pass-123',
            'password_confirm': 'Str0ng-pass-123',
            'role': 'client',
        }

    @patch('wallet.monnify_client.monnify_client.reserve_account')
    def test_register_creates_wallet(self, mock_reserve):
        mock_reserve.return_value = {
            'account_number': '5000000009',
            'bank_name': 'Moniepoint',
            'account_reference': 'REF-1',
            'raw': {'accounts': []},
        }

        response = self.api.post(reverse('register'), self.payload, format='json')

        self.assertEqual(response.status_code, 201)
        self.assertIn('access', response.data)
        self.assertEqual(response.data['wallet']['account_number'], '5000000009')
        user = User.objects.get(username='ada')
        self.assertEqual(user.role, User.CLIENT)
        self.assertEqual(user.display_name, 'Ada Obi')

    @patch('wallet.monnify_client.monnify_client.reserve_account', side_effect=GatewayError('down'))
    def test_register_survives_gateway_outage(self, mock_reserve):
        response = self.api.post(reverse('register'), self.payload, format='json')

        self.assertEqual(response.status_code, 201)
        wallet = Wallet.objects.get(user__username='ada')
        self.assertTrue(wallet.account_number.startswith('2'))

    def test_admin_role_cannot_self_register(self):
        self.payload['role'] = 'admin'

        response = self.api.post(reverse('register'), self.payload, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertFalse(User.objects.filter(username='ada').exists())

    def test_passwords_must_match(self):
        self.payload['password_confirm'] = 'different-123'

        response = self.api.post(reverse('register'), self.payload, format='json')

        self.assertEqual(response.status_code, 400)


class UserStatsTestCase(TestCase):

    def test_stats(self):
        user = User.objects.create_user(username='ada', password='testpass123', role='freelancer',
                                        rating=4.5, total_reviews=2)
        api = APIClient()
        api.force_authenticate(user)

        response = api.get(reverse('user-stats'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['rating'], 4.5)
        self.assertEqual(response.data['jobs_completed'], 0)
