from django.apps import AppConfig


class WalletConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'wallet'

    def ready(self):
        # ModelSerializers render MoneyFields as amounts with a sibling currency field
        from djmoney.contrib.django_rest_framework import register_money_field
        register_money_field()
