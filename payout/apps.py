from django.apps import AppConfig


class PayoutConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "payout"

    def ready(self):
        from . import signals  # noqa: F401
