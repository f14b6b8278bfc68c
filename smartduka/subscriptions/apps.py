from django.apps import AppConfig


class SubscriptionsConfig(AppConfig):
    """
    Django app configuration for subscription lifecycle enforcement.

    Handles the plan catalog, per-tenant subscription records, the lifecycle
    state machine, usage limits, access decisions and reconciliation.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "smartduka.subscriptions"

    def ready(self):
        """Register the default transition receivers."""
        from smartduka.subscriptions import receivers  # noqa: F401
