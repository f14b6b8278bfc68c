from django.apps import AppConfig


class TenantsConfig(AppConfig):
    """Tenants are the shops/businesses that subscribe to SmartDuka."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "smartduka.tenants"
