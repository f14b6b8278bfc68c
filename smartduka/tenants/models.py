from django.db import models
from model_utils.models import TimeStampedModel


class Tenant(TimeStampedModel):
    """
    A subscribing shop or business.

    Each tenant owns at most one subscription record; a tenant without one is
    an orphan that the reconciliation audit repairs by starting a trial.
    """

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=200, unique=True)
    email = models.EmailField(blank=True, default="")
    phone = models.CharField(max_length=32, blank=True, default="")
    is_active = models.BooleanField(
        default=True,
        help_text="Inactive tenants are ignored by onboarding and orphan checks.",
    )

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name
