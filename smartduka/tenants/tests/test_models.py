import pytest
from django.db import IntegrityError
from django.db import transaction

from smartduka.tenants.models import Tenant
from smartduka.tenants.tests.factories import TenantFactory


@pytest.mark.django_db
class TestTenant:
    def test_str(self):
        assert str(TenantFactory(name="Mama Mboga")) == "Mama Mboga"

    def test_slug_is_unique(self):
        TenantFactory(slug="mama-mboga")

        with pytest.raises(IntegrityError), transaction.atomic():
            Tenant.objects.create(name="Another", slug="mama-mboga")

    def test_ordered_by_name(self):
        TenantFactory(name="Zawadi Stores")
        TenantFactory(name="Amani Duka")

        assert list(Tenant.objects.values_list("name", flat=True)) == [
            "Amani Duka",
            "Zawadi Stores",
        ]
