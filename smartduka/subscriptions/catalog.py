"""
Read-only lookups against the plan catalog.
"""

from smartduka.subscriptions.constants import PlanStatus
from smartduka.subscriptions.constants import get_setting
from smartduka.subscriptions.exceptions import PlanNotFoundError
from smartduka.subscriptions.models import Plan


class PlanCatalog:
    def get_by_code(self, code: str) -> Plan:
        """Return the active plan for ``code``."""
        try:
            return Plan.objects.get(code=code, status=PlanStatus.ACTIVE)
        except Plan.DoesNotExist as exc:
            raise PlanNotFoundError(f"No active plan with code '{code}'.") from exc

    def get_by_id(self, plan_id) -> Plan:
        """Return a plan by primary key, whatever its status."""
        try:
            return Plan.objects.get(pk=plan_id)
        except Plan.DoesNotExist as exc:
            raise PlanNotFoundError(f"No plan with id {plan_id}.") from exc

    def trial_plan(self) -> Plan:
        return self.get_by_code(get_setting("SUBSCRIPTION_TRIAL_PLAN_CODE"))

    def active_plans(self):
        return Plan.objects.filter(status=PlanStatus.ACTIVE)


catalog = PlanCatalog()
