"""Static subscription plan catalog."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from autorenew.services.billing.exceptions import UnknownPlan


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: Decimal
    description: str

    @property
    def amount_in_cents(self) -> int:
        return int(self.price * 100)


SUBSCRIPTION_PLANS: dict[str, Plan] = {
    "basic": Plan(
        id="basic",
        name="Basic",
        price=Decimal("12000"),
        description="150 mensajes/mes, 30 audios, exportar CSV",
    ),
    "premium": Plan(
        id="premium",
        name="Premium",
        price=Decimal("32000"),
        description="Mensajes ilimitados, 100 audios, exportar PDF",
    ),
}


def get_plan(plan_id: str | None) -> Plan:
    plan = SUBSCRIPTION_PLANS.get(plan_id or "")
    if not plan:
        raise UnknownPlan(f"Unknown plan: {plan_id}")
    return plan
