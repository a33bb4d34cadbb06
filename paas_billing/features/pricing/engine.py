"""
Pricing engine: UsageEvent -> BillableEvent.

An event's interval is cut at every plan version boundary and, per plan
component, at every change of that component's currency and VAT rate. Each
resulting partition is priced on its own:

    amount  = formula(partition)            # component currency
    amount  = max(amount, 0.01) if amount > 0
    ex_vat  = amount * currency_rate(start)  # billing currency
    inc_vat = ex_vat * (1 + vat_rate(start))
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from paas_billing.core.errors import FormulaEvaluationError, PricingError
from paas_billing.features.pricing.config_loader import MissingPlan
from paas_billing.features.pricing.formula import Formula, parse_formula
from paas_billing.models.billable_event import BillableEvent, Price, PriceComponent
from paas_billing.models.pricing import CurrencyRate, PricingConfig, PricingPlan, VATRate
from paas_billing.models.timestamps import EPOCH, INFINITY, seconds_between
from paas_billing.models.usage_event import UsageEvent

MINIMUM_CHARGE = Decimal("0.01")


@dataclass(frozen=True)
class _PlanVersion:
    plan: PricingPlan
    start: datetime
    stop: datetime
    formulas: Tuple[Formula, ...]


def effective_ranges(items, key) -> List[Tuple[object, datetime, datetime]]:
    """Attach ``[valid_from, next valid_from)`` to each version of each key."""
    by_key: Dict[str, list] = {}
    for item in items:
        by_key.setdefault(key(item), []).append(item)
    ranges = []
    for versions in by_key.values():
        versions.sort(key=lambda v: v.valid_from)
        for current, following in zip(versions, versions[1:] + [None]):
            ranges.append((current, current.valid_from, following.valid_from if following else INFINITY))
    return ranges


class _RateTimeline:
    def __init__(self, rates: Sequence):
        self._ranges: Dict[str, List[Tuple[object, datetime, datetime]]] = {}
        for rate, start, stop in effective_ranges(rates, key=lambda r: r.code):
            self._ranges.setdefault(rate.code, []).append((rate, start, stop))

    def at(self, code: str, when: datetime):
        for rate, start, stop in self._ranges.get(code, ()):
            if start <= when < stop:
                return rate
        return None

    def boundaries(self, code: str, start: datetime, stop: datetime) -> List[datetime]:
        return [s for _, s, _ in self._ranges.get(code, ()) if start < s < stop]


class PricingEngine:
    def __init__(self, config: PricingConfig, missing_plans: Sequence[MissingPlan] = ()):
        self.config = config
        self._missing = {m.plan_guid: m for m in missing_plans}
        self._vat = _RateTimeline(config.vat_rates)
        self._currency = _RateTimeline(config.currency_rates)
        self._plans: Dict[str, List[_PlanVersion]] = {}
        for plan, start, stop in effective_ranges(config.pricing_plans, key=lambda p: p.plan_guid):
            version = _PlanVersion(plan, start, stop, tuple(parse_formula(c.formula) for c in plan.components))
            self._plans.setdefault(plan.plan_guid, []).append(version)

    def plan_versions(self, plan_guid: str) -> List[_PlanVersion]:
        return self._plans.get(plan_guid, [])

    def price(self, event: UsageEvent) -> BillableEvent:
        versions = self.plan_versions(event.plan_guid)
        if not versions or versions[0].start > event.event_start:
            missing = self._missing.get(event.plan_guid) or MissingPlan(event.plan_guid, event.plan_name, event.resource_type)
            raise PricingError(missing.message())

        partitions: List[Tuple[datetime, int, int, PriceComponent]] = []
        for version_index, version in enumerate(versions):
            start = max(event.event_start, version.start)
            stop = min(event.event_stop, version.stop)
            if start >= stop:
                continue
            for component_index, component in enumerate(version.plan.components):
                for detail in self._price_component(event, version, component_index, start, stop):
                    partitions.append((detail.start, version_index, component_index, detail))

        partitions.sort(key=lambda p: p[:3])
        details = [p[3] for p in partitions]
        data = event.model_dump()
        data.pop("price", None)
        data["sequence"] = event.sequence
        return BillableEvent(**data, price=Price.from_details(details))

    def _is_placeholder(self, version: _PlanVersion) -> bool:
        return version.plan.plan_guid in self._missing and version.plan.valid_from == EPOCH

    def _rates(self, version: _PlanVersion, component, at: datetime) -> Tuple[Decimal, Decimal]:
        """(currency_rate, vat_rate) in effect at ``at``."""
        if self._is_placeholder(version):
            return Decimal(1), Decimal(0)
        currency: Optional[CurrencyRate] = self._currency.at(component.currency_code, at)
        vat: Optional[VATRate] = self._vat.at(component.vat_code, at)
        if currency is None:
            raise PricingError(f"missing currency_rate for '{component.currency_code}' at {at.isoformat()} required by plan '{version.plan.name}'")
        if vat is None:
            raise PricingError(f"missing vat_rate for '{component.vat_code}' at {at.isoformat()} required by plan '{version.plan.name}'")
        return currency.rate, vat.rate

    def _price_component(self, event: UsageEvent, version: _PlanVersion, index: int, start: datetime, stop: datetime) -> List[PriceComponent]:
        component = version.plan.components[index]
        formula = version.formulas[index]
        cuts = {start, stop}
        # placeholder plans are priced at zero with no rates
        if not self._is_placeholder(version):
            cuts |= set(self._currency.boundaries(component.currency_code, start, stop))
            cuts |= set(self._vat.boundaries(component.vat_code, start, stop))
        cuts = sorted(cuts)
        variables = {
            "memory_in_mb": event.memory_in_mb if event.memory_in_mb is not None else version.plan.memory_in_mb,
            "storage_in_mb": event.storage_in_mb if event.storage_in_mb is not None else version.plan.storage_in_mb,
            "number_of_nodes": event.number_of_nodes if event.number_of_nodes is not None else version.plan.number_of_nodes,
        }

        details = []
        for a, b in zip(cuts, cuts[1:]):
            currency_rate, vat_rate = self._rates(version, component, a)
            try:
                amount = formula.evaluate(time_in_seconds=seconds_between(a, b), **variables)
            except FormulaEvaluationError as exc:
                raise FormulaEvaluationError(
                    f"plan '{version.plan.name}' ({version.plan.plan_guid}) component '{component.name}': {exc.message}"
                ) from exc
            if Decimal(0) < amount < MINIMUM_CHARGE:
                amount = MINIMUM_CHARGE
            ex_vat = amount * currency_rate
            details.append(PriceComponent(
                name=component.name,
                plan_name=version.plan.name,
                start=a,
                stop=b,
                currency_code=component.currency_code,
                currency_rate=currency_rate,
                vat_code=component.vat_code,
                vat_rate=vat_rate,
                ex_vat=ex_vat,
                inc_vat=ex_vat * (1 + vat_rate),
            ))
        return details
