"""
Query facade: usage, billable and forecast events for a range and org filter.

Every operation returns a lazy iterator; the HTTP layer streams it as a JSON
array. Billable queries over whole, consolidated months read the frozen rows;
anything else is priced from the derived views.
"""

import logging
import uuid
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Sequence, Union

from paas_billing.core.errors import PricingError
from paas_billing.features.consolidation.service import Consolidator
from paas_billing.features.pricing.config_loader import ConfigRepository, find_missing_plans, with_placeholders
from paas_billing.features.pricing.engine import PricingEngine, effective_ranges
from paas_billing.features.query.cache import DerivedViews
from paas_billing.models.billable_event import BillableEvent, ZERO
from paas_billing.models.filters import EventFilter
from paas_billing.models.pricing import CurrencyRate, PricingConfig, PricingPlan, VATRate
from paas_billing.models.usage_event import UsageEvent, clip_usage_events

logger = logging.getLogger("paas_billing")

BillableRow = Union[BillableEvent, dict]

FORECAST_NAMESPACE = uuid.UUID("0b7e1f0c-5d3a-4f7e-8f43-2a9c61d4b8e5")

DEMO_ORG_GUID = "00000001-0000-0000-0000-000000000000"
DEMO_ORG_NAME = "my-org"
DEMO_SPACE_GUID = "00000001-0001-0000-0000-000000000000"
DEMO_SPACE_NAME = "my-space"


class BillingQueryService:
    def __init__(self, derived: DerivedViews, consolidator: Consolidator, config_repository: ConfigRepository):
        self.derived = derived
        self.consolidator = consolidator
        self.config_repository = config_repository

    def get_usage_events(self, event_filter: EventFilter) -> Iterator[UsageEvent]:
        """Usage intersecting the range, clipped to it, ordered by (resource, start)."""
        return iter(clip_usage_events(
            self.derived.usage_events(), event_filter.range_start, event_filter.range_stop, event_filter.org_guids,
        ))

    def get_billable_events(self, event_filter: EventFilter) -> Iterator[BillableRow]:
        if event_filter.is_month_aligned() and self.consolidator.is_range_consolidated(event_filter):
            logger.info("query.billable_from_consolidated", extra={
                "range_start": event_filter.range_start.isoformat(),
                "range_stop": event_filter.range_stop.isoformat(),
            })
            return self.consolidator.get_consolidated_billable_events(event_filter)
        snapshot = self.derived.snapshot()
        pricing = snapshot.pricing_engine()
        return self._price_lazily(snapshot.usage_events, pricing, event_filter)

    def forecast_billable_events(self, usage_events: Sequence[UsageEvent], event_filter: EventFilter) -> Iterator[BillableEvent]:
        """Price caller-supplied usage with the installed configuration. Reads no raw events."""
        events = [self._forecast_input(index, event) for index, event in enumerate(usage_events)]
        pricing = self._forecast_engine(events)
        for billable in self._price_lazily(events, pricing, event_filter):
            if not billable.plan_name and billable.price.details:
                billable = billable.model_copy(update={"plan_name": billable.price.details[0].plan_name})
            yield billable

    @staticmethod
    def _forecast_input(index: int, event: UsageEvent) -> UsageEvent:
        update = {}
        if not event.event_guid:
            update["event_guid"] = str(uuid.uuid5(FORECAST_NAMESPACE, f"{index}:{event.resource_guid}"))
        if not event.org_guid:
            update.update(org_guid=DEMO_ORG_GUID, org_name=event.org_name or DEMO_ORG_NAME)
        if not event.space_guid:
            update.update(space_guid=DEMO_SPACE_GUID, space_name=event.space_name or DEMO_SPACE_NAME)
        return event.model_copy(update=update) if update else event

    def total_costs(self, event_filter: EventFilter) -> List[Dict[str, str]]:
        """Billed cost ex VAT per plan over the range."""
        totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for row in self.get_billable_events(event_filter):
            if isinstance(row, BillableEvent):
                totals[row.plan_guid] += row.price.ex_vat
            else:
                totals[row["plan_guid"]] += Decimal(row["price"]["ex_vat"])
        return [{"plan_guid": plan_guid, "cost": format(cost, "f")} for plan_guid, cost in sorted(totals.items())]

    def _forecast_engine(self, events: Sequence[UsageEvent]) -> PricingEngine:
        installed = self.config_repository.load()
        if installed is None:
            raise PricingError("no pricing configuration has been installed")
        missing = find_missing_plans(installed.config, events)
        config = with_placeholders(installed.config, missing) if installed.ignore_missing_plans else installed.config
        return PricingEngine(config, missing)

    @staticmethod
    def _price_lazily(usage: Iterable[UsageEvent], pricing: PricingEngine, event_filter: EventFilter) -> Iterator[BillableEvent]:
        for event in clip_usage_events(usage, event_filter.range_start, event_filter.range_stop, event_filter.org_guids):
            yield pricing.price(event)

    # installed configuration

    def _installed_config(self) -> PricingConfig:
        installed = self.config_repository.load()
        return installed.config if installed else PricingConfig()

    @staticmethod
    def _effective_in(items, key, event_filter: EventFilter) -> list:
        """Versions whose effective range intersects the filter's range."""
        selected = [
            (item, start)
            for item, start, stop in effective_ranges(list(items), key)
            if start < event_filter.range_stop and stop > event_filter.range_start
        ]
        selected.sort(key=lambda pair: (key(pair[0]), pair[1]))
        return [item for item, _ in selected]

    def get_pricing_plans(self, event_filter: EventFilter) -> List[PricingPlan]:
        return self._effective_in(self._installed_config().pricing_plans, lambda p: p.plan_guid, event_filter)

    def get_vat_rates(self, event_filter: EventFilter) -> List[VATRate]:
        return self._effective_in(self._installed_config().vat_rates, lambda r: r.code, event_filter)

    def get_currency_rates(self, event_filter: EventFilter) -> List[CurrencyRate]:
        return self._effective_in(self._installed_config().currency_rates, lambda r: r.code, event_filter)
