"""Tests for the query facade and derived view caching."""

from decimal import Decimal

import pytest

from paas_billing.core.errors import PricingError
from paas_billing.core.metrics import dummy_plans_created, inconsistent_plans
from paas_billing.features.pricing.config_loader import load_config_document
from paas_billing.features.query.service import DEMO_ORG_GUID, DEMO_SPACE_GUID
from paas_billing.models.billable_event import BillableEvent
from paas_billing.models.filters import EventFilter
from paas_billing.models.usage_event import UsageEvent
from paas_billing.tests.mocks import (
    COMPUTE_PLAN_GUID,
    ORG_GUID,
    OTHER_ORG_GUID,
    SERVICE_PLAN_GUID,
    T0,
    app_event,
    minutes,
    pricing_document,
    service_event,
)

JANUARY = EventFilter.parse("2018-01-01", "2018-02-01")


@pytest.fixture
def with_usage(configured):
    configured.store.store_events([
        app_event("a1", T0, "STARTED"),
        app_event("a2", T0 + minutes(30), "STOPPED"),
        app_event("b1", T0, "STARTED", app_guid="other-app", org_guid=OTHER_ORG_GUID),
        service_event("s1", T0, "CREATED"),
        service_event("s2", T0 + minutes(10), "UPDATED"),
        service_event("s3", T0 + minutes(20), "DELETED"),
    ])
    return configured


def test_usage_events_are_clipped_and_ordered(with_usage):
    window = EventFilter.parse(T0.isoformat(), (T0 + minutes(10)).isoformat())
    events = list(with_usage.query.get_usage_events(window))
    assert all(e.event_start >= window.range_start and e.event_stop <= window.range_stop for e in events)
    keys = [(e.resource_guid, e.event_start) for e in events]
    assert keys == sorted(keys)
    assert len(events) == 3


def test_org_filter(with_usage):
    only_other = EventFilter.parse("2018-01-01", "2018-02-01", [OTHER_ORG_GUID])
    assert {e.org_guid for e in with_usage.query.get_usage_events(only_other)} == {OTHER_ORG_GUID}
    assert {e.org_guid for e in with_usage.query.get_billable_events(only_other)} == {OTHER_ORG_GUID}


def test_billable_events_are_priced_live(with_usage):
    rows = list(with_usage.query.get_billable_events(JANUARY))
    assert all(isinstance(row, BillableEvent) for row in rows)
    service_rows = [r for r in rows if r.plan_guid == SERVICE_PLAN_GUID]
    assert [r.price.ex_vat for r in service_rows] == [Decimal("1200"), Decimal("1200")]


def test_billable_events_read_frozen_rows_once_consolidated(with_usage):
    with_usage.consolidator.consolidate_month("2018-01")
    rows = list(with_usage.query.get_billable_events(JANUARY))
    assert rows and all(isinstance(row, dict) for row in rows)

    partial = EventFilter.parse("2018-01-01", "2018-01-15")
    assert all(isinstance(row, BillableEvent) for row in with_usage.query.get_billable_events(partial))


def test_forecast_matches_billable_totals(with_usage):
    usage = list(with_usage.query.get_usage_events(JANUARY))
    forecast = list(with_usage.query.forecast_billable_events(usage, JANUARY))
    billable = list(with_usage.query.get_billable_events(JANUARY))
    assert sum(f.price.ex_vat for f in forecast) == sum(b.price.ex_vat for b in billable)
    assert sum(f.price.inc_vat for f in forecast) == sum(b.price.inc_vat for b in billable)


def test_forecast_stamps_demo_identifiers(configured):
    usage = [UsageEvent(event_start=T0, event_stop=T0 + minutes(10), resource_guid="r", plan_guid=COMPUTE_PLAN_GUID)]
    demo = EventFilter.parse("2018-01-01", "2018-02-01", [DEMO_ORG_GUID])

    [row] = list(configured.query.forecast_billable_events(usage, demo))

    assert row.org_guid == DEMO_ORG_GUID
    assert row.org_name == "my-org"
    assert row.space_guid == DEMO_SPACE_GUID
    assert row.space_name == "my-space"
    assert row.plan_name == "app"
    assert row.event_guid
    assert row.price.ex_vat == Decimal("2400")


def test_total_costs_per_plan(with_usage):
    window = EventFilter.parse(T0.isoformat(), (T0 + minutes(30)).isoformat())
    totals = {row["plan_guid"]: Decimal(row["cost"]) for row in with_usage.query.total_costs(window)}
    # a1 and other-app run 30 minutes each at 4/s; the service 20 minutes at 2/s
    assert totals == {COMPUTE_PLAN_GUID: Decimal("14400"), SERVICE_PLAN_GUID: Decimal("2400")}


def test_config_entities_in_range(configured):
    document = pricing_document()
    document["vat_rates"].append({"code": "Standard", "valid_from": "2018-03-01", "rate": "0.25"})
    configured.refresher.refresh(load_config_document(document))

    january = configured.query.get_vat_rates(JANUARY)
    assert [(r.code, r.rate) for r in january if r.code == "Standard"] == [("Standard", Decimal("0.2"))]
    spring = configured.query.get_vat_rates(EventFilter.parse("2018-02-01", "2018-04-01"))
    assert [r.rate for r in spring if r.code == "Standard"] == [Decimal("0.2"), Decimal("0.25")]
    assert {p.plan_guid for p in configured.query.get_pricing_plans(JANUARY)} == {COMPUTE_PLAN_GUID, SERVICE_PLAN_GUID}
    assert {r.code for r in configured.query.get_currency_rates(JANUARY)} == {"GBP", "USD"}


def test_billable_events_need_an_installed_config(context):
    context.store.store_events([app_event("a1", T0, "STARTED")])
    with pytest.raises(PricingError):
        list(context.query.get_billable_events(JANUARY))


class TestDerivedCache:
    def test_snapshot_is_reused_until_inputs_change(self, with_usage):
        first = with_usage.derived.snapshot()
        assert with_usage.derived.snapshot() is first

        with_usage.store.store_events([app_event("a3", T0 + minutes(40), "STARTED")])
        second = with_usage.derived.snapshot()
        assert second is not first
        assert second.max_raw_id > first.max_raw_id

    def test_refresh_rebuilds_snapshot(self, with_usage):
        first = with_usage.derived.snapshot()
        with_usage.refresher.refresh(load_config_document(pricing_document(compute_formula="$time_in_seconds * 5")))
        second = with_usage.derived.snapshot()
        assert second.key != first.key
        assert second.usage_events == first.usage_events

    def test_permissive_install_prices_unknown_plans_at_zero(self, configured):
        configured.store.store_events([service_event("s1", T0, "CREATED", plan_guid="unknown-plan", plan_name="tiny")])
        configured.refresher.refresh(load_config_document(pricing_document()), ignore_missing_plans=True)

        rows = list(configured.query.get_billable_events(JANUARY))

        assert [r.price.ex_vat for r in rows] == [Decimal("0")]
        assert dummy_plans_created.value() >= 1
        assert inconsistent_plans.value() == 1
